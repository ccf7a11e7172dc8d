"""Provider contracts for LLM integrations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from app.core.config import Settings


@dataclass(slots=True)
class OracleRequest:
    """Resolved runtime configuration for a single oracle call."""

    client: Any
    model: str
    provider: str
    cycle_id: str | None = None
    batch_index: int | None = None
    max_output_tokens: int = 16_000
    tools: tuple[Mapping[str, Any], ...] | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def tools_payload(self) -> list[dict[str, Any]] | None:
        if self.tools is None:
            return None
        return [dict(tool) for tool in self.tools]


class LLMProvider(Protocol):
    """Interface implemented by provider adapters."""

    name: str
    require_api_key: bool

    def ensure_ready(self, settings: Settings) -> None:
        """Validate credentials or raise :class:`OracleUnavailable`."""

    def build_client(self, settings: Settings) -> Any:
        """Return a provider client for the resolved settings."""

    def default_model(self) -> str:
        """Return the provider fallback model."""

    def default_tools(self, settings: Settings) -> Sequence[Mapping[str, Any]] | None:
        """Return provider-default web search tool declarations."""

    def invoke(
        self,
        request: OracleRequest,
        *,
        messages: Sequence[Mapping[str, Any]],
    ) -> Any:
        """Execute the model call and return the raw response."""

    def extract_text(self, response: Any) -> str:
        """Return the free-form text of a provider response."""

    def usage_tokens(self, response: Any) -> tuple[int, int]:
        """Return ``(input_tokens, output_tokens)`` reported by the provider."""


__all__ = ["LLMProvider", "OracleRequest"]
