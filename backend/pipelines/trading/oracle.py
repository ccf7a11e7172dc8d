"""Forecasting oracle: one LLM call per batch, with token cost accounting."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger

from app.core.config import Settings
from app.services.llm import LLMProvider, OracleRequest, provider_for

from .prompt import system_instruction

# USD per 1M tokens: (input, output).
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gemini-2.5-pro": (1.25, 10.0),
    "gemini-2.5-flash": (0.15, 0.60),
    "gemini-2.0-flash-lite": (0.075, 0.30),
    "gemini-2.0-flash": (0.10, 0.40),
    "gpt-4.1-nano": (0.10, 0.40),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1": (2.0, 8.0),
    "o4-mini": (1.10, 4.40),
    "o3": (2.0, 8.0),
}
DEFAULT_PRICING = (3.0, 15.0)


def model_pricing(model: str) -> tuple[float, float]:
    """Exact match first, then the longest known prefix (dated snapshots)."""

    name = (model or "").lower()
    if name in MODEL_PRICING:
        return MODEL_PRICING[name]
    matches = [key for key in MODEL_PRICING if name.startswith(key)]
    if matches:
        return MODEL_PRICING[max(matches, key=len)]
    return DEFAULT_PRICING


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    input_price, output_price = model_pricing(model)
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


@dataclass(slots=True)
class OracleReply:
    text: str
    model: str
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    response_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ForecastOracle:
    """Bind a registered provider to the settings and expose ``assess``."""

    def __init__(
        self,
        settings: Settings,
        *,
        provider: LLMProvider | None = None,
        client: Any | None = None,
    ) -> None:
        self.settings = settings
        self.provider = provider or provider_for(settings)
        self.provider_name = self.provider.name
        self.model = settings.oracle_model or self.provider.default_model()
        self._client = client

    def ensure_ready(self) -> None:
        """Raise :class:`OracleUnavailable` when the provider has no credentials."""

        if self._client is None:
            self.provider.ensure_ready(self.settings)

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = self.provider.build_client(self.settings)
        return self._client

    def assess(self, prompt: str, *, cycle_id: str | None = None, batch_index: int | None = None) -> OracleReply:
        tools = self.provider.default_tools(self.settings)
        request = OracleRequest(
            client=self._get_client(),
            model=self.model,
            provider=self.provider_name,
            cycle_id=cycle_id,
            batch_index=batch_index,
            max_output_tokens=self.settings.oracle_max_output_tokens,
            tools=tuple(tools) if tools else None,
        )
        messages = [
            {"role": "system", "content": system_instruction(self.provider_name)},
            {"role": "user", "content": prompt},
        ]
        started = time.perf_counter()
        response = self.provider.invoke(request, messages=messages)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        text = self.provider.extract_text(response)
        input_tokens, output_tokens = self.provider.usage_tokens(response)
        cost = estimate_cost(self.model, input_tokens, output_tokens)
        logger.info(
            "Oracle reply provider={} model={} batch={} tokens={}/{} cost=${:.4f} elapsed={}ms",
            self.provider_name,
            self.model,
            batch_index,
            input_tokens,
            output_tokens,
            cost,
            elapsed_ms,
        )
        return OracleReply(
            text=text,
            model=self.model,
            provider=self.provider_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
            response_time_ms=elapsed_ms,
        )


def build_oracle(settings: Settings) -> ForecastOracle:
    return ForecastOracle(settings)


__all__ = [
    "DEFAULT_PRICING",
    "ForecastOracle",
    "MODEL_PRICING",
    "OracleReply",
    "build_oracle",
    "estimate_cost",
    "model_pricing",
]
