"""Google Gemini provider hooks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, MutableMapping, Sequence

import google.generativeai as genai
from loguru import logger

from app.core.config import Settings
from pipelines.trading.base import OracleExecutionError, OracleUnavailable

from .base import LLMProvider, OracleRequest

DEFAULT_MODEL = "gemini-2.5-flash"


def _is_search_grounding_error(exc: Exception) -> bool:
    return "Search Grounding is not supported" in str(exc)


@dataclass(slots=True)
class _GeminiClient:
    api_keys: tuple[str, ...]

    def configure(self, api_key: str) -> None:
        genai.configure(api_key=api_key)


def resolve_api_keys(settings: Settings) -> list[str]:
    """Primary key first, then the fallbacks, blank and duplicate entries removed."""

    candidates = [settings.gemini_api_key, *(settings.gemini_additional_api_keys or [])]
    keys: list[str] = []
    for candidate in candidates:
        value = (candidate or "").strip()
        if value and value not in keys:
            keys.append(value)
    return keys


@dataclass(slots=True)
class GeminiProvider(LLMProvider):
    name: str = "gemini"
    require_api_key: bool = True

    def ensure_ready(self, settings: Settings) -> None:
        if not self.require_api_key or resolve_api_keys(settings):
            return
        raise OracleUnavailable("GEMINI_API_KEY is not configured")

    def build_client(self, settings: Settings) -> Any:
        api_keys = resolve_api_keys(settings)
        if not api_keys:
            raise OracleExecutionError("GEMINI_API_KEY is not configured")
        return _GeminiClient(api_keys=tuple(api_keys))

    def default_model(self) -> str:
        return DEFAULT_MODEL

    def default_tools(self, settings: Settings) -> Sequence[Mapping[str, Any]] | None:
        if settings.oracle_web_search:
            return ({"google_search_retrieval": {}},)
        return None

    def _build_contents(
        self,
        messages: Sequence[Mapping[str, Any]],
    ) -> tuple[str | None, list[MutableMapping[str, Any]]]:
        system_instruction: str | None = None
        contents: list[MutableMapping[str, Any]] = []
        for message in messages:
            role = message.get("role")
            content = message.get("content")
            if role == "system":
                system_instruction = str(content) if content is not None else system_instruction
                continue
            part_text = str(content) if content is not None else ""
            contents.append({"role": role or "user", "parts": [{"text": part_text}]})
        return system_instruction, contents

    def _invoke_with_api_key(
        self,
        *,
        request: OracleRequest,
        client: _GeminiClient,
        api_key: str,
        attempt_index: int,
        system_instruction: str | None,
        contents: Sequence[Mapping[str, Any]],
        generation_config: Mapping[str, Any],
        tool_payload: Sequence[Mapping[str, Any]],
    ) -> Any:
        client.configure(api_key)
        model = genai.GenerativeModel(request.model, system_instruction=system_instruction)
        try:
            return model.generate_content(
                contents=contents,
                generation_config=generation_config or None,
                tools=list(tool_payload) or None,
            )
        except Exception as exc:
            if tool_payload and _is_search_grounding_error(exc):
                logger.warning(
                    "Gemini search grounding unavailable; retrying without tools cycle={} attempt={}/{}",
                    request.cycle_id or "n/a",
                    attempt_index + 1,
                    len(client.api_keys),
                )
                return model.generate_content(
                    contents=contents,
                    generation_config=generation_config or None,
                    tools=None,
                )
            raise

    def invoke(
        self,
        request: OracleRequest,
        *,
        messages: Sequence[Mapping[str, Any]],
    ) -> Any:
        if not isinstance(request.client, _GeminiClient):
            raise OracleExecutionError("Gemini client is not configured correctly")
        system_instruction, contents = self._build_contents(messages)
        generation_config: dict[str, Any] = {"max_output_tokens": request.max_output_tokens}
        generation_config.update(request.options)
        tool_payload = request.tools_payload() or []

        last_error: Exception | None = None
        api_keys = request.client.api_keys
        for attempt_index, api_key in enumerate(api_keys):
            try:
                return self._invoke_with_api_key(
                    request=request,
                    client=request.client,
                    api_key=api_key,
                    attempt_index=attempt_index,
                    system_instruction=system_instruction,
                    contents=contents,
                    generation_config=generation_config,
                    tool_payload=tool_payload,
                )
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "Gemini request failed (attempt {}/{}), cycle={}, error={}",
                    attempt_index + 1,
                    len(api_keys),
                    request.cycle_id or "n/a",
                    exc,
                )
        if last_error is None:
            raise OracleExecutionError("Gemini request failed; no API keys available")
        raise OracleExecutionError(
            f"Gemini request failed after exhausting all configured API keys: {last_error}"
        ) from last_error

    def extract_text(self, response: Any) -> str:
        chunks: list[str] = []
        for candidate in getattr(response, "candidates", None) or []:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                text = getattr(part, "text", None)
                if isinstance(text, str) and text.strip():
                    chunks.append(text)
        if chunks:
            return "\n".join(chunks)
        try:
            text = getattr(response, "text", None)
        except ValueError as exc:
            # The SDK accessor raises for blocked or empty candidates.
            raise OracleExecutionError(f"Gemini response has no usable text: {exc}") from exc
        if isinstance(text, str) and text.strip():
            return text
        raise OracleExecutionError("Gemini response did not include any text output")

    def usage_tokens(self, response: Any) -> tuple[int, int]:
        metadata = getattr(response, "usage_metadata", None)
        if metadata is None:
            return 0, 0
        input_tokens = getattr(metadata, "prompt_token_count", None) or 0
        output_tokens = getattr(metadata, "candidates_token_count", None) or 0
        return int(input_tokens), int(output_tokens)


__all__ = ["GeminiProvider", "resolve_api_keys"]
