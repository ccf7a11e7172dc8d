"""OpenAI provider hooks."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from functools import lru_cache
from http.client import IncompleteRead
from typing import Any, Mapping, Sequence

import httpx
from loguru import logger
from openai import APIError, APIStatusError, APITimeoutError, OpenAI

from app.core.config import Settings
from pipelines.trading.base import OracleExecutionError, OracleUnavailable

from .base import LLMProvider, OracleRequest

DEFAULT_MODEL = "gpt-4.1"

_STREAM_MAX_ATTEMPTS = 2
_TOTAL_MAX_ATTEMPTS = 4
_RETRY_BASE_SLEEP_SECONDS = 1.5
_RETRY_MAX_SLEEP_SECONDS = 10.0
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


@lru_cache(maxsize=4)
def _cached_client(api_key: str, base_url: str | None, organization: str | None, timeout: float) -> OpenAI:
    return OpenAI(api_key=api_key, base_url=base_url, organization=organization, timeout=timeout)


def build_openai_client(settings: Settings) -> OpenAI:
    """Reuse one SDK client per key, endpoint and timeout across cycles."""

    if not settings.openai_api_key:
        raise OracleUnavailable("OPENAI_API_KEY is not configured")
    return _cached_client(
        settings.openai_api_key,
        str(settings.openai_api_base) if settings.openai_api_base else None,
        settings.openai_org_id,
        settings.oracle_timeout_seconds,
    )


def _extract_request_id(exc: Exception) -> str | None:
    response = getattr(exc, "response", None)
    if response is not None:
        headers = getattr(response, "headers", None)
        request_id = headers.get("x-request-id") if headers is not None else None
        if isinstance(request_id, str) and request_id:
            return request_id
    request_id = getattr(exc, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return None


def _status_code_from_exception(exc: Exception) -> int | None:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    if response is not None:
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status
    return None


def _should_retry_exception(exc: Exception) -> bool:
    if isinstance(exc, (httpx.RemoteProtocolError, IncompleteRead, APITimeoutError)):
        return True
    if isinstance(exc, APIStatusError):
        return exc.status_code in _RETRYABLE_STATUS_CODES
    if isinstance(exc, APIError):
        if _status_code_from_exception(exc) in _RETRYABLE_STATUS_CODES:
            return True
        error_type = getattr(exc, "type", None)
        if isinstance(error_type, str) and error_type.lower() in {
            "api_error",
            "internal_server_error",
            "rate_limit_error",
            "server_error",
        }:
            return True
        if "retry your request" in str(exc).lower():
            return True
    return False


def _retry_sleep_seconds(attempt: int) -> float:
    backoff = _RETRY_BASE_SLEEP_SECONDS * (2 ** max(attempt - 1, 0))
    backoff = min(backoff, _RETRY_MAX_SLEEP_SECONDS)
    return backoff + random.uniform(0.0, 0.75)


def _exception_summary(exc: Exception, *, request_id: str | None = None) -> str:
    parts = [exc.__class__.__name__]
    status = _status_code_from_exception(exc)
    if isinstance(status, int):
        parts.append(f"status={status}")
    if request_id:
        parts.append(f"request_id={request_id}")
    message = str(exc)
    if message:
        parts.append(message)
    return ": ".join([parts[0], " ".join(parts[1:])]) if len(parts) > 1 else parts[0]


@dataclass(slots=True)
class OpenAIProvider(LLMProvider):
    name: str = "openai"
    require_api_key: bool = True

    def ensure_ready(self, settings: Settings) -> None:
        if not self.require_api_key or settings.openai_api_key:
            return
        raise OracleUnavailable("OPENAI_API_KEY is not configured")

    def build_client(self, settings: Settings) -> Any:
        return build_openai_client(settings)

    def default_model(self) -> str:
        return DEFAULT_MODEL

    def default_tools(self, settings: Settings) -> Sequence[Mapping[str, Any]] | None:
        if settings.oracle_web_search:
            return ({"type": "web_search_preview", "search_context_size": "high"},)
        return None

    def _invoke_stream_once(self, request: OracleRequest, payload: Mapping[str, Any]) -> Any:
        with request.client.responses.stream(**dict(payload)) as stream:
            for _event in stream:
                pass
            return stream.get_final_response()

    def _invoke_nonstream_once(self, request: OracleRequest, payload: Mapping[str, Any]) -> Any:
        return request.client.responses.create(**dict(payload))

    def invoke(
        self,
        request: OracleRequest,
        *,
        messages: Sequence[Mapping[str, Any]],
    ) -> Any:
        payload: dict[str, Any] = {
            "model": request.model,
            "input": list(messages),
            "max_output_tokens": request.max_output_tokens,
        }
        if request.options:
            payload.update(request.options)
        tools = request.tools_payload()
        if tools is not None:
            payload["tools"] = tools
        metadata = {"cycle_id": request.cycle_id, "batch": request.batch_index}
        payload["metadata"] = {k: str(v) for k, v in metadata.items() if v is not None}

        attempt = 0
        stream_attempts = 0
        use_stream = True
        last_exc: Exception | None = None
        last_request_id: str | None = None

        while attempt < _TOTAL_MAX_ATTEMPTS:
            attempt += 1
            transport = "stream" if use_stream else "nonstream"
            try:
                if use_stream:
                    return self._invoke_stream_once(request, payload)
                return self._invoke_nonstream_once(request, payload)
            except Exception as exc:  # noqa: BLE001
                request_id = _extract_request_id(exc)
                retryable = _should_retry_exception(exc) and attempt < _TOTAL_MAX_ATTEMPTS
                diagnostics: dict[str, Any] = {
                    "error_type": exc.__class__.__name__,
                    "status": _status_code_from_exception(exc),
                    "request_id": request_id,
                    "attempt": attempt,
                    "transport": transport,
                }
                logger.warning(
                    "OpenAI request failed cycle={} batch={} diagnostics={} retryable={}",
                    request.cycle_id or "n/a",
                    request.batch_index,
                    diagnostics,
                    retryable,
                )
                if not retryable:
                    raise OracleExecutionError(
                        _exception_summary(exc, request_id=request_id)
                    ) from exc

                last_exc = exc
                last_request_id = request_id
                if use_stream:
                    stream_attempts += 1
                    if stream_attempts >= _STREAM_MAX_ATTEMPTS:
                        use_stream = False
                        logger.warning(
                            "OpenAI request switching to non-stream mode cycle={} after {} stream attempts",
                            request.cycle_id or "n/a",
                            stream_attempts,
                        )
                        continue
                time.sleep(_retry_sleep_seconds(attempt))

        if last_exc is not None:
            raise OracleExecutionError(
                _exception_summary(last_exc, request_id=last_request_id)
            ) from last_exc
        raise OracleExecutionError("OpenAI provider failed without raising an exception")

    def extract_text(self, response: Any) -> str:
        output_text = getattr(response, "output_text", None)
        if isinstance(output_text, str) and output_text.strip():
            return output_text
        if hasattr(response, "model_dump"):
            dump: Mapping[str, Any] = response.model_dump()
        elif isinstance(response, Mapping):
            dump = response
        else:
            dump = {}
        chunks: list[str] = []
        for item in dump.get("output", []) or []:
            for content in item.get("content", []) or []:
                if isinstance(content, Mapping):
                    text = content.get("text") or content.get("output_text")
                    if isinstance(text, str) and text.strip():
                        chunks.append(text)
        if not chunks:
            raise OracleExecutionError("OpenAI response did not include any text output")
        return "\n".join(chunks)

    def usage_tokens(self, response: Any) -> tuple[int, int]:
        usage = getattr(response, "usage", None)
        if usage is None:
            return 0, 0
        input_tokens = getattr(usage, "input_tokens", None) or 0
        output_tokens = getattr(usage, "output_tokens", None) or 0
        return int(input_tokens), int(output_tokens)


__all__ = ["OpenAIProvider"]
