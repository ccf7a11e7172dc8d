"""Provider hooks that let the forecasting oracle talk to OpenAI or Gemini."""

from .base import LLMProvider, OracleRequest
from .registry import (
    UnknownLLMProviderError,
    available_providers,
    get_provider,
    provider_for,
    register_provider,
)

__all__ = [
    "LLMProvider",
    "OracleRequest",
    "UnknownLLMProviderError",
    "available_providers",
    "get_provider",
    "provider_for",
    "register_provider",
]
