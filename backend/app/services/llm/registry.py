"""Lookup table mapping ``ORACLE_PROVIDER`` values to provider hooks."""

from __future__ import annotations

from app.core.config import Settings

from .base import LLMProvider
from .gemini import GeminiProvider
from .openai import OpenAIProvider


class UnknownLLMProviderError(LookupError):
    """Raised when the settings name a provider nobody registered."""


_PROVIDERS: dict[str, LLMProvider] = {}
_ALIASES = {"google": "gemini", "chatgpt": "openai"}


def register_provider(provider: LLMProvider, *aliases: str) -> None:
    key = provider.name.lower()
    _PROVIDERS[key] = provider
    for alias in aliases:
        _ALIASES[alias.lower()] = key


def get_provider(name: str) -> LLMProvider:
    key = name.strip().lower()
    key = _ALIASES.get(key, key)
    provider = _PROVIDERS.get(key)
    if provider is None:
        known = ", ".join(available_providers()) or "none"
        raise UnknownLLMProviderError(f"LLM provider '{name}' is not registered (known: {known})")
    return provider


def provider_for(settings: Settings) -> LLMProvider:
    """Provider configured as the forecasting oracle."""

    return get_provider(settings.oracle_provider)


def available_providers() -> tuple[str, ...]:
    return tuple(sorted(_PROVIDERS))


register_provider(OpenAIProvider())
register_provider(GeminiProvider())


__all__ = [
    "UnknownLLMProviderError",
    "available_providers",
    "get_provider",
    "provider_for",
    "register_provider",
]
