"""Load the data-driven content rules (junk patterns, category tables).

The bundled ``rules.yaml`` sits next to this module. ``Settings.rules_path``
may point at a replacement file with the same layout::

    junk:
      substrings: ["tweet", ...]
      regexes: ['will .{1,40} say .{1,30} during']
    weather:
      regex: 'temperature|°[cf]|...'
      narrow_bin_regex: '\\d+\\s*°[CF]\\s*(to|-)\\s*\\d+\\s*°[CF]'
    crypto: {substrings: [...], regexes: ['\\b(eth|sol)\\b']}
    stocks: {substrings: [...], regexes: [...]}
    categories: {politics: '...', geopolitics: '...', entertainment: '...'}
    category_caps: {weather: 8, ...}
    default_category_cap: 10
    category_priority: [politics, ...]
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml
from loguru import logger

from app.core.config import get_settings

DEFAULT_RULES_PATH = Path(__file__).with_name("rules.yaml")


@dataclass(slots=True, frozen=True)
class RuleBook:
    junk_substrings: tuple[str, ...]
    junk_regexes: tuple[re.Pattern[str], ...]
    weather: re.Pattern[str]
    narrow_bin: re.Pattern[str]
    crypto_substrings: tuple[str, ...]
    stock_substrings: tuple[str, ...]
    category_patterns: tuple[tuple[str, re.Pattern[str]], ...]
    crypto_regexes: tuple[re.Pattern[str], ...] = ()
    stock_regexes: tuple[re.Pattern[str], ...] = ()
    category_caps: Mapping[str, int] = field(default_factory=dict)
    default_category_cap: int = 10
    category_priority: tuple[str, ...] = ()

    def is_junk(self, question: str) -> bool:
        text = question.lower()
        if any(pattern in text for pattern in self.junk_substrings):
            return True
        return any(regex.search(text) for regex in self.junk_regexes)

    def is_weather(self, question: str) -> bool:
        return bool(self.weather.search(question.lower()))

    def is_narrow_bin(self, question: str) -> bool:
        return bool(self.narrow_bin.search(question))

    def is_crypto(self, question: str) -> bool:
        text = question.lower()
        if any(pattern in text for pattern in self.crypto_substrings):
            return True
        return any(regex.search(text) for regex in self.crypto_regexes)

    def is_stock(self, question: str) -> bool:
        text = question.lower()
        if any(pattern in text for pattern in self.stock_substrings):
            return True
        return any(regex.search(text) for regex in self.stock_regexes)

    def cap_for(self, category: str) -> int:
        return int(self.category_caps.get(category, self.default_category_cap))


def _coerce_strings(value: Any, *, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return tuple(str(item).lower() for item in value)
    raise TypeError(f"Expected a list of strings for {label}, received {type(value)!r}")


def _compile(pattern: Any, *, label: str) -> re.Pattern[str]:
    if not isinstance(pattern, str) or not pattern:
        raise ValueError(f"Rule {label} must be a non-empty regex string")
    return re.compile(pattern, re.IGNORECASE)


def _compile_all(patterns: Any, *, label: str) -> tuple[re.Pattern[str], ...]:
    if patterns is None:
        return ()
    if isinstance(patterns, (str, bytes)) or not isinstance(patterns, Sequence):
        raise TypeError(f"Expected a list of regexes for {label}, received {type(patterns)!r}")
    return tuple(_compile(pattern, label=label) for pattern in patterns)


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, Mapping):
        raise TypeError(f"Rule section '{key}' must be a mapping, received {type(value)!r}")
    return value


def parse_rules(raw: Mapping[str, Any]) -> RuleBook:
    junk = _section(raw, "junk")
    weather = _section(raw, "weather")
    categories = _section(raw, "categories")
    caps = _section(raw, "category_caps")
    crypto = _section(raw, "crypto")
    stocks = _section(raw, "stocks")
    return RuleBook(
        junk_substrings=_coerce_strings(junk.get("substrings"), label="junk.substrings"),
        junk_regexes=_compile_all(junk.get("regexes"), label="junk.regexes"),
        weather=_compile(weather.get("regex"), label="weather.regex"),
        narrow_bin=_compile(weather.get("narrow_bin_regex"), label="weather.narrow_bin_regex"),
        crypto_substrings=_coerce_strings(crypto.get("substrings"), label="crypto.substrings"),
        stock_substrings=_coerce_strings(stocks.get("substrings"), label="stocks.substrings"),
        category_patterns=tuple(
            (str(name), _compile(pattern, label=f"categories.{name}"))
            for name, pattern in categories.items()
        ),
        crypto_regexes=_compile_all(crypto.get("regexes"), label="crypto.regexes"),
        stock_regexes=_compile_all(stocks.get("regexes"), label="stocks.regexes"),
        category_caps={str(name): int(cap) for name, cap in caps.items()},
        default_category_cap=int(raw.get("default_category_cap", 10)),
        category_priority=tuple(
            str(item) for item in raw.get("category_priority") or ()
        ),
    )


def load_rules_file(path: str | Path) -> RuleBook:
    file_path = Path(path).expanduser()
    if not file_path.is_file():
        raise FileNotFoundError(f"Rule file not found: {file_path}")
    raw = yaml.safe_load(file_path.read_text(encoding="utf-8"))
    if not isinstance(raw, Mapping):
        raise ValueError(f"Rule file {file_path} must contain a mapping at the top level")
    rules = parse_rules(raw)
    logger.debug(
        "Loaded rules from {} ({} junk substrings, {} categories)",
        file_path,
        len(rules.junk_substrings),
        len(rules.category_patterns),
    )
    return rules


@lru_cache(maxsize=4)
def _cached_rules(path: str) -> RuleBook:
    return load_rules_file(path)


def load_rules(path: str | Path | None = None) -> RuleBook:
    """Return the active rule book, honouring ``Settings.rules_path``."""

    if path is None:
        path = get_settings().rules_path or DEFAULT_RULES_PATH
    return _cached_rules(str(Path(path).expanduser().resolve()))


__all__ = ["DEFAULT_RULES_PATH", "RuleBook", "load_rules", "load_rules_file", "parse_rules"]
