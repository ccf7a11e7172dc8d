from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as date_parser

from app.domain import Contract

_SPORTS_LABELS = (
    "sports",
    "sport",
    "esports",
    "football",
    "soccer",
    "basketball",
    "baseball",
    "hockey",
    "tennis",
    "mma",
    "boxing",
    "cricket",
    "golf",
    "motorsport",
    "racing",
)

# Ordered: the first label group that matches wins.
_LABEL_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("politics", ("politic", "election", "government")),
    ("crypto", ("crypto", "bitcoin", "defi", "blockchain")),
    ("entertainment", ("entertain", "culture", "pop culture", "music", "movie")),
    ("science", ("science", "tech", "space", "climate")),
    ("business", ("business", "finance", "economics", "stocks")),
)

_TEXT_CATEGORIES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("politics", re.compile(r"\b(trump|biden|elections?|president|congress|senate|votes?|democrats?|republicans?)\b")),
    ("crypto", re.compile(r"\b(bitcoin|btc|ethereum|eth|crypto|cryptocurrency|solana|tokens?|coins?)\b")),
    ("entertainment", re.compile(r"\b(movies?|oscars?|grammys?|albums?|celebrity|tv|shows?|awards?)\b")),
    ("business", re.compile(r"\b(stocks?|markets?|gdp|fed|inflation|earnings|company|revenue)\b")),
    ("science", re.compile(r"\b(spacex|nasa|ai|research|study|science|climate|weather)\b")),
)


def _as_list(value: Any) -> list[Any]:
    """Return value as a list when possible, decoding JSON or comma-separated strings."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return [part.strip() for part in value.split(",") if part.strip()]
        return parsed if isinstance(parsed, list) else []
    return []


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(str(value))
    except (ValueError, TypeError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _labels(entries: Any) -> list[str]:
    labels: list[str] = []
    for entry in _as_list(entries):
        if isinstance(entry, dict):
            label = entry.get("label") or entry.get("slug") or ""
            labels.append(str(label).lower())
        elif isinstance(entry, str):
            labels.append(entry.lower())
    return labels


def categorize_upstream(raw_market: dict[str, Any], question: str, description: str = "") -> str:
    """Assign a coarse category from upstream tags, falling back to the question text."""

    if raw_market.get("sportsMarketType"):
        return "sports"
    if raw_market.get("gameId") or raw_market.get("teamAID") or raw_market.get("teamBID"):
        return "sports"

    labels = _labels(raw_market.get("tags")) + _labels(raw_market.get("categories"))
    for event in _as_list(raw_market.get("events")):
        if isinstance(event, dict):
            labels.extend(_labels(event.get("tags")))
            labels.extend(_labels(event.get("categories")))

    if any(keyword in label for label in labels for keyword in _SPORTS_LABELS):
        return "sports"
    for category, keywords in _LABEL_CATEGORIES:
        if any(keyword in label for label in labels for keyword in keywords):
            return category

    text = f"{question} {description}".lower()
    for category, pattern in _TEXT_CATEGORIES:
        if pattern.search(text):
            return category
    return "other"


def normalize_market(raw_market: dict[str, Any]) -> Contract | None:
    """Convert a Gamma API market payload into a :class:`Contract` snapshot.

    Returns None for payloads without a question or without exactly two
    outcomes.
    """

    question = str(raw_market.get("question") or raw_market.get("title") or "").strip()
    market_id = raw_market.get("id") or raw_market.get("market_id")
    if not question or not market_id:
        return None

    outcomes = [str(item) for item in _as_list(raw_market.get("outcomes"))] or ["Yes", "No"]
    raw_prices = _as_list(raw_market.get("outcomePrices")) or ["0.5", "0.5"]
    prices = [_parse_float(price) for price in raw_prices]
    if len(outcomes) != 2 or len(prices) != 2 or any(price is None for price in prices):
        return None

    closed = _parse_bool(raw_market.get("closed")) is True
    active = _parse_bool(raw_market.get("active")) is not False and not closed
    resolved = _parse_bool(raw_market.get("resolved")) is True or closed
    description = str(raw_market.get("description") or "")

    return Contract(
        market_id=str(market_id),
        question=question,
        outcomes=(outcomes[0], outcomes[1]),
        prices=(float(prices[0]), float(prices[1])),
        volume=_parse_float(raw_market.get("volume")) or _parse_float(raw_market.get("volumeNum")) or 0.0,
        liquidity=_parse_float(raw_market.get("liquidity"))
        or _parse_float(raw_market.get("liquidityNum"))
        or 0.0,
        end_time=_parse_datetime(
            raw_market.get("endDate") or raw_market.get("end_date") or raw_market.get("endDateIso")
        ),
        active=active,
        resolved=resolved,
        closed=closed,
        accepting_orders=_parse_bool(raw_market.get("acceptingOrders")),
        category=categorize_upstream(raw_market, question, description),
        slug=raw_market.get("slug"),
        description=description or None,
    )
