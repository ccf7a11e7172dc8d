from __future__ import annotations

import time
from collections.abc import Sequence
from typing import Any, Iterable

import httpx
from loguru import logger

from app.core.config import settings


ALLOWED_FILTER_KEYS = {
    "limit",
    "offset",
    "order",
    "ascending",
    "active",
    "closed",
    "id",
    "slug",
    "liquidity_num_min",
    "liquidity_num_max",
    "volume_num_min",
    "volume_num_max",
    "end_date_min",
    "end_date_max",
    "tag_id",
    "related_tags",
    "include_tag",
}

DEFAULT_FILTERS: dict[str, Any] = {
    "active": True,
    "closed": False,
    "order": "volume",
    "ascending": False,
    "include_tag": True,
}

_MAX_CONSECUTIVE_ERRORS = 2


class PolymarketClient:
    """Thin wrapper around the Polymarket Gamma endpoints used by the trader."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        markets_path: str | None = None,
        page_size: int | None = None,
        max_total: int | None = None,
        filters: dict[str, Any] | None = None,
        timeout: float | None = None,
        retry_delay: float = 2.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or str(settings.polymarket_base_url)
        self.markets_path = markets_path or settings.polymarket_markets_path
        self.page_size = page_size or settings.market_page_size
        self.max_total = max_total or settings.market_max_total
        requested = dict(DEFAULT_FILTERS if filters is None else filters)
        self.filters = {
            key: value for key, value in requested.items() if key in ALLOWED_FILTER_KEYS
        }
        dropped_filters = sorted(set(requested) - ALLOWED_FILTER_KEYS)
        if dropped_filters:
            logger.warning(
                "Dropped unsupported Polymarket query filters: {}",
                ", ".join(dropped_filters),
            )
        self.timeout = timeout or settings.market_request_timeout_seconds
        self.retry_delay = retry_delay
        client_kwargs: dict[str, Any] = {"base_url": self.base_url, "timeout": self.timeout}
        if transport is not None:
            client_kwargs["transport"] = transport
        self.client = httpx.Client(**client_kwargs)

    def _build_params(self, *, offset: int) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": self.page_size, "offset": offset}
        for key, value in self.filters.items():
            serialized = self._serialize_filter_value(value)
            if serialized is not None:
                params[key] = serialized
        return params

    @staticmethod
    def _serialize_filter_value(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
            parts = [
                serialized
                for serialized in (PolymarketClient._serialize_filter_value(item) for item in value)
                if serialized is not None
            ]
            return ",".join(parts) if parts else None
        return str(value)

    def fetch_page(self, *, offset: int) -> list[dict[str, Any]]:
        params = self._build_params(offset=offset)
        logger.debug("Polymarket GET {} params={}", self.markets_path, params)
        response = self.client.get(self.markets_path, params=params)
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        if isinstance(payload, dict):
            for key in ("markets", "data", "result"):
                value = payload.get(key)
                if isinstance(value, list):
                    return [item for item in value if isinstance(item, dict)]
        return []

    def iter_markets(self) -> Iterable[dict[str, Any]]:
        """Yield raw markets page by page, deduplicated by id, up to ``max_total``."""

        seen: set[str] = set()
        offset = 0
        consecutive_errors = 0
        max_pages = max(1, -(-self.max_total // self.page_size))
        for _page in range(max_pages):
            try:
                raw_markets = self.fetch_page(offset=offset)
            except httpx.HTTPError as exc:
                consecutive_errors += 1
                logger.warning(
                    "Polymarket page fetch failed offset={} attempt={} error={}",
                    offset,
                    consecutive_errors,
                    exc,
                )
                if consecutive_errors >= _MAX_CONSECUTIVE_ERRORS:
                    break
                offset += self.page_size
                continue

            consecutive_errors = 0
            if not raw_markets:
                break

            for market in raw_markets:
                market_id = str(market.get("id") or market.get("market_id") or "")
                if market_id and market_id in seen:
                    continue
                if market_id:
                    seen.add(market_id)
                yield market
                if len(seen) >= self.max_total:
                    return

            if len(raw_markets) < self.page_size:
                break
            offset += self.page_size

    def fetch_market(self, market_id: str, *, retries: int = 1) -> dict[str, Any] | None:
        """Return the raw market payload or None when it cannot be fetched."""

        path = f"{self.markets_path.rstrip('/')}/{market_id}"
        for attempt in range(retries + 1):
            try:
                response = self.client.get(path)
                response.raise_for_status()
                payload = response.json()
                if isinstance(payload, dict):
                    return payload
                if isinstance(payload, list) and payload and isinstance(payload[0], dict):
                    return payload[0]
                return None
            except httpx.HTTPError as exc:
                logger.warning(
                    "Polymarket market fetch failed market_id={} attempt={}/{} error={}",
                    market_id,
                    attempt + 1,
                    retries + 1,
                    exc,
                )
                if attempt < retries and self.retry_delay > 0:
                    time.sleep(self.retry_delay)
        return None

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "PolymarketClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
