"""DTOs for trading-cycle persistence operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class PositionInput:
    market_id: str
    question: str
    outcome: str
    outcome_index: int
    price: float
    amount: float
    end_date: datetime | None
    category: str | None = None
    cycle_id: str | None = None
    reasoning: dict[str, Any] | None = None
    pending: bool = False


@dataclass(slots=True)
class CycleLogInput:
    cycle_id: str
    started_at: datetime
    finished_at: datetime
    status: str
    total_markets: int = 0
    pool_breakdown: dict[str, Any] | None = None
    pool: list[dict[str, Any]] = field(default_factory=list)
    batches: list[dict[str, Any]] = field(default_factory=list)
    provider: str | None = None
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    response_time_ms: int = 0
    summary: str | None = None
    results: list[dict[str, Any]] = field(default_factory=list)
    bets_placed: int = 0
    next_scan_secs: int | None = None
    error: str | None = None
