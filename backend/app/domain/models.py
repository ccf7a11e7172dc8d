"""Typed domain representations shared by ingestion, the trading cycle and settlement."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class Side(str, Enum):
    YES = "YES"
    NO = "NO"
    SKIP = "SKIP"

    @property
    def outcome_index(self) -> int:
        return 1 if self is Side.NO else 0


@dataclass(slots=True, frozen=True)
class Contract:
    """Immutable snapshot of a binary market as fetched from the data source."""

    market_id: str
    question: str
    outcomes: tuple[str, str]
    prices: tuple[float, float]
    volume: float
    liquidity: float
    end_time: datetime | None
    active: bool = True
    resolved: bool = False
    closed: bool = False
    accepting_orders: bool | None = None
    category: str | None = None
    slug: str | None = None
    description: str | None = None

    @property
    def yes_price(self) -> float:
        return self.prices[0]

    @property
    def no_price(self) -> float:
        if self.prices[1] > 0:
            return self.prices[1]
        return 1.0 - self.prices[0]

    def price_for(self, side: Side) -> float:
        return self.no_price if side is Side.NO else self.yes_price

    def seconds_left(self, now: datetime) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - now).total_seconds()


@dataclass(slots=True, frozen=True)
class Assessment:
    """One oracle opinion. ``probability`` is always P(YES occurs)."""

    market_id: str
    question: str
    side: Side
    probability: float
    confidence: float
    p_low: float | None = None
    p_high: float | None = None
    cluster_id: str | None = None
    category: str | None = None
    reasoning: str = ""
    sources: tuple[str, ...] = ()
    risks: str | None = None
    resolution_criteria: str | None = None
    reported_price: float | None = None
    reported_edge: float | None = None

    @property
    def side_probability(self) -> float:
        """Probability that the recommended side wins."""

        if self.side is Side.NO:
            return 1.0 - self.probability
        return self.probability

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "question": self.question,
            "side": self.side.value,
            "probability": self.probability,
            "confidence": self.confidence,
            "p_low": self.p_low,
            "p_high": self.p_high,
            "cluster_id": self.cluster_id,
            "category": self.category,
            "reasoning": self.reasoning,
            "sources": list(self.sources),
            "risks": self.risks,
            "resolution_criteria": self.resolution_criteria,
        }


@dataclass(slots=True, frozen=True)
class SizingDecision:
    outcome_index: int
    price: float
    kelly_raw: float
    kelly_capped: float
    amount: float
    expected_value: float
    edge: float = 0.0
    net_edge: float | None = None
    cost_per_bet: float = 0.0
    rejection_reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.amount > 0 and self.rejection_reason is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome_index": self.outcome_index,
            "price": self.price,
            "kelly_raw": round(self.kelly_raw, 6),
            "kelly_capped": round(self.kelly_capped, 6),
            "amount": self.amount,
            "expected_value": round(self.expected_value, 6),
            "edge": round(self.edge, 6),
            "net_edge": None if self.net_edge is None else round(self.net_edge, 6),
            "cost_per_bet": round(self.cost_per_bet, 6),
            "rejection_reason": self.rejection_reason,
        }


@dataclass(slots=True, frozen=True)
class CycleState:
    """Throttle timestamp, lock timestamp and the recently-analyzed cache."""

    last_call_at: datetime | None = None
    lock_acquired_at: datetime | None = None
    analyzed: dict[str, datetime] = field(default_factory=dict)

    def is_locked(self, now: datetime, max_age: timedelta) -> bool:
        if self.lock_acquired_at is None:
            return False
        return now - self.lock_acquired_at < max_age

    def throttle_remaining(self, now: datetime, interval: timedelta) -> timedelta:
        if self.last_call_at is None:
            return timedelta(0)
        remaining = self.last_call_at + interval - now
        return max(remaining, timedelta(0))

    def pruned(self, now: datetime, ttl: timedelta) -> CycleState:
        fresh = {key: ts for key, ts in self.analyzed.items() if now - ts < ttl}
        return replace(self, analyzed=fresh)

    def recently_analyzed(self, now: datetime, ttl: timedelta) -> frozenset[str]:
        return frozenset(key for key, ts in self.analyzed.items() if now - ts < ttl)

    def with_analyzed(self, market_ids, now: datetime) -> CycleState:
        analyzed = dict(self.analyzed)
        for market_id in market_ids:
            analyzed[market_id] = now
        return replace(self, analyzed=analyzed)

    def with_call(self, now: datetime) -> CycleState:
        return replace(self, last_call_at=now)


@dataclass(slots=True, frozen=True)
class PerformanceSummary:
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0

    @property
    def total_trades(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> float:
        if not self.total_trades:
            return 0.0
        return self.wins / self.total_trades * 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "wins": self.wins,
            "losses": self.losses,
            "total_pnl": round(self.total_pnl, 2),
            "win_rate": round(self.win_rate, 2),
        }
