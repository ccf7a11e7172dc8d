"""Shared repository result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.models import Position


@dataclass(slots=True)
class ReconciliationResult:
    """Outcome of comparing the stored balance with the ledger-derived one."""

    recorded_balance: float
    expected_balance: float
    drift: float
    corrected: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "recorded_balance": round(self.recorded_balance, 2),
            "expected_balance": round(self.expected_balance, 2),
            "drift": round(self.drift, 4),
            "corrected": self.corrected,
        }


@dataclass(slots=True)
class PortfolioSnapshot:
    """Portfolio totals plus open/closed positions after reconciliation."""

    balance: float
    initial_balance: float
    total_pnl: float
    ai_cost_usd: float
    open_positions: list[Position] = field(default_factory=list)
    closed_positions: list[Position] = field(default_factory=list)
    reconciliation: ReconciliationResult | None = None

    @property
    def invested(self) -> float:
        return round(sum(position.total_cost for position in self.open_positions), 2)

    @property
    def open_market_ids(self) -> frozenset[str]:
        return frozenset(position.market_id for position in self.open_positions)


class OrderRejected(ValueError):
    """Raised when the ledger refuses to open a position."""


__all__ = ["OrderRejected", "PortfolioSnapshot", "ReconciliationResult"]
