from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Position(BaseModel):
    position_id: str
    market_id: str
    question: str
    category: str | None = None
    outcome: str
    outcome_index: int
    price: float
    quantity: float
    total_cost: float
    potential_payout: float
    status: str
    end_date: datetime | None = None
    created_at: datetime
    resolved_at: datetime | None = None
    last_checked_at: datetime | None = None
    pnl: float | None = None
    cancel_reason: str | None = None
    cycle_id: str | None = None
    reasoning: dict[str, Any] | None = None

    model_config = {"from_attributes": True}

    @field_validator("price", "quantity", "total_cost", "potential_payout", "pnl", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float | None:
        if value is None:
            return None
        return float(value)


class PositionList(BaseModel):
    total: int
    items: list[Position]


class Reconciliation(BaseModel):
    recorded_balance: float
    expected_balance: float
    drift: float
    corrected: bool


class Performance(BaseModel):
    total_trades: int
    wins: int
    losses: int
    total_pnl: float
    win_rate: float


class Portfolio(BaseModel):
    balance: float
    initial_balance: float
    invested: float
    total_pnl: float
    ai_cost_usd: float
    open_positions: int
    closed_positions: int
    performance: Performance
    reconciliation: Reconciliation | None = None


class CycleLog(BaseModel):
    cycle_id: str
    started_at: datetime
    finished_at: datetime | None = None
    status: str
    total_markets: int
    pool_breakdown: dict[str, Any] | None = None
    provider: str | None = None
    model: str | None = None
    input_tokens: int
    output_tokens: int
    cost_usd: float
    response_time_ms: int
    summary: str | None = None
    results: list[dict[str, Any]] | None = None
    bets_placed: int
    next_scan_secs: int | None = None
    error: str | None = None

    model_config = {"from_attributes": True}

    @field_validator("cost_usd", mode="before")
    @classmethod
    def _coerce_cost(cls, value: Any) -> float:
        return float(value or 0.0)


class CycleLogList(BaseModel):
    total: int
    items: list[CycleLog]


class Activity(BaseModel):
    activity_id: int
    timestamp: datetime
    entry_type: str
    message: str
    details: dict[str, Any] | None = None

    model_config = {"from_attributes": True}


class ActivityList(BaseModel):
    total: int
    items: list[Activity]


class CycleRunRequest(BaseModel):
    force: bool = Field(False, description="Ignore the minimum interval between oracle calls")
    dry_run: bool = Field(False, description="Size bets without writing to the ledger")


class CycleRunResult(BaseModel):
    cycle_id: str
    status: str
    message: str = ""
    wait_seconds: int | None = None
    total_markets: int = 0
    pool_size: int = 0
    analyzed: int = 0
    batches_sent: int = 0
    bets_placed: int = 0
    amount_committed: float = 0.0
    cost_usd: float = 0.0
    errors: list[str] = Field(default_factory=list)


class ResolutionRunResult(BaseModel):
    checked_positions: int
    won: int
    lost: int
    cancelled: int
    still_open: int
    already_settled: int
    realized_pnl: float
    failures: list[dict[str, Any]] = Field(default_factory=list)


class ResetResult(BaseModel):
    cycle_state_cleared: bool
    portfolio_reset: bool
    balance: float | None = None
