from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, DateTime, Float, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base

PORTFOLIO_ROW_ID = 1


class PositionStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    WON = "won"
    LOST = "lost"
    CANCELLED = "cancelled"

    @classmethod
    def open_values(cls) -> tuple[str, ...]:
        return (cls.PENDING.value, cls.FILLED.value)

    @classmethod
    def settled_values(cls) -> tuple[str, ...]:
        return (cls.WON.value, cls.LOST.value)


class ActivityType(str, Enum):
    INFO = "Info"
    ORDER = "Order"
    RESOLVED = "Resolved"
    WARNING = "Warning"
    ERROR = "Error"
    BALANCE_DRIFT = "BalanceDrift"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""

    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _money() -> Numeric:
    return Numeric(18, 6, asdecimal=False)


class PortfolioAccount(Base):
    __tablename__ = "portfolio"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=PORTFOLIO_ROW_ID)
    initial_balance: Mapped[float] = mapped_column(_money(), nullable=False)
    balance: Mapped[float] = mapped_column(_money(), nullable=False)
    total_pnl: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    ai_cost_usd: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Position(Base):
    __tablename__ = "positions"

    position_id: Mapped[str] = mapped_column(String, primary_key=True)
    market_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    outcome_index: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[float] = mapped_column(_money(), nullable=False)
    quantity: Mapped[float] = mapped_column(_money(), nullable=False)
    total_cost: Mapped[float] = mapped_column(_money(), nullable=False)
    potential_payout: Mapped[float] = mapped_column(_money(), nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=PositionStatus.FILLED.value, index=True
    )
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pnl: Mapped[float | None] = mapped_column(_money(), nullable=True)
    resolution_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cycle_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reasoning: Mapped[dict | None] = mapped_column(JSON, nullable=True)


class BotState(Base):
    """Key-value rows backing the cycle throttle, lock and analyzed cache."""

    __tablename__ = "bot_state"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class CycleLog(Base):
    __tablename__ = "cycle_logs"

    cycle_id: Mapped[str] = mapped_column(String, primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    total_markets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pool_breakdown: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    pool: Mapped[list | None] = mapped_column(JSON, nullable=True)
    batches: Mapped[list | None] = mapped_column(JSON, nullable=True)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[float] = mapped_column(_money(), nullable=False, default=0.0)
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    results: Mapped[list | None] = mapped_column(JSON, nullable=True)
    bets_placed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_scan_secs: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)


class Activity(Base):
    __tablename__ = "activities"

    activity_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    entry_type: Mapped[str] = mapped_column(String, nullable=False, default=ActivityType.INFO.value)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
