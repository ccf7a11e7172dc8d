"""Portfolio, position and audit persistence helpers."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import uuid4

from loguru import logger
from sqlalchemy import and_, delete, desc, func, or_, select, update
from sqlalchemy.orm import Session

from app.domain import PerformanceSummary
from app.models import (
    PORTFOLIO_ROW_ID,
    Activity,
    ActivityType,
    CycleLog,
    PortfolioAccount,
    Position,
    PositionStatus,
    utcnow,
)

from .pipeline_models import CycleLogInput, PositionInput
from .types import OrderRejected, PortfolioSnapshot, ReconciliationResult

DEFAULT_MIN_ORDER_PRICE = 0.03


def new_position_id(now: datetime) -> str:
    return f"paper_{int(now.timestamp() * 1000)}_{uuid4().hex[:9]}"


def expected_balance(
    initial_balance: float,
    open_cost: float,
    realized_pnl: float,
) -> float:
    """Balance implied by the ledger: initial minus open cost plus realized pnl."""

    return round(initial_balance - open_cost + realized_pnl, 2)


class LedgerRepository:
    """Encapsulate portfolio balance mutations and position bookkeeping.

    Every balance change is issued as a single ``UPDATE ... SET balance =
    balance + :delta`` so concurrent settlement and order paths never
    overwrite each other.
    """

    def __init__(
        self,
        session: Session,
        *,
        initial_balance: float = 1000.0,
        min_order_price: float = DEFAULT_MIN_ORDER_PRICE,
    ) -> None:
        self._session = session
        self._initial_balance = initial_balance
        self._min_order_price = min_order_price

    # ------------------------------------------------------------------
    # Portfolio

    def get_or_create_account(self) -> PortfolioAccount:
        account = self._session.get(PortfolioAccount, PORTFOLIO_ROW_ID)
        if account is None:
            account = PortfolioAccount(
                id=PORTFOLIO_ROW_ID,
                initial_balance=self._initial_balance,
                balance=self._initial_balance,
                total_pnl=0.0,
                ai_cost_usd=0.0,
            )
            self._session.add(account)
            self._session.flush()
            logger.info("Created portfolio with initial balance {:.2f}", self._initial_balance)
        return account

    def _increment(self, column: str, delta: float, *, require_funds: bool = False) -> bool:
        self.get_or_create_account()
        target = getattr(PortfolioAccount, column)
        statement = update(PortfolioAccount).where(PortfolioAccount.id == PORTFOLIO_ROW_ID)
        if require_funds:
            statement = statement.where(PortfolioAccount.balance >= -delta)
        statement = statement.values({column: target + delta, "updated_at": utcnow()})
        result = self._session.execute(
            statement.execution_options(synchronize_session=False)
        )
        self._session.expire_all()
        return result.rowcount == 1

    def add_balance(self, amount: float) -> None:
        self._increment("balance", amount)

    def deduct_balance(self, amount: float) -> bool:
        """Debit ``amount`` only if the balance covers it; returns False otherwise."""

        return self._increment("balance", -amount, require_funds=True)

    def add_realized_pnl(self, amount: float) -> None:
        self._increment("total_pnl", amount)

    def add_ai_cost(self, amount: float) -> None:
        if amount > 0:
            self._increment("ai_cost_usd", amount)

    def _ledger_totals(self) -> tuple[float, float]:
        open_cost = self._session.execute(
            select(func.coalesce(func.sum(Position.total_cost), 0.0)).where(
                Position.status.in_(PositionStatus.open_values())
            )
        ).scalar_one()
        realized = self._session.execute(
            select(func.coalesce(func.sum(Position.pnl), 0.0)).where(
                Position.status.in_(PositionStatus.settled_values())
            )
        ).scalar_one()
        return float(open_cost or 0.0), float(realized or 0.0)

    def _lock_account(self) -> PortfolioAccount:
        """Take the portfolio row's write lock and return it freshly loaded.

        The touch is a real UPDATE so SQLite grabs its writer lock and Postgres
        its row lock; balance changes from other sessions wait until commit.
        """

        self.get_or_create_account()
        self._session.execute(
            update(PortfolioAccount)
            .where(PortfolioAccount.id == PORTFOLIO_ROW_ID)
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(
            select(PortfolioAccount)
            .where(PortfolioAccount.id == PORTFOLIO_ROW_ID)
            .execution_options(populate_existing=True)
        ).scalar_one()

    def reconcile(self, *, tolerance: float = 0.02) -> ReconciliationResult:
        """Compare the stored balance with the one implied by positions and heal drift."""

        account = self._lock_account()
        open_cost, realized = self._ledger_totals()
        expected = expected_balance(account.initial_balance, open_cost, realized)
        recorded = float(account.balance)
        drift = round(recorded - expected, 6)
        if abs(drift) <= tolerance:
            return ReconciliationResult(recorded, expected, drift, corrected=False)

        logger.warning(
            "Balance drift detected recorded={:.2f} expected={:.2f} drift={:.4f}; correcting",
            recorded,
            expected,
            drift,
        )
        self._session.execute(
            update(PortfolioAccount)
            .where(PortfolioAccount.id == PORTFOLIO_ROW_ID)
            .values(balance=expected, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self._session.expire_all()
        result = ReconciliationResult(recorded, expected, drift, corrected=True)
        self.record_activity(
            ActivityType.BALANCE_DRIFT,
            f"Balance corrected {recorded:.2f} -> {expected:.2f} (drift {drift:+.2f})",
            details=result.to_dict(),
        )
        return result

    def load_portfolio(self, *, tolerance: float = 0.02) -> PortfolioSnapshot:
        reconciliation = self.reconcile(tolerance=tolerance)
        account = self.get_or_create_account()
        open_positions = self.list_open_positions()
        closed_query = (
            select(Position)
            .where(Position.status.not_in(PositionStatus.open_values()))
            .order_by(desc(Position.resolved_at))
        )
        closed_positions = list(self._session.execute(closed_query).scalars().all())
        return PortfolioSnapshot(
            balance=float(account.balance),
            initial_balance=float(account.initial_balance),
            total_pnl=float(account.total_pnl),
            ai_cost_usd=float(account.ai_cost_usd),
            open_positions=open_positions,
            closed_positions=closed_positions,
            reconciliation=reconciliation,
        )

    def reset_portfolio(self, *, initial_balance: float | None = None) -> PortfolioAccount:
        balance = self._initial_balance if initial_balance is None else initial_balance
        self._session.execute(delete(Position))
        self._session.execute(delete(CycleLog))
        self._session.execute(delete(Activity))
        account = self.get_or_create_account()
        account.initial_balance = balance
        account.balance = balance
        account.total_pnl = 0.0
        account.ai_cost_usd = 0.0
        self._session.flush()
        logger.info("Portfolio reset to {:.2f}", balance)
        return account

    # ------------------------------------------------------------------
    # Positions

    def open_position(self, payload: PositionInput, *, now: datetime | None = None) -> Position:
        now = now or utcnow()
        if payload.price < self._min_order_price:
            raise OrderRejected(
                f"price {payload.price:.3f} below minimum {self._min_order_price:.2f}"
            )
        if payload.amount <= 0:
            raise OrderRejected("amount must be positive")

        quantity = payload.amount / payload.price
        cost = round(quantity * payload.price, 6)
        if not self.deduct_balance(cost):
            raise OrderRejected(f"insufficient balance for cost {cost:.2f}")

        status = PositionStatus.PENDING if payload.pending else PositionStatus.FILLED
        position = Position(
            position_id=new_position_id(now),
            market_id=payload.market_id,
            question=payload.question,
            category=payload.category,
            outcome=payload.outcome,
            outcome_index=payload.outcome_index,
            price=payload.price,
            quantity=quantity,
            total_cost=cost,
            potential_payout=quantity,
            status=status.value,
            end_date=payload.end_date,
            created_at=now,
            cycle_id=payload.cycle_id,
            reasoning=payload.reasoning,
        )
        self._session.add(position)
        self._session.flush()
        return position

    def cancel_position(self, position_id: str, *, reason: str, now: datetime | None = None) -> bool:
        position = self._session.get(Position, position_id)
        if position is None:
            return False
        refund = float(position.total_cost)
        result = self._session.execute(
            update(Position)
            .where(
                Position.position_id == position_id,
                Position.status.in_(PositionStatus.open_values()),
            )
            .values(
                status=PositionStatus.CANCELLED.value,
                resolved_at=now or utcnow(),
                pnl=0.0,
                cancel_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.add_balance(refund)
        return True

    def settle_position(
        self,
        position_id: str,
        *,
        winner_index: int,
        now: datetime | None = None,
    ) -> Position | None:
        """Mark an open position won or lost; returns None if it was already settled."""

        position = self._session.get(Position, position_id)
        if position is None or position.status not in PositionStatus.open_values():
            return None
        won = winner_index == position.outcome_index
        cost = float(position.total_cost)
        payout = float(position.potential_payout)
        pnl = round(payout - cost, 6) if won else -cost
        status = PositionStatus.WON if won else PositionStatus.LOST
        result = self._session.execute(
            update(Position)
            .where(
                Position.position_id == position_id,
                Position.status.in_(PositionStatus.open_values()),
            )
            .values(
                status=status.value,
                resolved_at=now or utcnow(),
                pnl=pnl,
                resolution_price=1.0 if won else 0.0,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        if won:
            self.add_balance(payout)
        self.add_realized_pnl(pnl)
        self._session.refresh(position)
        return position

    def list_open_positions(self) -> list[Position]:
        query = (
            select(Position)
            .where(Position.status.in_(PositionStatus.open_values()))
            .order_by(Position.created_at)
        )
        return list(self._session.execute(query).scalars().all())

    def list_positions(self, *, status: str | None = None, limit: int = 100) -> list[Position]:
        query = select(Position).order_by(desc(Position.created_at)).limit(limit)
        if status:
            query = query.where(Position.status == status)
        return list(self._session.execute(query).scalars().all())

    def positions_due_for_resolution(
        self,
        *,
        now: datetime,
        cooldown: timedelta,
        zombie_age: timedelta,
        limit: int | None = None,
    ) -> list[Position]:
        expired = and_(Position.end_date.is_not(None), Position.end_date < now)
        zombie = and_(Position.end_date.is_(None), Position.created_at < now - zombie_age)
        cooled = or_(
            Position.last_checked_at.is_(None),
            Position.last_checked_at <= now - cooldown,
        )
        query = (
            select(Position)
            .where(
                Position.status.in_(PositionStatus.open_values()),
                cooled,
                or_(expired, zombie),
            )
            .order_by(Position.created_at)
        )
        if limit:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars().all())

    def mark_checked(self, position_ids: Sequence[str], *, now: datetime) -> None:
        if not position_ids:
            return
        self._session.execute(
            update(Position)
            .where(Position.position_id.in_(list(position_ids)))
            .values(last_checked_at=now)
            .execution_options(synchronize_session=False)
        )
        self._session.expire_all()

    def performance_summary(self) -> PerformanceSummary:
        rows = self._session.execute(
            select(Position.status, func.count(), func.coalesce(func.sum(Position.pnl), 0.0))
            .where(Position.status.in_(PositionStatus.settled_values()))
            .group_by(Position.status)
        ).all()
        wins = losses = 0
        total_pnl = 0.0
        for status, count, pnl in rows:
            if status == PositionStatus.WON.value:
                wins = int(count)
            else:
                losses = int(count)
            total_pnl += float(pnl or 0.0)
        return PerformanceSummary(wins=wins, losses=losses, total_pnl=total_pnl)

    # ------------------------------------------------------------------
    # Audit records

    def record_activity(
        self,
        entry_type: ActivityType | str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> Activity:
        kind = entry_type.value if isinstance(entry_type, ActivityType) else str(entry_type)
        activity = Activity(
            timestamp=timestamp or utcnow(),
            entry_type=kind,
            message=message,
            details=details,
        )
        self._session.add(activity)
        self._session.flush()
        return activity

    def recent_activities(self, *, limit: int = 50) -> list[Activity]:
        query = select(Activity).order_by(desc(Activity.timestamp), desc(Activity.activity_id)).limit(limit)
        return list(self._session.execute(query).scalars().all())

    def record_cycle_log(self, payload: CycleLogInput) -> CycleLog:
        record = CycleLog(
            cycle_id=payload.cycle_id,
            started_at=payload.started_at,
            finished_at=payload.finished_at,
            status=payload.status,
            total_markets=payload.total_markets,
            pool_breakdown=payload.pool_breakdown,
            pool=payload.pool,
            batches=payload.batches,
            provider=payload.provider,
            model=payload.model,
            input_tokens=payload.input_tokens,
            output_tokens=payload.output_tokens,
            cost_usd=payload.cost_usd,
            response_time_ms=payload.response_time_ms,
            summary=payload.summary,
            results=payload.results,
            bets_placed=payload.bets_placed,
            next_scan_secs=payload.next_scan_secs,
            error=payload.error,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def recent_cycle_logs(self, *, limit: int = 20) -> list[CycleLog]:
        query = select(CycleLog).order_by(desc(CycleLog.started_at)).limit(limit)
        return list(self._session.execute(query).scalars().all())


__all__ = ["LedgerRepository", "expected_balance", "new_position_id"]
