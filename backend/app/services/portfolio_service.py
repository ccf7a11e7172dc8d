"""Read models and maintenance operations for the paper portfolio."""

from __future__ import annotations

from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.repositories import CycleStateRepository, LedgerRepository, ReconciliationResult
from app.schemas import (
    Performance,
    Portfolio,
    Reconciliation,
    ResetResult,
)


def reconcile_portfolio(session: Session, *, settings: Settings | None = None) -> ReconciliationResult:
    """Re-derive the balance from positions and heal drift beyond the tolerance."""

    settings = settings or get_settings()
    ledger = LedgerRepository(session, initial_balance=settings.initial_balance)
    return ledger.reconcile(tolerance=settings.balance_drift_tolerance)


class PortfolioService:
    """Expose reconciled portfolio state to the API layer."""

    def __init__(self, session: Session, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._ledger = LedgerRepository(
            session,
            initial_balance=self._settings.initial_balance,
            min_order_price=self._settings.min_order_price,
        )

    def portfolio(self) -> Portfolio:
        snapshot = self._ledger.load_portfolio(tolerance=self._settings.balance_drift_tolerance)
        performance = self._ledger.performance_summary()
        reconciliation = snapshot.reconciliation
        result = Portfolio(
            balance=round(snapshot.balance, 2),
            initial_balance=round(snapshot.initial_balance, 2),
            invested=snapshot.invested,
            total_pnl=round(snapshot.total_pnl, 2),
            ai_cost_usd=round(snapshot.ai_cost_usd, 6),
            open_positions=len(snapshot.open_positions),
            closed_positions=len(snapshot.closed_positions),
            performance=Performance(**performance.to_dict()),
            reconciliation=Reconciliation(**reconciliation.to_dict()) if reconciliation else None,
        )
        # Drift corrections must survive the request.
        self._session.commit()
        return result

    def positions(self, *, status: str | None = None, limit: int = 100):
        return self._ledger.list_positions(status=status, limit=limit)

    def cycle_logs(self, *, limit: int = 20):
        return self._ledger.recent_cycle_logs(limit=limit)

    def activities(self, *, limit: int = 50):
        return self._ledger.recent_activities(limit=limit)

    def reset(self, *, portfolio: bool = False) -> ResetResult:
        """Clear cycle state; with ``portfolio`` also wipe positions, logs and activities."""

        CycleStateRepository(self._session).clear()
        balance: float | None = None
        if portfolio:
            account = self._ledger.reset_portfolio(initial_balance=self._settings.initial_balance)
            balance = float(account.balance)
        self._session.commit()
        return ResetResult(cycle_state_cleared=True, portfolio_reset=portfolio, balance=balance)


__all__ = ["PortfolioService", "reconcile_portfolio"]
