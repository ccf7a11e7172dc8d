"""Standalone job that settles open paper positions whose markets have closed."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db import SessionLocal, init_db
from app.domain import Contract
from app.models import ActivityType, PositionStatus
from app.repositories import LedgerRepository
from app.services.portfolio_service import reconcile_portfolio
from ingestion.client import PolymarketClient
from ingestion.normalize import normalize_market
from ingestion.service import session_scope

CLOSED_PRICE_THRESHOLD = 0.95
_AMBIGUOUS_PRICE_GAP = 0.01


class MarketLookup(Protocol):
    def fetch_market(self, market_id: str, *, retries: int = 1) -> dict[str, Any] | None: ...

    def close(self) -> None: ...


@dataclass(slots=True, frozen=True)
class DuePosition:
    position_id: str
    market_id: str
    question: str
    status: str
    outcome: str


@dataclass(slots=True)
class ResolutionSummary:
    checked_positions: int = 0
    won: int = 0
    lost: int = 0
    cancelled: int = 0
    still_open: int = 0
    already_settled: int = 0
    realized_pnl: float = 0.0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_positions": self.checked_positions,
            "won": self.won,
            "lost": self.lost,
            "cancelled": self.cancelled,
            "still_open": self.still_open,
            "already_settled": self.already_settled,
            "realized_pnl": round(self.realized_pnl, 2),
            "failures": self.failures,
        }


def is_closed(contract: Contract) -> bool:
    """Explicitly closed, or no longer accepting orders with one side priced out."""

    if contract.closed:
        return True
    return contract.accepting_orders is False and max(contract.prices) >= CLOSED_PRICE_THRESHOLD


def winner_index(contract: Contract) -> int | None:
    """First outcome priced at or above the threshold, else the highest-priced one.

    Returns None when both outcomes are priced the same, which happens when the
    upstream payload carries no final prices yet.
    """

    for index, price in enumerate(contract.prices):
        if price >= CLOSED_PRICE_THRESHOLD:
            return index
    first, second = contract.prices
    if abs(first - second) < _AMBIGUOUS_PRICE_GAP:
        return None
    return 0 if first > second else 1


class ResolutionPipeline:
    """Check due positions against the market source and settle the closed ones."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client_factory: Callable[[], MarketLookup] | None = None,
        session_factory: Callable[[], Session] | None = None,
        init_db_fn: Callable[[], None] = init_db,
    ) -> None:
        self.settings = settings or get_settings()
        if session_factory is None:
            init_db_fn()
            session_factory = SessionLocal
        self._session_factory = session_factory
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> MarketLookup:
        return PolymarketClient(
            base_url=str(self.settings.polymarket_base_url),
            markets_path=self.settings.polymarket_markets_path,
            page_size=1,
            timeout=self.settings.market_request_timeout_seconds,
        )

    def _ledger(self, session: Session) -> LedgerRepository:
        return LedgerRepository(
            session,
            initial_balance=self.settings.initial_balance,
            min_order_price=self.settings.min_order_price,
        )

    def _claim_due(self, *, now: datetime, limit: int | None) -> list[DuePosition]:
        with session_scope(self._session_factory) as session:
            ledger = self._ledger(session)
            due = ledger.positions_due_for_resolution(
                now=now,
                cooldown=timedelta(minutes=self.settings.resolution_check_cooldown_minutes),
                zombie_age=timedelta(days=self.settings.resolution_zombie_age_days),
                limit=limit,
            )
            claimed = [
                DuePosition(
                    position_id=position.position_id,
                    market_id=position.market_id,
                    question=position.question,
                    status=position.status,
                    outcome=position.outcome,
                )
                for position in due
            ]
            ledger.mark_checked([item.position_id for item in claimed], now=now)
        return claimed

    def run(self, *, limit: int | None = None, now: datetime | None = None) -> ResolutionSummary:
        now = now or datetime.now(timezone.utc)
        summary = ResolutionSummary()
        due = self._claim_due(now=now, limit=limit)
        if not due:
            logger.info("No positions due for resolution")
            return summary

        logger.info("Resolution sweep evaluating {} positions", len(due))
        contracts: dict[str, Contract | None] = {}
        client = self._client_factory()
        try:
            for chunk in _chunked(due, self.settings.resolution_batch_size):
                for item in chunk:
                    summary.checked_positions += 1
                    if item.market_id not in contracts:
                        payload = client.fetch_market(item.market_id, retries=1)
                        contracts[item.market_id] = normalize_market(payload) if payload else None
                    contract = contracts[item.market_id]
                    if contract is None:
                        summary.failures.append(
                            {"position_id": item.position_id, "reason": "market data unavailable"}
                        )
                        continue
                    if not is_closed(contract):
                        summary.still_open += 1
                        continue
                    self._settle(item, contract, summary, now=now)
        finally:
            client.close()

        if summary.won or summary.lost or summary.cancelled:
            with session_scope(self._session_factory) as session:
                reconcile_portfolio(session, settings=self.settings)

        logger.info(
            "Resolution sweep finished: checked={}, won={}, lost={}, cancelled={}, open={}, pnl={:.2f}",
            summary.checked_positions,
            summary.won,
            summary.lost,
            summary.cancelled,
            summary.still_open,
            summary.realized_pnl,
        )
        return summary

    def _settle(
        self,
        item: DuePosition,
        contract: Contract,
        summary: ResolutionSummary,
        *,
        now: datetime,
    ) -> None:
        with session_scope(self._session_factory) as session:
            ledger = self._ledger(session)
            if item.status == PositionStatus.PENDING.value:
                if ledger.cancel_position(item.position_id, reason="market closed before fill", now=now):
                    summary.cancelled += 1
                    ledger.record_activity(
                        ActivityType.WARNING,
                        f"Cancelled unfilled order on \"{item.question[:80]}\"; market closed",
                        details={"position_id": item.position_id, "market_id": item.market_id},
                        timestamp=now,
                    )
                else:
                    summary.already_settled += 1
                return

            winner = winner_index(contract)
            if winner is None:
                summary.failures.append(
                    {"position_id": item.position_id, "reason": "closed market without decisive prices"}
                )
                return
            position = ledger.settle_position(item.position_id, winner_index=winner, now=now)
            if position is None:
                summary.already_settled += 1
                return

            pnl = float(position.pnl or 0.0)
            summary.realized_pnl += pnl
            won = position.status == PositionStatus.WON.value
            if won:
                summary.won += 1
            else:
                summary.lost += 1
            ledger.record_activity(
                ActivityType.RESOLVED,
                f"{'WON' if won else 'LOST'} {item.outcome} on \"{item.question[:80]}\" "
                f"pnl ${pnl:+.2f}",
                details={
                    "position_id": item.position_id,
                    "market_id": item.market_id,
                    "winner": contract.outcomes[winner],
                    "pnl": round(pnl, 2),
                },
                timestamp=now,
            )


def _chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    if size <= 0:
        yield items
        return
    for index in range(0, len(items), size):
        yield items[index : index + size]


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Settle open paper positions whose markets have closed",
    )
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of positions to check")
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: ResolutionSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Resolution summary written to {}", path)


def main() -> ResolutionSummary:
    args = _parse_args()
    pipeline = ResolutionPipeline(get_settings())
    summary = pipeline.run(limit=args.limit)
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
