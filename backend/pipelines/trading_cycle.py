from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Sequence
from uuid import uuid4

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db import SessionLocal, init_db
from app.domain import Contract, PerformanceSummary
from app.models import ActivityType
from app.repositories import (
    CycleLogInput,
    LedgerRepository,
    OrderRejected,
    PositionInput,
)
from ingestion.client import PolymarketClient
from ingestion.service import MarketSource, fetch_contracts

from .context import CycleContext
from .trading.base import OracleExecutionError, OracleUnavailable
from .trading.clustering import (
    broad_cluster_key,
    dedupe_assessments,
    dedupe_by_cluster,
    drop_open_conflicts,
)
from .trading.controller import CycleController, CycleGate
from .trading.diversify import classify_category, diversify, make_batches
from .trading.interpreter import ParseError, enrich_assessments, interpret_reply
from .trading.market_filter import FilterPolicy, filter_markets
from .trading.oracle import ForecastOracle, build_oracle
from .trading.prompt import build_prompt
from .trading.rules import load_rules
from .trading.sizing import SizingPolicy, size_position

STATUS_ALREADY_RUNNING = "already_running"
STATUS_WAITING = "waiting"
STATUS_SKIPPED = "skipped"
STATUS_NO_CANDIDATES = "no_candidates"
STATUS_COMPLETED = "completed"
STATUS_COMPLETED_WITH_ERRORS = "completed_with_errors"
STATUS_FAILED = "failed"


@dataclass(slots=True, frozen=True)
class HeldPositionView:
    market_id: str
    question: str
    outcome: str
    price: float


@dataclass(slots=True)
class PortfolioView:
    balance: float
    open_positions: list[HeldPositionView]
    performance: PerformanceSummary

    @property
    def open_market_ids(self) -> frozenset[str]:
        return frozenset(position.market_id for position in self.open_positions)


@dataclass(slots=True)
class CycleSummary:
    cycle_id: str
    started_at: datetime
    dry_run: bool = False
    status: str = "running"
    message: str = ""
    finished_at: datetime | None = None
    wait_seconds: int | None = None
    total_markets: int = 0
    pool_size: int = 0
    analyzed: int = 0
    batches_sent: int = 0
    bets_placed: int = 0
    amount_committed: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    response_time_ms: int = 0
    breakdown: dict[str, Any] = field(default_factory=dict)
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "dry_run": self.dry_run,
            "status": self.status,
            "message": self.message,
            "wait_seconds": self.wait_seconds,
            "total_markets": self.total_markets,
            "pool_size": self.pool_size,
            "analyzed": self.analyzed,
            "batches_sent": self.batches_sent,
            "bets_placed": self.bets_placed,
            "amount_committed": round(self.amount_committed, 2),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": round(self.cost_usd, 6),
            "response_time_ms": self.response_time_ms,
            "breakdown": self.breakdown,
            "results": self.results,
            "errors": self.errors,
        }


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one paper-trading decision cycle")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore the minimum interval between oracle calls",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Call the oracle and size bets without writing to the ledger",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON summary to the specified path",
    )
    return parser.parse_args()


def _ledger(session: Session, settings: Settings) -> LedgerRepository:
    return LedgerRepository(
        session,
        initial_balance=settings.initial_balance,
        min_order_price=settings.min_order_price,
    )


def _default_client_factory(settings: Settings) -> Callable[[], MarketSource]:
    def factory() -> MarketSource:
        return PolymarketClient(
            base_url=str(settings.polymarket_base_url),
            markets_path=settings.polymarket_markets_path,
            page_size=settings.market_page_size,
            max_total=settings.market_max_total,
            timeout=settings.market_request_timeout_seconds,
        )

    return factory


def _load_portfolio(context: CycleContext) -> PortfolioView:
    with context.session() as session:
        ledger = _ledger(session, context.settings)
        snapshot = ledger.load_portfolio(tolerance=context.settings.balance_drift_tolerance)
        held = [
            HeldPositionView(
                market_id=position.market_id,
                question=position.question,
                outcome=position.outcome,
                price=float(position.price),
            )
            for position in snapshot.open_positions
        ]
        return PortfolioView(
            balance=snapshot.balance,
            open_positions=held,
            performance=ledger.performance_summary(),
        )


def _pool_entry(contract: Contract) -> dict[str, Any]:
    return {
        "market_id": contract.market_id,
        "question": contract.question,
        "category": classify_category(contract),
        "yes_price": contract.yes_price,
        "no_price": contract.no_price,
        "volume": contract.volume,
        "liquidity": contract.liquidity,
        "end_time": contract.end_time.isoformat() if contract.end_time else None,
    }


def _record_outcome(
    context: CycleContext,
    summary: CycleSummary,
    *,
    message: str,
    activity_type: ActivityType = ActivityType.INFO,
) -> None:
    """Write the cycle log row and a closing activity for this run."""

    summary.message = message
    if context.dry_run:
        return
    next_scan = int(context.settings.cycle_min_interval_seconds)
    with context.session() as session:
        ledger = _ledger(session, context.settings)
        ledger.record_cycle_log(
            CycleLogInput(
                cycle_id=context.cycle_id,
                started_at=context.started_at,
                finished_at=summary.finished_at or datetime.now(timezone.utc),
                status=summary.status,
                total_markets=summary.total_markets,
                pool_breakdown=summary.breakdown or None,
                pool=context.pool,
                batches=context.batches,
                provider=context.provider,
                model=context.model,
                input_tokens=summary.input_tokens,
                output_tokens=summary.output_tokens,
                cost_usd=summary.cost_usd,
                response_time_ms=summary.response_time_ms,
                summary=message,
                results=summary.results,
                bets_placed=summary.bets_placed,
                next_scan_secs=next_scan,
                error="; ".join(summary.errors) or None,
            )
        )
        ledger.record_activity(
            activity_type,
            message,
            details={"cycle_id": context.cycle_id, "status": summary.status},
            timestamp=summary.finished_at,
        )


def _execute_batches(
    context: CycleContext,
    summary: CycleSummary,
    *,
    oracle: ForecastOracle,
    batches: Sequence[Sequence[Contract]],
    portfolio: PortfolioView,
    now: datetime,
) -> None:
    settings = context.settings
    policy = SizingPolicy.from_settings(settings, oracle.provider_name)
    cash = portfolio.balance
    held = list(portfolio.open_positions)
    held_keys = {key for key in (broad_cluster_key(p.question) for p in held) if key}

    for batch_index, batch in enumerate(batches, start=1):
        prompt = build_prompt(
            batch,
            open_positions=held,
            bankroll=cash,
            performance=portfolio.performance,
            now=now,
            max_edge=settings.max_enriched_edge,
        )
        batch_log: dict[str, Any] = {
            "batch": batch_index,
            "market_ids": [contract.market_id for contract in batch],
            "prompt": prompt,
        }
        context.batches.append(batch_log)
        context.oracle_called = True
        try:
            reply = oracle.assess(prompt, cycle_id=context.cycle_id, batch_index=batch_index)
        except OracleExecutionError as exc:
            logger.error("Oracle batch {} failed; abandoning remaining batches: {}", batch_index, exc)
            batch_log["error"] = str(exc)
            summary.errors.append(f"batch {batch_index}: {exc}")
            break

        summary.batches_sent += 1
        summary.analyzed += len(batch)
        summary.input_tokens += reply.input_tokens
        summary.output_tokens += reply.output_tokens
        summary.cost_usd += reply.cost_usd
        summary.response_time_ms += reply.response_time_ms
        context.state = context.state.with_analyzed(batch_log["market_ids"], now)
        batch_log.update(reply.to_dict())
        batch_log["raw_response"] = batch_log.pop("text")

        parsed = interpret_reply(reply.text)
        if isinstance(parsed, ParseError):
            logger.warning("Batch {} reply unusable: {}", batch_index, parsed.reason)
            batch_log["error"] = parsed.reason
            summary.errors.append(f"batch {batch_index}: {parsed.reason}")
            if not context.dry_run:
                with context.session() as session:
                    _ledger(session, settings).add_ai_cost(reply.cost_usd)
            continue

        batch_log["summary"] = parsed.summary
        batch_log["skipped"] = list(parsed.skipped)
        batch_log["dropped"] = list(parsed.dropped)
        batch_log["recommendations"] = [item.to_dict() for item in parsed.assessments]

        enrichment = enrich_assessments(
            parsed.assessments, batch, max_edge=settings.max_enriched_edge
        )
        batch_log["rejections"] = enrichment.rejections
        priced = dedupe_assessments(enrichment.priced)
        amortized_cost = reply.cost_usd / max(len(parsed.assessments), 1)

        with context.session() as session:
            ledger = _ledger(session, settings)
            if not context.dry_run:
                ledger.add_ai_cost(reply.cost_usd)
            for item in priced:
                assessment = item.assessment
                contract = item.contract
                decision = size_position(assessment, item.price, cash, amortized_cost, policy)
                result: dict[str, Any] = {
                    "market_id": contract.market_id,
                    "question": contract.question,
                    "side": assessment.side.value,
                    "probability": assessment.probability,
                    "confidence": assessment.confidence,
                    "batch": batch_index,
                    "decision": decision.to_dict(),
                }
                summary.results.append(result)
                if not decision.accepted:
                    result["status"] = "rejected"
                    result["reason"] = decision.rejection_reason
                    logger.info("Rejected {}: {}", contract.market_id, decision.rejection_reason)
                    continue

                key = broad_cluster_key(contract.question)
                if key and key in held_keys:
                    result["status"] = "rejected"
                    result["reason"] = "cluster already held"
                    continue

                outcome = contract.outcomes[decision.outcome_index]
                if context.dry_run:
                    cost = decision.amount
                    result["status"] = "simulated"
                else:
                    try:
                        position = ledger.open_position(
                            PositionInput(
                                market_id=contract.market_id,
                                question=contract.question,
                                outcome=outcome,
                                outcome_index=decision.outcome_index,
                                price=decision.price,
                                amount=decision.amount,
                                end_date=contract.end_time,
                                category=classify_category(contract),
                                cycle_id=context.cycle_id,
                                reasoning={
                                    "assessment": assessment.to_dict(),
                                    "sizing": decision.to_dict(),
                                    "provider": oracle.provider_name,
                                    "model": oracle.model,
                                },
                            ),
                            now=now,
                        )
                    except OrderRejected as exc:
                        result["status"] = "rejected"
                        result["reason"] = str(exc)
                        logger.warning("Ledger refused order on {}: {}", contract.market_id, exc)
                        continue
                    cost = float(position.total_cost)
                    result["status"] = "placed"
                    result["position_id"] = position.position_id
                    ledger.record_activity(
                        ActivityType.ORDER,
                        f"BUY {outcome} ${cost:.2f} @ {decision.price:.3f} on "
                        f"\"{contract.question[:80]}\" (edge {decision.edge:+.3f}, "
                        f"conf {assessment.confidence:.0f})",
                        details={
                            "position_id": position.position_id,
                            "market_id": contract.market_id,
                            "cycle_id": context.cycle_id,
                            "expected_value": round(decision.expected_value, 4),
                        },
                        timestamp=now,
                    )
                cash = round(cash - cost, 6)
                summary.bets_placed += 1
                summary.amount_committed += cost
                held.append(
                    HeldPositionView(contract.market_id, contract.question, outcome, decision.price)
                )
                if key:
                    held_keys.add(key)
                logger.info(
                    "Placed {} ${:.2f} on {} (kelly {:.3f}, ev {:.2f})",
                    outcome,
                    cost,
                    contract.market_id,
                    decision.kelly_capped,
                    decision.expected_value,
                )


def _run_locked(
    context: CycleContext,
    summary: CycleSummary,
    *,
    now: datetime,
    client_factory: Callable[[], MarketSource],
    oracle_factory: Callable[[Settings], ForecastOracle],
) -> None:
    settings = context.settings
    portfolio = _load_portfolio(context)
    if portfolio.balance < settings.min_bet_usd:
        summary.status = STATUS_SKIPPED
        _record_outcome(
            context,
            summary,
            message=f"Insufficient bankroll ${portfolio.balance:.2f}; cycle skipped",
            activity_type=ActivityType.WARNING,
        )
        return

    oracle = oracle_factory(settings)
    context.provider = oracle.provider_name
    context.model = oracle.model
    try:
        oracle.ensure_ready()
    except OracleUnavailable as exc:
        summary.status = STATUS_SKIPPED
        summary.errors.append(str(exc))
        _record_outcome(
            context,
            summary,
            message=f"Oracle {oracle.provider_name} unavailable: {exc}",
            activity_type=ActivityType.WARNING,
        )
        return

    client = client_factory()
    try:
        contracts = fetch_contracts(client)
    finally:
        client.close()
    summary.total_markets = len(contracts)
    if not contracts:
        summary.status = STATUS_FAILED
        summary.errors.append("market source returned no markets")
        _record_outcome(
            context, summary, message="No markets fetched", activity_type=ActivityType.ERROR
        )
        return

    rules = load_rules()
    filtered = filter_markets(
        contracts,
        open_market_ids=portfolio.open_market_ids,
        now=now,
        capital=portfolio.balance,
        policy=FilterPolicy.from_settings(settings),
        rules=rules,
    )
    deduped, collapsed = dedupe_by_cluster(filtered.pool)
    pool, conflicts = drop_open_conflicts(
        deduped, [position.question for position in portfolio.open_positions]
    )
    summary.breakdown = {
        **filtered.breakdown.to_dict(),
        "min_liquidity": round(filtered.min_liquidity, 2),
        "clustered": collapsed,
        "open_conflicts": len(conflicts),
        "pool": len(pool),
    }
    summary.pool_size = len(pool)
    if not pool:
        summary.status = STATUS_NO_CANDIDATES
        _record_outcome(
            context,
            summary,
            message=f"No tradeable candidates among {len(contracts)} markets",
        )
        return

    recent = context.state.recently_analyzed(now, timedelta(seconds=settings.cycle_min_interval_seconds))
    fresh = [contract for contract in pool if contract.market_id not in recent]
    summary.breakdown["recently_analyzed"] = len(pool) - len(fresh)
    if not fresh:
        summary.status = STATUS_NO_CANDIDATES
        _record_outcome(
            context,
            summary,
            message=f"All {len(pool)} candidates were analyzed recently",
        )
        return

    selected = diversify(fresh, max_size=settings.cycle_max_analyzed, rules=rules)
    batches = make_batches(
        selected, batch_size=settings.cycle_batch_size, max_batches=settings.cycle_max_batches
    )
    context.pool = [_pool_entry(contract) for contract in selected]
    logger.info(
        "Cycle {}: {} candidates, {} selected in {} batches ({})",
        context.cycle_id,
        len(fresh),
        len(selected),
        len(batches),
        filtered.breakdown.filter_label,
    )

    _execute_batches(
        context,
        summary,
        oracle=oracle,
        batches=batches,
        portfolio=portfolio,
        now=now,
    )

    summary.status = STATUS_COMPLETED_WITH_ERRORS if summary.errors else STATUS_COMPLETED
    summary.finished_at = datetime.now(timezone.utc)
    _record_outcome(
        context,
        summary,
        message=(
            f"Cycle finished: {summary.bets_placed} bets (${summary.amount_committed:.2f}), "
            f"{summary.analyzed} analyzed in {summary.batches_sent} batches, "
            f"oracle cost ${summary.cost_usd:.4f}"
        ),
        activity_type=ActivityType.WARNING if summary.errors else ActivityType.INFO,
    )


def run_cycle(
    settings: Settings | None = None,
    *,
    force: bool = False,
    dry_run: bool = False,
    now: datetime | None = None,
    client_factory: Callable[[], MarketSource] | None = None,
    oracle_factory: Callable[[Settings], ForecastOracle] | None = None,
    session_factory: Callable[[], Session] | None = None,
    init_db_fn: Callable[[], None] = init_db,
    summary_path: Path | None = None,
) -> CycleSummary:
    settings = settings or get_settings()
    if session_factory is None:
        init_db_fn()
        session_factory = SessionLocal
    client_factory = client_factory or _default_client_factory(settings)
    oracle_factory = oracle_factory or build_oracle

    now = now or datetime.now(timezone.utc)
    cycle_id = f"cycle_{now.strftime('%Y%m%dT%H%M%S')}_{uuid4().hex[:8]}"
    summary = CycleSummary(cycle_id=cycle_id, started_at=now, dry_run=dry_run)

    controller = CycleController(session_factory, settings)
    gate = controller.begin(now, force=force)
    if gate.gate is CycleGate.ALREADY_RUNNING:
        summary.status = STATUS_ALREADY_RUNNING
        summary.message = "Another cycle is already running"
        summary.finished_at = now
        return summary
    if gate.gate is CycleGate.WAITING:
        summary.status = STATUS_WAITING
        summary.wait_seconds = gate.wait_seconds
        summary.message = f"Next oracle call allowed in {gate.wait_seconds}s"
        summary.finished_at = now
        return summary

    context = CycleContext(
        cycle_id=cycle_id,
        started_at=now,
        settings=settings,
        session_factory=session_factory,
        dry_run=dry_run,
        state=gate.state,
    )
    logger.info("Starting trading cycle {} (force={}, dry_run={})", cycle_id, force, dry_run)
    try:
        _run_locked(
            context,
            summary,
            now=now,
            client_factory=client_factory,
            oracle_factory=oracle_factory,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Trading cycle {} failed", cycle_id)
        summary.status = STATUS_FAILED
        summary.errors.append(f"{exc.__class__.__name__}: {exc}")
        summary.finished_at = datetime.now(timezone.utc)
        try:
            _record_outcome(
                context, summary, message=f"Cycle failed: {exc}", activity_type=ActivityType.ERROR
            )
        except Exception:  # noqa: BLE001
            logger.exception("Failed to record failure of cycle {}", cycle_id)
    finally:
        if dry_run:
            controller.release()
        else:
            controller.finish(context.state, now, called=context.oracle_called)

    summary.finished_at = summary.finished_at or datetime.now(timezone.utc)
    logger.info(
        "Trading cycle {} {}: bets={}, analyzed={}, cost=${:.4f}",
        cycle_id,
        summary.status,
        summary.bets_placed,
        summary.analyzed,
        summary.cost_usd,
    )

    target = summary_path
    if target is None and settings.cycle_summary_dir:
        target = Path(settings.cycle_summary_dir) / f"{cycle_id}.json"
    if target is not None:
        _write_summary(Path(target), summary)
        logger.info("Wrote cycle summary to {}", target)
    return summary


def _write_summary(path: Path, summary: CycleSummary) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(summary.to_dict(), indent=2, sort_keys=True, default=str) + "\n",
        encoding="utf-8",
    )


def main() -> None:
    args = _parse_args()
    run_cycle(
        get_settings(),
        force=args.force,
        dry_run=args.dry_run,
        summary_path=args.summary_path,
    )


if __name__ == "__main__":
    main()
