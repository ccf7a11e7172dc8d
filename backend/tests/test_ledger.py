from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from app.models import ActivityType, PortfolioAccount, PositionStatus
from app.repositories import (
    CycleLogInput,
    LedgerRepository,
    OrderRejected,
    PositionInput,
    expected_balance,
)


def _order(market_id="100", *, price=0.40, amount=100.0, outcome_index=0, pending=False, end_date=None):
    return PositionInput(
        market_id=market_id,
        question=f"Will measure {market_id} pass the state assembly?",
        outcome="Yes" if outcome_index == 0 else "No",
        outcome_index=outcome_index,
        price=price,
        amount=amount,
        end_date=end_date,
        category="politics",
        cycle_id="cycle_test",
        pending=pending,
    )


@pytest.fixture
def ledger(db_session):
    return LedgerRepository(db_session, initial_balance=1_000.0)


def test_account_is_created_with_initial_balance(ledger):
    account = ledger.get_or_create_account()

    assert account.balance == pytest.approx(1_000.0)
    assert account.initial_balance == pytest.approx(1_000.0)
    assert account.total_pnl == 0


def test_open_position_debits_cost(ledger, now):
    position = ledger.open_position(_order(), now=now)

    assert position.status == PositionStatus.FILLED.value
    assert position.quantity == pytest.approx(250.0)
    assert position.total_cost == pytest.approx(100.0)
    assert position.potential_payout == pytest.approx(250.0)
    assert position.position_id.startswith("paper_")
    assert ledger.get_or_create_account().balance == pytest.approx(900.0)


def test_open_position_rejects_cheap_and_unfunded_orders(ledger, now):
    with pytest.raises(OrderRejected, match="below minimum"):
        ledger.open_position(_order(price=0.02), now=now)
    with pytest.raises(OrderRejected, match="insufficient balance"):
        ledger.open_position(_order(amount=1_500.0), now=now)
    with pytest.raises(OrderRejected, match="positive"):
        ledger.open_position(_order(amount=0.0), now=now)

    assert ledger.get_or_create_account().balance == pytest.approx(1_000.0)
    assert ledger.list_open_positions() == []


def test_winning_settlement_credits_payout(ledger, now):
    position = ledger.open_position(_order(), now=now)

    settled = ledger.settle_position(position.position_id, winner_index=0, now=now)

    assert settled is not None
    assert settled.status == PositionStatus.WON.value
    assert settled.pnl == pytest.approx(150.0)
    account = ledger.get_or_create_account()
    assert account.balance == pytest.approx(1_150.0)
    assert account.total_pnl == pytest.approx(150.0)


def test_losing_settlement_credits_nothing(ledger, now):
    position = ledger.open_position(_order(outcome_index=1, price=0.25), now=now)

    settled = ledger.settle_position(position.position_id, winner_index=0, now=now)

    assert settled.status == PositionStatus.LOST.value
    assert settled.pnl == pytest.approx(-100.0)
    assert settled.resolution_price == 0.0
    assert ledger.get_or_create_account().balance == pytest.approx(900.0)


def test_settlement_is_idempotent(ledger, now):
    position = ledger.open_position(_order(), now=now)
    ledger.settle_position(position.position_id, winner_index=0, now=now)

    assert ledger.settle_position(position.position_id, winner_index=0, now=now) is None
    assert ledger.settle_position("missing", winner_index=0, now=now) is None
    assert ledger.get_or_create_account().balance == pytest.approx(1_150.0)


def test_cancel_refunds_open_position(ledger, now):
    position = ledger.open_position(_order(pending=True), now=now)
    assert position.status == PositionStatus.PENDING.value

    assert ledger.cancel_position(position.position_id, reason="market closed unfilled", now=now)
    assert not ledger.cancel_position(position.position_id, reason="again", now=now)
    assert ledger.get_or_create_account().balance == pytest.approx(1_000.0)


def test_reconcile_heals_drift_and_logs_activity(ledger, db_session, now):
    ledger.open_position(_order(), now=now)
    db_session.execute(
        update(PortfolioAccount).values(balance=875.0).execution_options(synchronize_session=False)
    )
    db_session.expire_all()

    result = ledger.reconcile(tolerance=0.02)

    assert result.corrected
    assert result.expected_balance == pytest.approx(900.0)
    assert result.drift == pytest.approx(-25.0)
    assert ledger.get_or_create_account().balance == pytest.approx(900.0)
    (activity,) = ledger.recent_activities()
    assert activity.entry_type == ActivityType.BALANCE_DRIFT.value

    assert not ledger.reconcile(tolerance=0.02).corrected


def test_reconcile_ignores_settlement_committed_after_balance_was_read(session_factory, now):
    with session_factory() as session:
        position_id = LedgerRepository(session).open_position(_order(price=0.50), now=now).position_id
        session.commit()

    reconciling = session_factory()
    try:
        ledger = LedgerRepository(reconciling)
        assert ledger.get_or_create_account().balance == pytest.approx(900.0)

        with session_factory() as other:
            LedgerRepository(other).settle_position(position_id, winner_index=0, now=now)
            other.commit()

        result = ledger.reconcile(tolerance=0.02)
        reconciling.commit()
    finally:
        reconciling.close()

    assert not result.corrected
    assert result.recorded_balance == pytest.approx(1_100.0)
    with session_factory() as session:
        ledger = LedgerRepository(session)
        assert ledger.get_or_create_account().balance == pytest.approx(1_100.0)
        assert ledger.recent_activities() == []


def test_expected_balance_formula():
    assert expected_balance(1_000.0, 250.0, -40.0) == pytest.approx(710.0)


def test_load_portfolio_splits_open_and_closed(ledger, now):
    first = ledger.open_position(_order("1"), now=now)
    ledger.open_position(_order("2", amount=50.0), now=now)
    ledger.settle_position(first.position_id, winner_index=1, now=now)

    snapshot = ledger.load_portfolio()

    assert snapshot.open_market_ids == frozenset({"2"})
    assert [position.market_id for position in snapshot.closed_positions] == ["1"]
    assert snapshot.invested == pytest.approx(50.0)
    assert snapshot.balance == pytest.approx(850.0)
    assert not snapshot.reconciliation.corrected


def test_positions_due_for_resolution_respects_expiry_cooldown_and_zombies(ledger, now):
    expired = ledger.open_position(_order("1", end_date=now - timedelta(hours=1)), now=now - timedelta(days=1))
    ledger.open_position(_order("2", end_date=now + timedelta(hours=5)), now=now - timedelta(days=1))
    zombie = ledger.open_position(_order("3"), now=now - timedelta(days=8))
    ledger.open_position(_order("4"), now=now - timedelta(days=2))

    due = ledger.positions_due_for_resolution(
        now=now, cooldown=timedelta(minutes=10), zombie_age=timedelta(days=7)
    )
    assert {position.position_id for position in due} == {expired.position_id, zombie.position_id}

    ledger.mark_checked([expired.position_id], now=now - timedelta(minutes=2))
    due = ledger.positions_due_for_resolution(
        now=now, cooldown=timedelta(minutes=10), zombie_age=timedelta(days=7)
    )
    assert [position.position_id for position in due] == [zombie.position_id]


def test_performance_summary_counts_settled_positions(ledger, now):
    win = ledger.open_position(_order("1"), now=now)
    loss = ledger.open_position(_order("2"), now=now)
    ledger.open_position(_order("3"), now=now)
    ledger.settle_position(win.position_id, winner_index=0, now=now)
    ledger.settle_position(loss.position_id, winner_index=1, now=now)

    summary = ledger.performance_summary()

    assert summary.wins == 1
    assert summary.losses == 1
    assert summary.total_pnl == pytest.approx(50.0)
    assert summary.win_rate == pytest.approx(50.0)


def test_reset_portfolio_clears_history(ledger, now):
    ledger.open_position(_order(), now=now)
    ledger.record_activity(ActivityType.INFO, "hello")
    ledger.record_cycle_log(
        CycleLogInput(cycle_id="cycle_1", started_at=now, finished_at=now, status="completed")
    )

    account = ledger.reset_portfolio(initial_balance=500.0)

    assert account.balance == pytest.approx(500.0)
    assert account.initial_balance == pytest.approx(500.0)
    assert ledger.list_positions() == []
    assert ledger.recent_activities() == []
    assert ledger.recent_cycle_logs() == []


def test_cycle_logs_are_listed_newest_first(ledger, now):
    for offset in range(3):
        ledger.record_cycle_log(
            CycleLogInput(
                cycle_id=f"cycle_{offset}",
                started_at=now + timedelta(minutes=offset),
                finished_at=now + timedelta(minutes=offset, seconds=30),
                status="completed",
                pool_breakdown={"total": 10},
            )
        )

    logs = ledger.recent_cycle_logs(limit=2)

    assert [log.cycle_id for log in logs] == ["cycle_2", "cycle_1"]
    assert logs[0].pool_breakdown == {"total": 10}
