from __future__ import annotations

from datetime import timedelta

import pytest

from app.models import ActivityType, PositionStatus
from app.repositories import LedgerRepository, PositionInput
from pipelines.resolution_run import ResolutionPipeline, is_closed, winner_index

QUESTION = "Will the Senate confirm the new Labor Secretary by Friday?"


class StubLookup:
    def __init__(self, payloads):
        self.payloads = payloads
        self.calls: list[str] = []
        self.closed = False

    def fetch_market(self, market_id, *, retries=1):
        self.calls.append(market_id)
        return self.payloads.get(market_id)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def open_position(session_factory, now):
    def factory(market_id="501", *, outcome_index=0, price=0.40, amount=100.0, pending=False):
        with session_factory() as session:
            position = LedgerRepository(session).open_position(
                PositionInput(
                    market_id=market_id,
                    question=QUESTION,
                    outcome="Yes" if outcome_index == 0 else "No",
                    outcome_index=outcome_index,
                    price=price,
                    amount=amount,
                    end_date=now - timedelta(hours=1),
                    pending=pending,
                ),
                now=now - timedelta(days=1),
            )
            position_id = position.position_id
            session.commit()
        return position_id

    return factory


@pytest.fixture
def resolve(test_settings, session_factory, now):
    def runner(payloads, *, at=None):
        lookup = StubLookup(payloads)
        pipeline = ResolutionPipeline(
            test_settings,
            client_factory=lambda: lookup,
            session_factory=session_factory,
        )
        return pipeline.run(now=at or now), lookup

    return runner


def _account(session_factory):
    with session_factory() as session:
        ledger = LedgerRepository(session)
        account = ledger.get_or_create_account()
        activities = ledger.recent_activities()
        return float(account.balance), float(account.total_pnl), activities


def test_losing_no_position_gets_no_payout(open_position, resolve, session_factory, make_market_payload):
    open_position(outcome_index=1, price=0.25)
    closed = make_market_payload("501", QUESTION, yes_price=0.97, closed=True, accepting_orders=False)

    summary, lookup = resolve({"501": closed})

    assert summary.checked_positions == 1
    assert summary.lost == 1
    assert summary.won == 0
    assert summary.realized_pnl == pytest.approx(-100.0)
    assert lookup.closed
    balance, total_pnl, activities = _account(session_factory)
    assert balance == pytest.approx(900.0)
    assert total_pnl == pytest.approx(-100.0)
    assert activities[0].entry_type == ActivityType.RESOLVED.value
    assert activities[0].message.startswith("LOST No")


def test_winning_position_is_credited_full_payout(open_position, resolve, session_factory, make_market_payload):
    open_position(outcome_index=0, price=0.40)
    closed = make_market_payload("501", QUESTION, yes_price=0.97, closed=True)

    summary, _ = resolve({"501": closed})

    assert summary.won == 1
    assert summary.realized_pnl == pytest.approx(150.0)
    balance, total_pnl, _ = _account(session_factory)
    assert balance == pytest.approx(1_150.0)
    assert total_pnl == pytest.approx(150.0)


def test_settlement_is_idempotent_across_sweeps(open_position, resolve, session_factory, make_market_payload, now):
    open_position(outcome_index=0, price=0.40)
    closed = make_market_payload("501", QUESTION, yes_price=0.97, closed=True)
    resolve({"501": closed})

    summary, lookup = resolve({"501": closed}, at=now + timedelta(hours=1))

    assert summary.checked_positions == 0
    assert lookup.calls == []
    balance, _, _ = _account(session_factory)
    assert balance == pytest.approx(1_150.0)


def test_pending_order_is_cancelled_and_refunded(open_position, resolve, session_factory, make_market_payload):
    position_id = open_position(pending=True)
    closed = make_market_payload("501", QUESTION, yes_price=0.97, closed=True)

    summary, _ = resolve({"501": closed})

    assert summary.cancelled == 1
    balance, _, activities = _account(session_factory)
    assert balance == pytest.approx(1_000.0)
    assert activities[0].entry_type == ActivityType.WARNING.value
    with session_factory() as session:
        (position,) = LedgerRepository(session).list_positions(status=PositionStatus.CANCELLED.value)
        assert position.position_id == position_id
        assert position.pnl == 0


def test_open_market_is_rechecked_only_after_cooldown(open_position, resolve, make_market_payload, now):
    open_position()
    live = make_market_payload("501", QUESTION, yes_price=0.60)

    first, _ = resolve({"501": live})
    soon, _ = resolve({"501": live}, at=now + timedelta(minutes=5))
    later, _ = resolve({"501": live}, at=now + timedelta(minutes=11))

    assert first.still_open == 1
    assert soon.checked_positions == 0
    assert later.still_open == 1


def test_positions_sharing_a_market_fetch_it_once(open_position, resolve, make_market_payload):
    open_position(outcome_index=0)
    open_position(outcome_index=1, price=0.60)
    closed = make_market_payload("501", QUESTION, yes_price=0.97, closed=True)

    summary, lookup = resolve({"501": closed})

    assert lookup.calls == ["501"]
    assert summary.won == 1
    assert summary.lost == 1


def test_missing_and_ambiguous_markets_are_reported(open_position, resolve, make_market_payload):
    open_position("501")
    open_position("502")
    ambiguous = make_market_payload("502", QUESTION, yes_price=0.50, closed=True)

    summary, _ = resolve({"502": ambiguous})

    reasons = sorted(failure["reason"] for failure in summary.failures)
    assert reasons == ["closed market without decisive prices", "market data unavailable"]
    assert summary.won == summary.lost == 0


def test_is_closed_and_winner_index(make_contract):
    assert is_closed(make_contract(closed=True))
    assert is_closed(make_contract(yes_price=0.02, accepting_orders=False))
    assert not is_closed(make_contract(yes_price=0.50, accepting_orders=False))
    assert not is_closed(make_contract(yes_price=0.99))

    assert winner_index(make_contract(yes_price=0.97)) == 0
    assert winner_index(make_contract(yes_price=0.03)) == 1
    assert winner_index(make_contract(yes_price=0.70)) == 0
    assert winner_index(make_contract(yes_price=0.50)) is None


def test_sweep_heals_balance_drift_after_settling(open_position, resolve, session_factory, make_market_payload):
    open_position(outcome_index=0, price=0.40)
    with session_factory() as session:
        account = LedgerRepository(session).get_or_create_account()
        account.balance = float(account.balance) - 25.0
        session.commit()
    closed = make_market_payload("501", QUESTION, yes_price=0.97, closed=True)

    summary, _ = resolve({"501": closed})

    assert summary.won == 1
    balance, _, activities = _account(session_factory)
    assert balance == pytest.approx(1_150.0)
    assert ActivityType.BALANCE_DRIFT.value in {activity.entry_type for activity in activities}
