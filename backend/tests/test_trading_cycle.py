from __future__ import annotations

import json
from datetime import timedelta

import pytest

from app.models import ActivityType, PositionStatus
from app.repositories import LedgerRepository
from pipelines.trading.base import OracleExecutionError, OracleUnavailable
from pipelines.trading.controller import CycleController
from pipelines.trading.oracle import OracleReply
from pipelines.trading_cycle import (
    STATUS_ALREADY_RUNNING,
    STATUS_COMPLETED,
    STATUS_COMPLETED_WITH_ERRORS,
    STATUS_FAILED,
    STATUS_NO_CANDIDATES,
    STATUS_SKIPPED,
    STATUS_WAITING,
    run_cycle,
)

EMPTY_REPLY = json.dumps({"summary": "nothing actionable", "recommendations": []})


class StubSource:
    def __init__(self, payloads, *, error: Exception | None = None):
        self.payloads = payloads
        self.error = error
        self.closed = False

    def iter_markets(self):
        if self.error is not None:
            raise self.error
        yield from self.payloads

    def close(self) -> None:
        self.closed = True


class StubOracle:
    provider_name = "stub"
    model = "stub-model"

    def __init__(self, replies=(), *, error: Exception | None = None, unavailable: bool = False):
        self.replies = list(replies)
        self.error = error
        self.unavailable = unavailable
        self.prompts: list[str] = []

    def ensure_ready(self) -> None:
        if self.unavailable:
            raise OracleUnavailable("STUB_API_KEY is not configured")

    def assess(self, prompt, *, cycle_id=None, batch_index=None):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        text = self.replies.pop(0) if self.replies else EMPTY_REPLY
        return OracleReply(
            text=text,
            model=self.model,
            provider=self.provider_name,
            input_tokens=1_000,
            output_tokens=500,
            cost_usd=0.02,
            response_time_ms=1_200,
        )


def _recommendation(market_id, side, p_real, confidence):
    return {
        "marketId": market_id,
        "question": "",
        "pReal": p_real,
        "confidence": confidence,
        "recommendedSide": side,
        "reasoning": "Checked the latest reporting.",
        "sources": ["https://example.com/report"],
    }


GOOD_REPLY = json.dumps(
    {
        "summary": "One confirmation vote looks mispriced.",
        "skipped": [],
        "recommendations": [
            _recommendation("501", "YES", 0.65, 80),
            _recommendation("502", "NO", 0.50, 40),
        ],
    }
)


@pytest.fixture
def payloads(make_market_payload):
    return [
        make_market_payload("501", "Will the Senate confirm the new Labor Secretary by Friday?", yes_price=0.40),
        make_market_payload("502", "Will the governor of Texas veto the redistricting map?", yes_price=0.55),
        make_market_payload("503", "How many bills will the assembly pass this week?"),
    ]


@pytest.fixture
def run(test_settings, session_factory, payloads, now):
    def runner(oracle=None, *, source=None, at=None, **kwargs):
        oracle = oracle or StubOracle([GOOD_REPLY])
        source = source or StubSource(payloads)
        return run_cycle(
            test_settings,
            now=at or now,
            client_factory=lambda: source,
            oracle_factory=lambda settings: oracle,
            session_factory=session_factory,
            **kwargs,
        )

    return runner


def _ledger(session):
    return LedgerRepository(session, initial_balance=1_000.0)


def test_cycle_places_sized_bet_and_records_audit_trail(run, session_factory):
    oracle = StubOracle([GOOD_REPLY])

    summary = run(oracle)

    assert summary.status == STATUS_COMPLETED
    assert summary.total_markets == 3
    assert summary.breakdown["junk"] == 1
    assert summary.breakdown["pool"] == 2
    assert summary.batches_sent == 1
    assert summary.analyzed == 2
    assert summary.bets_placed == 1
    assert summary.amount_committed == pytest.approx(100.0)
    assert summary.cost_usd == pytest.approx(0.02)
    statuses = {result["market_id"]: result["status"] for result in summary.results}
    assert statuses == {"501": "placed", "502": "rejected"}
    assert "ID:501" in oracle.prompts[0]

    with session_factory() as session:
        ledger = _ledger(session)
        (position,) = ledger.list_open_positions()
        assert position.market_id == "501"
        assert position.outcome == "Yes"
        assert position.status == PositionStatus.FILLED.value
        assert position.total_cost == pytest.approx(100.0)
        account = ledger.get_or_create_account()
        assert account.balance == pytest.approx(900.0)
        assert account.ai_cost_usd == pytest.approx(0.02)
        (log,) = ledger.recent_cycle_logs()
        assert log.status == STATUS_COMPLETED
        assert log.bets_placed == 1
        assert log.provider == "stub"
        assert log.next_scan_secs == 180 * 60
        kinds = {activity.entry_type for activity in ledger.recent_activities()}
        assert kinds == {ActivityType.ORDER.value, ActivityType.INFO.value}


def test_second_cycle_waits_for_throttle(run, now):
    run()

    summary = run(StubOracle(), at=now + timedelta(minutes=1))

    assert summary.status == STATUS_WAITING
    assert summary.wait_seconds == 179 * 60


def test_forced_cycle_skips_held_and_recently_analyzed_markets(run, now):
    run()
    oracle = StubOracle()

    summary = run(oracle, at=now + timedelta(minutes=1), force=True)

    assert summary.status == STATUS_NO_CANDIDATES
    assert summary.breakdown["duplicate_open"] == 1
    assert summary.breakdown["recently_analyzed"] == 1
    assert oracle.prompts == []


def test_cycle_reports_already_running_when_lock_is_held(run, session_factory, test_settings, now):
    CycleController(session_factory, test_settings).begin(now - timedelta(minutes=2))
    oracle = StubOracle()

    summary = run(oracle)

    assert summary.status == STATUS_ALREADY_RUNNING
    assert oracle.prompts == []
    with session_factory() as session:
        assert _ledger(session).recent_cycle_logs() == []


def test_dry_run_leaves_ledger_and_throttle_untouched(run, session_factory, now):
    summary = run(dry_run=True)

    assert summary.status == STATUS_COMPLETED
    assert summary.bets_placed == 1
    assert [result["status"] for result in summary.results if result["market_id"] == "501"] == ["simulated"]
    with session_factory() as session:
        ledger = _ledger(session)
        assert ledger.list_positions() == []
        assert ledger.recent_cycle_logs() == []
        assert ledger.get_or_create_account().ai_cost_usd == 0

    follow_up = run(at=now + timedelta(minutes=1))
    assert follow_up.status == STATUS_COMPLETED


def test_oracle_failure_abandons_batches_but_consumes_throttle(run, session_factory, now):
    oracle = StubOracle(error=OracleExecutionError("upstream 500"))

    summary = run(oracle)

    assert summary.status == STATUS_COMPLETED_WITH_ERRORS
    assert summary.batches_sent == 0
    assert summary.bets_placed == 0
    assert summary.errors == ["batch 1: upstream 500"]
    with session_factory() as session:
        (log,) = _ledger(session).recent_cycle_logs()
        assert log.error == "batch 1: upstream 500"

    assert run(at=now + timedelta(minutes=5)).status == STATUS_WAITING


def test_unparseable_reply_still_charges_oracle_cost(run, session_factory):
    summary = run(StubOracle(["I could not decide."]))

    assert summary.status == STATUS_COMPLETED_WITH_ERRORS
    assert summary.bets_placed == 0
    with session_factory() as session:
        assert _ledger(session).get_or_create_account().ai_cost_usd == pytest.approx(0.02)


def test_unavailable_oracle_skips_without_consuming_throttle(run, now):
    summary = run(StubOracle(unavailable=True))

    assert summary.status == STATUS_SKIPPED
    assert "not configured" in summary.errors[0]
    assert run(at=now + timedelta(minutes=1)).status == STATUS_COMPLETED


def test_empty_market_source_fails_cycle(run):
    summary = run(source=StubSource([]))

    assert summary.status == STATUS_FAILED
    assert summary.errors == ["market source returned no markets"]


def test_unexpected_error_is_recorded_and_releases_lock(run, session_factory, now):
    source = StubSource([], error=RuntimeError("socket closed"))

    summary = run(source=source)

    assert summary.status == STATUS_FAILED
    assert summary.errors == ["RuntimeError: socket closed"]
    assert source.closed
    with session_factory() as session:
        (log,) = _ledger(session).recent_cycle_logs()
        assert log.status == STATUS_FAILED
    assert run(at=now + timedelta(minutes=1)).status == STATUS_COMPLETED


def test_insufficient_bankroll_skips_cycle(run, session_factory):
    with session_factory() as session:
        _ledger(session).reset_portfolio(initial_balance=0.5)
        session.commit()
    oracle = StubOracle()

    summary = run(oracle)

    assert summary.status == STATUS_SKIPPED
    assert oracle.prompts == []


def test_summary_is_written_to_requested_path(run, tmp_path):
    target = tmp_path / "summaries" / "cycle.json"

    summary = run(summary_path=target)

    written = json.loads(target.read_text(encoding="utf-8"))
    assert written["cycle_id"] == summary.cycle_id
    assert written["status"] == STATUS_COMPLETED
    assert written["bets_placed"] == 1
