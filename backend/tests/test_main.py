from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app import schemas
from app.main import _portfolio_service, app, get_cycle_runner, get_resolution_runner
from app.repositories import LedgerRepository, PositionInput
from app.services.portfolio_service import PortfolioService


@pytest.fixture
def client():
    """Test client that cleans up dependency overrides after each test."""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def real_service(client, session_factory, test_settings):
    """Route portfolio endpoints to a service over the temporary database."""

    sessions = []

    def provide():
        session = session_factory()
        sessions.append(session)
        return PortfolioService(session, test_settings)

    app.dependency_overrides[_portfolio_service] = provide
    yield
    for session in sessions:
        session.close()


def test_healthcheck(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_portfolio_starts_at_initial_balance(client, real_service):
    response = client.get("/portfolio")

    assert response.status_code == 200
    payload = response.json()
    assert payload["balance"] == 1000.0
    assert payload["open_positions"] == 0
    assert payload["performance"]["total_trades"] == 0
    assert payload["reconciliation"]["corrected"] is False


def test_positions_listing_filters_by_status(client, real_service, session_factory, now):
    with session_factory() as session:
        LedgerRepository(session).open_position(
            PositionInput(
                market_id="501",
                question="Will the Senate confirm the new Labor Secretary by Friday?",
                outcome="Yes",
                outcome_index=0,
                price=0.40,
                amount=100.0,
                end_date=None,
            ),
            now=now,
        )
        session.commit()

    filled = client.get("/positions", params={"status": "filled"})
    won = client.get("/positions", params={"status": "won"})

    assert filled.status_code == 200
    assert filled.json()["total"] == 1
    assert filled.json()["items"][0]["total_cost"] == 100.0
    assert won.json() == {"total": 0, "items": []}


def test_positions_rejects_unknown_status(client, real_service):
    response = client.get("/positions", params={"status": "bogus"})

    assert response.status_code == 422


def test_cycles_and_activities_are_listed(client):
    mock_service = MagicMock()
    mock_service.cycle_logs.return_value = []
    mock_service.activities.return_value = []
    app.dependency_overrides[_portfolio_service] = lambda: mock_service

    assert client.get("/cycles", params={"limit": 5}).json() == {"total": 0, "items": []}
    assert client.get("/activities").json() == {"total": 0, "items": []}
    mock_service.cycle_logs.assert_called_once_with(limit=5)
    mock_service.activities.assert_called_once_with(limit=50)


def test_trigger_cycle_passes_flags_to_runner(client):
    calls = []

    def runner(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(
            to_dict=lambda: {
                "cycle_id": "cycle_20260302T120000_abcd1234",
                "status": "waiting",
                "message": "Next oracle call allowed in 600s",
                "wait_seconds": 600,
                "errors": [],
            }
        )

    app.dependency_overrides[get_cycle_runner] = lambda: runner

    response = client.post("/cycle/run", json={"force": True, "dry_run": True})

    assert response.status_code == 200
    assert calls == [{"force": True, "dry_run": True}]
    assert response.json()["status"] == "waiting"
    assert response.json()["wait_seconds"] == 600


def test_trigger_resolution_returns_summary(client):
    summary = {
        "checked_positions": 2,
        "won": 1,
        "lost": 1,
        "cancelled": 0,
        "still_open": 0,
        "already_settled": 0,
        "realized_pnl": 50.0,
        "failures": [],
    }
    app.dependency_overrides[get_resolution_runner] = lambda: (
        lambda: SimpleNamespace(to_dict=lambda: summary)
    )

    response = client.post("/resolution/run")

    assert response.status_code == 200
    assert response.json() == summary


def test_reset_clears_cycle_state(client):
    mock_service = MagicMock(spec=PortfolioService)
    mock_service.reset.return_value = schemas.ResetResult(
        cycle_state_cleared=True, portfolio_reset=True, balance=1000.0
    )
    app.dependency_overrides[_portfolio_service] = lambda: mock_service

    response = client.post("/reset", params={"portfolio": "true"})

    assert response.status_code == 200
    assert response.json()["portfolio_reset"] is True
    mock_service.reset.assert_called_once_with(portfolio=True)
