from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.db import create_db_engine, create_session_factory, init_db
from app.domain import Contract

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def sample_market_payload() -> dict[str, object]:
    path = Path(__file__).parent / "data" / "sample_market.json"
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'edge_trader.db'}",
        openai_api_key="test-key",
        gemini_api_key=None,
        cycle_summary_dir=None,
        rules_path=None,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    """Session factory over a file-backed SQLite database so separate sessions share state."""

    engine = create_db_engine(test_settings.resolved_database_url)
    init_db(bind=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_contract():
    def factory(
        market_id: str = "100",
        question: str = "Will the Senate confirm the new Labor Secretary by Friday?",
        *,
        yes_price: float = 0.40,
        no_price: float | None = None,
        volume: float = 80_000.0,
        liquidity: float = 60_000.0,
        hours_left: float | None = 48.0,
        active: bool = True,
        resolved: bool = False,
        closed: bool = False,
        accepting_orders: bool | None = True,
        category: str | None = "politics",
    ) -> Contract:
        end_time = None if hours_left is None else NOW + timedelta(hours=hours_left)
        return Contract(
            market_id=market_id,
            question=question,
            outcomes=("Yes", "No"),
            prices=(yes_price, round(1.0 - yes_price, 4) if no_price is None else no_price),
            volume=volume,
            liquidity=liquidity,
            end_time=end_time,
            active=active,
            resolved=resolved,
            closed=closed,
            accepting_orders=accepting_orders,
            category=category,
        )

    return factory


@pytest.fixture
def make_market_payload():
    """Raw Gamma API market payloads, the shape the market source yields."""

    def factory(
        market_id: str,
        question: str,
        *,
        yes_price: float = 0.40,
        volume: float = 80_000.0,
        liquidity: float = 60_000.0,
        hours_left: float = 48.0,
        closed: bool = False,
        accepting_orders: bool = True,
        tags: Iterable[str] = ("Politics",),
    ) -> dict[str, Any]:
        end = NOW + timedelta(hours=hours_left)
        return {
            "id": market_id,
            "question": question,
            "slug": question.lower().replace(" ", "-")[:60],
            "outcomes": json.dumps(["Yes", "No"]),
            "outcomePrices": json.dumps([f"{yes_price:.3f}", f"{1 - yes_price:.3f}"]),
            "volume": str(volume),
            "liquidity": str(liquidity),
            "endDate": end.isoformat().replace("+00:00", "Z"),
            "active": not closed,
            "closed": closed,
            "acceptingOrders": accepting_orders,
            "tags": [{"label": tag} for tag in tags],
        }

    return factory
