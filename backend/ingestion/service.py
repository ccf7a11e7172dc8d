from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterator, Iterable, Protocol

from loguru import logger
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.domain import Contract

from .normalize import normalize_market


class MarketSource(Protocol):
    def iter_markets(self) -> Iterable[dict[str, Any]]: ...

    def close(self) -> None: ...


@contextmanager
def session_scope(factory: Callable[[], Session] | None = None) -> Iterator[Session]:
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def fetch_contracts(client: MarketSource) -> list[Contract]:
    """Pull the open market universe and normalize it into contract snapshots."""

    contracts: list[Contract] = []
    skipped = 0
    for raw_market in client.iter_markets():
        contract = normalize_market(raw_market)
        if contract is None:
            skipped += 1
            continue
        contracts.append(contract)
    logger.info("Fetched {} contracts ({} unparseable payloads skipped)", len(contracts), skipped)
    return contracts
