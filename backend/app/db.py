from collections.abc import Generator
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.config import settings

# The cycle job and the resolution sweep may write to the same SQLite file.
SQLITE_BUSY_TIMEOUT_MS = 30_000


def _prepare_sqlite_file(database: str | None) -> None:
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


def _configure_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()


def create_db_engine(url: str, *, echo: bool = False) -> Engine:
    parsed = make_url(url)
    backend = parsed.get_backend_name()
    engine_kwargs: dict[str, object] = {"echo": echo, "pool_pre_ping": True}
    connect_args: dict[str, object] = {}

    if backend == "sqlite":
        connect_args["check_same_thread"] = False
        _prepare_sqlite_file(parsed.database)
    else:
        # Pooled Postgres endpoints drop idle connections after a few minutes.
        engine_kwargs["pool_recycle"] = 300
        if backend.startswith("postgresql"):
            connect_args.update(keepalives=1, keepalives_idle=120, keepalives_interval=30, keepalives_count=5)
            if parsed.get_driver_name() == "psycopg":
                connect_args["prepare_threshold"] = None
    engine_kwargs["connect_args"] = connect_args

    engine = create_engine(url, **engine_kwargs)
    if backend == "sqlite":
        _configure_sqlite(engine)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=True)


engine = create_db_engine(settings.resolved_database_url, echo=settings.debug)
SessionLocal = create_session_factory(engine)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def init_db(bind=None) -> None:
    """Create the ledger, cycle log and bot state tables when missing."""

    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
