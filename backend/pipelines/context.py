from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.domain import CycleState
from ingestion.service import session_scope


@dataclass(slots=True)
class CycleContext:
    """Mutable runtime context shared by the stages of one trading cycle."""

    cycle_id: str
    started_at: datetime
    settings: Settings
    session_factory: Callable[[], Session]
    dry_run: bool
    state: CycleState
    oracle_called: bool = False
    provider: str | None = None
    model: str | None = None
    pool: list[dict[str, Any]] = field(default_factory=list)
    batches: list[dict[str, Any]] = field(default_factory=list)

    def session(self) -> AbstractContextManager[Session]:
        return session_scope(self.session_factory)
