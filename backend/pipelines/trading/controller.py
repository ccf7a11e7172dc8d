"""Single-flight lock and throttle around the trading cycle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.domain import CycleState
from app.repositories import CycleStateRepository
from ingestion.service import session_scope


class CycleGate(str, Enum):
    ACQUIRED = "acquired"
    ALREADY_RUNNING = "already_running"
    WAITING = "waiting"


@dataclass(slots=True, frozen=True)
class GateResult:
    gate: CycleGate
    state: CycleState
    wait_seconds: int = 0

    @property
    def acquired(self) -> bool:
        return self.gate is CycleGate.ACQUIRED


class CycleController:
    """Own the persisted throttle, lock and recently-analyzed cache.

    Each call runs in its own committed session so a concurrent cycle sees
    the lock as soon as :meth:`begin` returns.
    """

    def __init__(self, session_factory: Callable[[], Session], settings: Settings) -> None:
        self._session_factory = session_factory
        self.interval = timedelta(seconds=settings.cycle_min_interval_seconds)
        self.lock_max_age = timedelta(seconds=settings.cycle_lock_max_age_seconds)
        self._held_since: datetime | None = None

    def begin(self, now: datetime, *, force: bool = False) -> GateResult:
        with session_scope(self._session_factory) as session:
            repo = CycleStateRepository(session)
            state = repo.load(now=now, ttl=self.interval)
            if state.is_locked(now, self.lock_max_age):
                logger.info("Cycle already running since {}", state.lock_acquired_at)
                return GateResult(CycleGate.ALREADY_RUNNING, state)
            if not repo.try_acquire_lock(now=now, max_age=self.lock_max_age):
                logger.info("Cycle lock taken by a concurrent run")
                return GateResult(CycleGate.ALREADY_RUNNING, state)

            remaining = state.throttle_remaining(now, self.interval)
            if remaining > timedelta(0) and not force:
                repo.release_lock(now)
                wait_seconds = int(remaining.total_seconds())
                logger.info("Throttled; next oracle call allowed in {}s", wait_seconds)
                return GateResult(CycleGate.WAITING, state, wait_seconds=wait_seconds)
            if remaining > timedelta(0):
                logger.warning("Forcing cycle {}s before the throttle expires", int(remaining.total_seconds()))
            self._held_since = now
            return GateResult(CycleGate.ACQUIRED, state)

    def finish(self, state: CycleState, now: datetime, *, called: bool) -> CycleState:
        """Persist throttle and analyzed map, then release the lock.

        A run whose lock went stale and was taken over leaves both the lock and
        the saved state to the newer run.
        """

        if called:
            state = state.with_call(now)
        state = state.pruned(now, self.interval)
        held_since, self._held_since = self._held_since, None
        if held_since is None:
            logger.warning("finish() called without holding the cycle lock; state not saved")
            return state
        with session_scope(self._session_factory) as session:
            repo = CycleStateRepository(session)
            if not repo.release_lock(held_since):
                logger.warning("Cycle lock acquired at {} was taken over; discarding this run's state", held_since)
                return state
            repo.save(state)
        return state

    def release(self) -> None:
        held_since, self._held_since = self._held_since, None
        if held_since is None:
            return
        with session_scope(self._session_factory) as session:
            if not CycleStateRepository(session).release_lock(held_since):
                logger.warning("Cycle lock acquired at {} was already taken over", held_since)

    def reset(self) -> None:
        with session_scope(self._session_factory) as session:
            CycleStateRepository(session).clear()
        logger.info("Cycle state cleared")


__all__ = ["CycleController", "CycleGate", "GateResult"]
