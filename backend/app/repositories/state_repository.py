"""Key-value persistence for the cycle throttle, lock and analyzed cache."""

from __future__ import annotations

import json
from datetime import datetime, timedelta

from dateutil import parser as date_parser
from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.domain import CycleState
from app.models import BotState, as_utc, utcnow

LAST_CALL_KEY = "last_call_at"
CYCLE_LOCK_KEY = "cycle_lock_at"
ANALYZED_MAP_KEY = "analyzed_map"


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return as_utc(date_parser.isoparse(value))
    except (ValueError, TypeError):
        logger.warning("Ignoring unparseable state timestamp {!r}", value)
        return None


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()


def _decode_analyzed(raw: str | None) -> dict[str, datetime]:
    if not raw:
        return {}
    try:
        entries = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding corrupt analyzed map")
        return {}
    analyzed: dict[str, datetime] = {}
    if not isinstance(entries, list):
        return analyzed
    for entry in entries:
        if not isinstance(entry, (list, tuple)) or len(entry) != 2:
            continue
        market_id, stamp = entry
        parsed = _parse_timestamp(str(stamp))
        if parsed is not None:
            analyzed[str(market_id)] = parsed
    return analyzed


def _encode_analyzed(analyzed: dict[str, datetime]) -> str:
    return json.dumps(
        [[market_id, _format_timestamp(stamp)] for market_id, stamp in sorted(analyzed.items())]
    )


class CycleStateRepository:
    """Load and store :class:`CycleState` through the ``bot_state`` table."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def _get(self, key: str) -> str | None:
        row = self._session.get(BotState, key)
        return row.value if row is not None else None

    def _set(self, key: str, value: str | None) -> None:
        row = self._session.get(BotState, key)
        if row is None:
            self._session.add(BotState(key=key, value=value))
        else:
            row.value = value
        self._session.flush()

    def load(self, *, now: datetime, ttl: timedelta) -> CycleState:
        state = CycleState(
            last_call_at=_parse_timestamp(self._get(LAST_CALL_KEY)),
            lock_acquired_at=_parse_timestamp(self._get(CYCLE_LOCK_KEY)),
            analyzed=_decode_analyzed(self._get(ANALYZED_MAP_KEY)),
        )
        return state.pruned(now, ttl)

    def save(self, state: CycleState) -> None:
        self._set(LAST_CALL_KEY, _format_timestamp(state.last_call_at))
        self._set(ANALYZED_MAP_KEY, _encode_analyzed(state.analyzed))

    # ------------------------------------------------------------------
    # Lock

    def try_acquire_lock(self, *, now: datetime, max_age: timedelta) -> bool:
        """Compare-and-set the lock row; False when another cycle holds a fresh lock."""

        current_raw = self._get(CYCLE_LOCK_KEY)
        current = _parse_timestamp(current_raw)
        if current is not None and now - current < max_age:
            return False

        if self._session.get(BotState, CYCLE_LOCK_KEY) is None:
            try:
                with self._session.begin_nested():
                    self._session.add(BotState(key=CYCLE_LOCK_KEY, value=_format_timestamp(now)))
            except IntegrityError:
                logger.info("Cycle lock row created concurrently; treating lock as held")
                return False
            return True

        condition = (
            BotState.value.is_(None) if current_raw is None else BotState.value == current_raw
        )
        result = self._session.execute(
            update(BotState)
            .where(BotState.key == CYCLE_LOCK_KEY, condition)
            .values(value=_format_timestamp(now), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self._session.expire_all()
        acquired = result.rowcount == 1
        if acquired and current is not None:
            logger.warning("Took over stale cycle lock from {}", current_raw)
        return acquired

    def release_lock(self, acquired_at: datetime | None = None) -> bool:
        """Clear the lock; with ``acquired_at`` only while the row still holds that acquisition."""

        statement = update(BotState).where(BotState.key == CYCLE_LOCK_KEY)
        if acquired_at is not None:
            statement = statement.where(BotState.value == _format_timestamp(acquired_at))
        result = self._session.execute(
            statement.values(value=None, updated_at=utcnow()).execution_options(synchronize_session=False)
        )
        self._session.expire_all()
        return result.rowcount == 1

    def clear(self) -> None:
        self._session.execute(
            delete(BotState).where(
                BotState.key.in_([LAST_CALL_KEY, CYCLE_LOCK_KEY, ANALYZED_MAP_KEY])
            )
        )
        self._session.expire_all()

    def raw_items(self) -> dict[str, str | None]:
        rows = self._session.execute(select(BotState)).scalars().all()
        return {row.key: row.value for row in rows}


__all__ = ["CycleStateRepository", "ANALYZED_MAP_KEY", "CYCLE_LOCK_KEY", "LAST_CALL_KEY"]
