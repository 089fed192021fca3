"""Persistent sync session state machine."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import col, select

from practice_sync.sessions.models import (
    ACTIVE_STATUSES,
    InvalidSessionTransition,
    ProgressUpdate,
    SessionStatus,
    SessionView,
)
from practice_sync.sessions.progress import ProgressChannel, ProgressEvent
from practice_sync.storage.common import (
    dump_json,
    load_json_object,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from practice_sync.storage.database import Database
from practice_sync.storage.sqlmodel_models import SyncSession

logger = logging.getLogger(__name__)


class SyncSessionTracker:
    """Owns ``sync_sessions`` rows.

    Every write is a guarded update whose ``WHERE`` clause lists the statuses
    the session may currently be in, so a finished session is never reopened
    even when several producers report concurrently. A write that loses that
    guard is inspected afterwards: against a terminal session it is dropped
    (``False``), against a live session it was a backwards move and raises.
    """

    def __init__(self, database: Database, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.database = database
        self._clock = clock

    def create_session(
        self,
        user_id: str,
        service: str,
        preferences: dict[str, Any] | None = None,
    ) -> str:
        session_id = str(uuid4())
        now = to_db_datetime(self._clock())
        with self.database.session() as session:
            session.add(
                SyncSession(
                    session_id=session_id,
                    user_id=user_id,
                    service=service,
                    status=SessionStatus.STARTED.value,
                    current_step="Starting",
                    progress_percentage=0,
                    preferences_json=dump_json(preferences) if preferences else None,
                    started_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        logger.info("Started %s sync session %s for user=%s", service, session_id, user_id)
        return session_id

    def subscribe(self, channel: ProgressChannel) -> Callable[[], None]:
        """Apply every event published on ``channel`` to its session."""

        return channel.subscribe(self.apply_event)

    def apply_event(self, event: ProgressEvent) -> None:
        self.update_progress(event.session_id, event.update)

    def update_progress(self, session_id: str, update: ProgressUpdate) -> bool:
        target = update.status
        values: dict[str, Any] = {
            key: value
            for key, value in (
                ("current_step", update.current_step),
                ("progress_percentage", update.progress_percentage),
                ("total_items", update.total_items),
                ("imported_items", update.imported_items),
                ("processed_items", update.processed_items),
                ("failed_items", update.failed_items),
            )
            if value is not None
        }
        if target is not None:
            values["status"] = target.value
            sources = target.sources()
        else:
            sources = ACTIVE_STATUSES
        return self._guarded_write(session_id, sources=sources, values=values, target=target)

    def complete_session(
        self,
        session_id: str,
        *,
        failed_items: int | None = None,
        error_summary: str | None = None,
    ) -> bool:
        """Finish the session; partial failures still complete."""

        now = self._clock()
        values: dict[str, Any] = {
            "status": SessionStatus.COMPLETED.value,
            "current_step": "Completed",
            "progress_percentage": 100,
            "completed_at": to_db_datetime(now),
        }
        if failed_items is not None:
            values["failed_items"] = failed_items
        if error_summary:
            values["error_details_json"] = dump_json(
                {
                    "error": error_summary,
                    "failed_items": failed_items or 0,
                    "timestamp": now.isoformat(),
                },
            )
        return self._guarded_write(
            session_id,
            sources=SessionStatus.COMPLETED.sources(),
            values=values,
            target=SessionStatus.COMPLETED,
        )

    def fail_session(self, session_id: str, error: str | BaseException) -> bool:
        """Mark the session failed; progress stays where it stopped."""

        now = self._clock()
        return self._guarded_write(
            session_id,
            sources=SessionStatus.FAILED.sources(),
            values={
                "status": SessionStatus.FAILED.value,
                "completed_at": to_db_datetime(now),
                "error_details_json": dump_json(
                    {"error": str(error), "timestamp": now.isoformat()},
                ),
            },
            target=SessionStatus.FAILED,
        )

    def get_session(self, session_id: str) -> SessionView | None:
        with self.database.session() as session:
            row = session.exec(
                select(SyncSession).where(SyncSession.session_id == session_id),
            ).one_or_none()
            return _to_session_view(row) if row is not None else None

    def list_active_sessions(self, user_id: str) -> list[SessionView]:
        with self.database.session() as session:
            rows = session.exec(
                select(SyncSession)
                .where(
                    SyncSession.user_id == user_id,
                    col(SyncSession.status).in_([status.value for status in ACTIVE_STATUSES]),
                )
                .order_by(col(SyncSession.started_at).desc()),
            ).all()
            return [_to_session_view(row) for row in rows]

    def latest_session(self, user_id: str, service: str | None = None) -> SessionView | None:
        statement = select(SyncSession).where(SyncSession.user_id == user_id)
        if service is not None:
            statement = statement.where(SyncSession.service == service)
        statement = statement.order_by(
            col(SyncSession.started_at).desc(),
            col(SyncSession.updated_at).desc(),
        ).limit(1)
        with self.database.session() as session:
            row = session.exec(statement).first()
            return _to_session_view(row) if row is not None else None

    def watch(
        self,
        session_id: str,
        *,
        poll_interval_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[SessionView]:
        """Yield the session each time it changes until it reaches a terminal state.

        Closing the generator only stops the polling; the sync keeps running.
        """

        last_seen: tuple[Any, ...] | None = None
        while True:
            view = self.get_session(session_id)
            if view is None:
                raise KeyError(f"Sync session not found: {session_id}")
            fingerprint = (
                view.status,
                view.current_step,
                view.progress_percentage,
                view.imported_items,
                view.processed_items,
                view.failed_items,
            )
            if fingerprint != last_seen:
                last_seen = fingerprint
                yield view
            if view.status.terminal:
                return
            sleep(poll_interval_seconds)

    def _guarded_write(
        self,
        session_id: str,
        *,
        sources: tuple[SessionStatus, ...],
        values: dict[str, Any],
        target: SessionStatus | None,
    ) -> bool:
        values["updated_at"] = to_db_datetime(self._clock())
        with self.database.session() as session:
            result = session.exec(
                sa_update(SyncSession)
                .where(
                    col(SyncSession.session_id) == session_id,
                    col(SyncSession.status).in_([status.value for status in sources]),
                )
                .values(**values),
            )
            if result.rowcount == 1:
                session.commit()
                return True
            session.rollback()

        current = self.get_session(session_id)
        if current is None:
            raise KeyError(f"Sync session not found: {session_id}")
        if current.status.terminal:
            logger.warning(
                "Ignoring write to %s sync session %s",
                current.status.value,
                session_id,
            )
            return False
        raise InvalidSessionTransition(
            f"Sync session {session_id} cannot move from {current.status.value} "
            f"to {target.value if target is not None else current.status.value}",
        )


def _to_session_view(row: SyncSession) -> SessionView:
    error_details = load_json_object(row.error_details_json) if row.error_details_json else None
    return SessionView(
        session_id=row.session_id,
        user_id=row.user_id,
        service=row.service,
        status=SessionStatus(row.status),
        current_step=row.current_step,
        progress_percentage=row.progress_percentage,
        total_items=row.total_items,
        imported_items=row.imported_items,
        processed_items=row.processed_items,
        failed_items=row.failed_items,
        error_details=error_details,
        preferences=load_json_object(row.preferences_json),
        started_at=to_utc_aware(row.started_at),
        completed_at=optional_utc_aware(row.completed_at),
        updated_at=to_utc_aware(row.updated_at),
    )
