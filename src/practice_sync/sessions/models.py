"""Sync session state machine and views."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """Sync session lifecycle; ``completed`` and ``failed`` are terminal."""

    STARTED = "started"
    IMPORTING = "importing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)

    def sources(self) -> tuple[SessionStatus, ...]:
        """Statuses a session may be in to move (or stay) here."""

        if self is SessionStatus.FAILED:
            return ACTIVE_STATUSES
        reachable = _FORWARD[: _FORWARD.index(self) + 1]
        return tuple(status for status in reachable if not status.terminal)


_FORWARD = (
    SessionStatus.STARTED,
    SessionStatus.IMPORTING,
    SessionStatus.PROCESSING,
    SessionStatus.COMPLETED,
)
ACTIVE_STATUSES = (SessionStatus.STARTED, SessionStatus.IMPORTING, SessionStatus.PROCESSING)


class InvalidSessionTransition(ValueError):
    """Attempt to move a session backwards through its lifecycle."""


@dataclass(slots=True)
class ProgressUpdate:
    """Partial session update; ``None`` fields are left unchanged."""

    current_step: str | None = None
    progress_percentage: int | None = None
    status: SessionStatus | None = None
    total_items: int | None = None
    imported_items: int | None = None
    processed_items: int | None = None
    failed_items: int | None = None

    def __post_init__(self) -> None:
        if self.progress_percentage is not None and not 0 <= self.progress_percentage <= 100:
            raise ValueError(
                f"progress_percentage must be in [0, 100], got {self.progress_percentage}",
            )
        if self.status is not None and self.status.terminal:
            raise ValueError("Use complete_session/fail_session to finish a session")


@dataclass(slots=True)
class SessionView:
    """Readable sync session for callers and the CLI."""

    session_id: str
    user_id: str
    service: str
    status: SessionStatus
    current_step: str | None
    progress_percentage: int
    total_items: int
    imported_items: int
    processed_items: int
    failed_items: int
    error_details: dict[str, Any] | None
    preferences: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
