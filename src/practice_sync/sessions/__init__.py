"""Progress tracking for user-initiated bulk sync sessions."""

from practice_sync.sessions.models import (
    InvalidSessionTransition,
    ProgressUpdate,
    SessionStatus,
    SessionView,
)
from practice_sync.sessions.progress import ProgressChannel, ProgressEvent, ProgressReporter
from practice_sync.sessions.tracker import SyncSessionTracker

__all__ = [
    "InvalidSessionTransition",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressReporter",
    "ProgressUpdate",
    "SessionStatus",
    "SessionView",
    "SyncSessionTracker",
]
