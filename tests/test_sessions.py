from __future__ import annotations

import allure
import pytest

from practice_sync.sessions import (
    InvalidSessionTransition,
    ProgressChannel,
    ProgressReporter,
    ProgressUpdate,
    SessionStatus,
    SyncSessionTracker,
)
from practice_sync.sessions.progress import scale_percentage
from practice_sync.storage.database import Database

pytestmark = [
    allure.epic("Sync Sessions"),
    allure.feature("Progress Tracking"),
]


def test_new_session_starts_at_zero(database: Database, clock) -> None:
    tracker = SyncSessionTracker(database, clock=clock)

    session_id = tracker.create_session("user-1", "gmail", {"batch_id": "B1"})

    view = tracker.get_session(session_id)
    assert view is not None
    assert view.status == SessionStatus.STARTED
    assert view.current_step == "Starting"
    assert view.progress_percentage == 0
    assert view.preferences == {"batch_id": "B1"}
    assert view.started_at == clock.now
    assert view.completed_at is None
    assert view.error_details is None


def test_failure_midway_keeps_progress_and_records_error(database: Database, clock) -> None:
    tracker = SyncSessionTracker(database, clock=clock)
    session_id = tracker.create_session("user-1", "gmail")
    tracker.update_progress(
        session_id,
        ProgressUpdate(
            current_step="Importing page 3",
            progress_percentage=50,
            status=SessionStatus.IMPORTING,
            imported_items=150,
        ),
    )
    clock.advance(seconds=5)

    assert tracker.fail_session(session_id, RuntimeError("provider unavailable")) is True

    view = tracker.get_session(session_id)
    assert view is not None
    assert view.status == SessionStatus.FAILED
    assert view.progress_percentage == 50
    assert view.imported_items == 150
    assert view.completed_at == clock.now
    assert view.error_details == {
        "error": "provider unavailable",
        "timestamp": clock.now.isoformat(),
    }


def test_writes_to_terminal_session_are_ignored(database: Database, clock) -> None:
    tracker = SyncSessionTracker(database, clock=clock)
    session_id = tracker.create_session("user-1", "gmail")
    tracker.fail_session(session_id, "boom")

    assert tracker.update_progress(session_id, ProgressUpdate(progress_percentage=90)) is False
    assert tracker.complete_session(session_id) is False
    assert tracker.fail_session(session_id, "again") is False

    view = tracker.get_session(session_id)
    assert view is not None
    assert view.status == SessionStatus.FAILED
    assert view.error_details is not None
    assert view.error_details["error"] == "boom"


def test_backward_status_move_raises(database: Database, clock) -> None:
    tracker = SyncSessionTracker(database, clock=clock)
    session_id = tracker.create_session("user-1", "gmail")
    tracker.update_progress(session_id, ProgressUpdate(status=SessionStatus.PROCESSING))

    assert tracker.update_progress(
        session_id,
        ProgressUpdate(status=SessionStatus.PROCESSING, progress_percentage=80),
    )
    with pytest.raises(InvalidSessionTransition, match="cannot move from processing to importing"):
        tracker.update_progress(session_id, ProgressUpdate(status=SessionStatus.IMPORTING))


def test_complete_sets_full_progress_and_partial_failure_summary(
    database: Database,
    clock,
) -> None:
    tracker = SyncSessionTracker(database, clock=clock)
    session_id = tracker.create_session("user-1", "gmail")

    tracker.complete_session(session_id, failed_items=2, error_summary="2 item(s) failed")

    view = tracker.get_session(session_id)
    assert view is not None
    assert view.status == SessionStatus.COMPLETED
    assert view.progress_percentage == 100
    assert view.current_step == "Completed"
    assert view.failed_items == 2
    assert view.error_details == {
        "error": "2 item(s) failed",
        "failed_items": 2,
        "timestamp": clock.now.isoformat(),
    }


def test_progress_update_validates_percentage_and_terminal_status() -> None:
    with pytest.raises(ValueError, match="progress_percentage must be in"):
        ProgressUpdate(progress_percentage=101)
    with pytest.raises(ValueError, match="complete_session/fail_session"):
        ProgressUpdate(status=SessionStatus.COMPLETED)


def test_unknown_session_raises_key_error(database: Database) -> None:
    tracker = SyncSessionTracker(database)

    with pytest.raises(KeyError):
        tracker.update_progress("missing", ProgressUpdate(progress_percentage=10))


def test_reporter_progress_reaches_tracker_through_channel(database: Database, clock) -> None:
    tracker = SyncSessionTracker(database, clock=clock)
    channel = ProgressChannel()
    unsubscribe = tracker.subscribe(channel)
    seen = []
    channel.subscribe(seen.append)
    session_id = tracker.create_session("user-1", "gmail")
    reporter = ProgressReporter(channel, session_id)

    reporter.report("Imported 3 items", 30, status=SessionStatus.IMPORTING, imported_items=3)
    unsubscribe()
    reporter.report("Imported 6 items", 60, imported_items=6)

    view = tracker.get_session(session_id)
    assert view is not None
    assert (view.status, view.progress_percentage, view.imported_items) == (
        SessionStatus.IMPORTING,
        30,
        3,
    )
    assert [event.update.progress_percentage for event in seen] == [30, 60]


def test_watch_yields_each_change_until_terminal(database: Database, clock) -> None:
    tracker = SyncSessionTracker(database, clock=clock)
    session_id = tracker.create_session("user-1", "gmail")
    steps = [
        lambda: tracker.update_progress(
            session_id,
            ProgressUpdate(status=SessionStatus.IMPORTING, progress_percentage=10),
        ),
        lambda: None,
        lambda: tracker.update_progress(
            session_id,
            ProgressUpdate(status=SessionStatus.PROCESSING, progress_percentage=80),
        ),
        lambda: tracker.complete_session(session_id),
    ]
    sleeps: list[float] = []

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        steps.pop(0)()

    views = list(tracker.watch(session_id, poll_interval_seconds=0.5, sleep=_sleep))

    assert [(view.status, view.progress_percentage) for view in views] == [
        (SessionStatus.STARTED, 0),
        (SessionStatus.IMPORTING, 10),
        (SessionStatus.PROCESSING, 80),
        (SessionStatus.COMPLETED, 100),
    ]
    assert sleeps == [0.5, 0.5, 0.5, 0.5]


def test_active_and_latest_session_queries(database: Database, clock) -> None:
    tracker = SyncSessionTracker(database, clock=clock)
    old = tracker.create_session("user-1", "gmail")
    tracker.complete_session(old)
    clock.advance(minutes=1)
    calendar = tracker.create_session("user-1", "google_calendar")
    clock.advance(minutes=1)
    gmail = tracker.create_session("user-1", "gmail")

    active = tracker.list_active_sessions("user-1")
    latest_gmail = tracker.latest_session("user-1", "gmail")
    latest = tracker.latest_session("user-1")

    assert [view.session_id for view in active] == [gmail, calendar]
    assert latest_gmail is not None
    assert latest_gmail.session_id == gmail
    assert latest is not None
    assert latest.session_id == gmail
    assert tracker.latest_session("user-2") is None


def test_scale_percentage_maps_phase_band() -> None:
    assert scale_percentage(0, 10, start=5, end=75) == 5
    assert scale_percentage(5, 10, start=5, end=75) == 40
    assert scale_percentage(12, 10, start=5, end=75) == 75
    assert scale_percentage(0, 0, start=75, end=100) == 100
