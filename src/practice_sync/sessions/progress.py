"""Progress event channel between pipeline producers and the session tracker.

Producers only know a :class:`ProgressReporter`; they never touch the session
row. Whoever subscribes to the channel (the tracker, a test, a log sink)
decides what a progress event means.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from practice_sync.sessions.models import ProgressUpdate, SessionStatus

logger = logging.getLogger(__name__)

ProgressSubscriber = Callable[["ProgressEvent"], None]


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    session_id: str
    update: ProgressUpdate


class ProgressChannel:
    """Synchronous fan-out of progress events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[ProgressSubscriber] = []

    def subscribe(self, subscriber: ProgressSubscriber) -> Callable[[], None]:
        """Register ``subscriber``; the returned callable unsubscribes it."""

        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        for subscriber in list(self._subscribers):
            subscriber(event)


class ProgressReporter:
    """Publishes progress for one session."""

    def __init__(self, channel: ProgressChannel, session_id: str) -> None:
        self.channel = channel
        self.session_id = session_id

    def report(  # noqa: PLR0913
        self,
        step: str,
        percentage: int,
        *,
        status: SessionStatus | None = None,
        total_items: int | None = None,
        imported_items: int | None = None,
        processed_items: int | None = None,
        failed_items: int | None = None,
    ) -> None:
        logger.debug("Session %s: %s (%d%%)", self.session_id, step, percentage)
        self.channel.publish(
            ProgressEvent(
                session_id=self.session_id,
                update=ProgressUpdate(
                    current_step=step,
                    progress_percentage=percentage,
                    status=status,
                    total_items=total_items,
                    imported_items=imported_items,
                    processed_items=processed_items,
                    failed_items=failed_items,
                ),
            ),
        )


def scale_percentage(done: int, total: int, *, start: int, end: int) -> int:
    """Map ``done / total`` onto the ``[start, end]`` band of a phase."""

    if total <= 0:
        return end
    fraction = min(1.0, max(0.0, done / total))
    return start + int((end - start) * fraction)
