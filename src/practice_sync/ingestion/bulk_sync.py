"""Bulk sync trigger: session -> paged import -> queued normalization -> processing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from practice_sync.ingestion.errors import InvalidEventError
from practice_sync.ingestion.services.capture_service import CaptureService
from practice_sync.ingestion.sources.base import ProviderSource
from practice_sync.jobs.models import JobCounts, JobItem, JobStatus, JobType
from practice_sync.jobs.payloads import NormalizePayload
from practice_sync.jobs.queue import JobQueue
from practice_sync.jobs.runner import JobRunner, RunnerSummary
from practice_sync.sessions.models import SessionStatus
from practice_sync.sessions.progress import ProgressChannel, ProgressReporter, scale_percentage
from practice_sync.sessions.tracker import SyncSessionTracker

logger = logging.getLogger(__name__)

IMPORT_START_PERCENT = 5
IMPORT_END_PERCENT = 75
PROCESSING_END_PERCENT = 100
MAX_ERRORS_IN_SUMMARY = 5


@dataclass(slots=True)
class BulkSyncResult:
    """End state of one bulk sync."""

    session_id: str
    batch_id: str
    status: SessionStatus
    imported_items: int
    failed_items: int
    jobs: JobCounts | None = None
    runner: RunnerSummary | None = None


class BulkSyncService:
    """Runs one user-initiated import inside a tracked sync session.

    Import failures of single events and permanently failed jobs are counted
    and the session still completes; only an exception that stops the import
    itself (provider outage, storage error) fails the session.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        capture_service: CaptureService,
        queue: JobQueue,
        runner: JobRunner,
        tracker: SyncSessionTracker,
        channel: ProgressChannel,
        page_size: int = 100,
        max_pages: int = 0,
    ) -> None:
        self.capture_service = capture_service
        self.queue = queue
        self.runner = runner
        self.tracker = tracker
        self.channel = channel
        self.page_size = page_size
        self.max_pages = max_pages

    def run(
        self,
        user_id: str,
        source: ProviderSource,
        preferences: dict[str, Any] | None = None,
        *,
        run_jobs: bool = True,
    ) -> BulkSyncResult:
        preferences = dict(preferences or {})
        # Every session owns a fresh batch; a caller-supplied id is kept as a label only.
        label = preferences.pop("batch_id", None)
        if label is not None:
            preferences["batch_label"] = str(label)
        batch_id = str(uuid4())
        preferences["batch_id"] = batch_id
        session_id = self.tracker.create_session(user_id, source.name, preferences)
        reporter = ProgressReporter(self.channel, session_id)

        try:
            imported, failed, errors = self._import(user_id, source, batch_id, reporter)
            counts: JobCounts | None = None
            runner_summary: RunnerSummary | None = None
            if run_jobs and imported:
                runner_summary, counts = self._process(user_id, batch_id, reporter)
                failed_jobs = counts.get(JobStatus.ERROR)
                if failed_jobs:
                    failed += failed_jobs
                    errors.extend(runner_summary.errors)
        except Exception as error:
            self.tracker.fail_session(session_id, error)
            logger.exception("Sync session %s failed", session_id)
            raise

        error_summary = None
        if failed:
            error_summary = f"{failed} item(s) failed"
            if errors:
                error_summary += ": " + "; ".join(errors[:MAX_ERRORS_IN_SUMMARY])
        self.tracker.complete_session(
            session_id,
            failed_items=failed,
            error_summary=error_summary,
        )
        logger.info(
            "Sync session %s completed: imported=%d failed=%d",
            session_id,
            imported,
            failed,
        )
        return BulkSyncResult(
            session_id=session_id,
            batch_id=batch_id,
            status=SessionStatus.COMPLETED,
            imported_items=imported,
            failed_items=failed,
            jobs=counts,
            runner=runner_summary,
        )

    def _import(
        self,
        user_id: str,
        source: ProviderSource,
        batch_id: str,
        reporter: ProgressReporter,
    ) -> tuple[int, int, list[str]]:
        reporter.report(
            f"Importing from {source.name}",
            IMPORT_START_PERCENT,
            status=SessionStatus.IMPORTING,
        )
        imported = 0
        failed = 0
        errors: list[str] = []
        cursor: str | None = None
        pages = 0
        while True:
            page = source.fetch_page(cursor, self.page_size)
            pages += 1
            items: list[JobItem] = []
            for event in page.events:
                try:
                    captured = self.capture_service.capture(
                        user_id,
                        source.name,
                        event,
                        batch_id=batch_id,
                    )
                except InvalidEventError as error:
                    failed += 1
                    errors.append(str(error))
                    continue
                # Existing raw events are requeued too; normalization is idempotent.
                items.append(
                    JobItem(
                        payload=NormalizePayload(raw_event_id=captured.raw_event_id),
                        batch_id=batch_id,
                    ),
                )
            self.queue.enqueue_batch(user_id, JobType.NORMALIZE, items)
            imported += len(items)

            seen = imported + failed
            total = max(page.total_estimate or 0, seen)
            reporter.report(
                f"Imported {imported} item(s)",
                scale_percentage(
                    seen,
                    total,
                    start=IMPORT_START_PERCENT,
                    end=IMPORT_END_PERCENT,
                ),
                total_items=total,
                imported_items=imported,
                failed_items=failed,
            )

            cursor = page.next_cursor
            if not cursor or (self.max_pages and pages >= self.max_pages):
                break
        return imported, failed, errors

    def _process(
        self,
        user_id: str,
        batch_id: str,
        reporter: ProgressReporter,
    ) -> tuple[RunnerSummary, JobCounts]:
        reporter.report(
            "Processing imported items",
            IMPORT_END_PERCENT,
            status=SessionStatus.PROCESSING,
        )
        total = RunnerSummary()
        percentage = IMPORT_END_PERCENT
        while True:
            # Each pass also picks up follow-up jobs (embeddings) queued by the previous one.
            summary = self.runner.process_user_jobs(
                user_id,
                limit=self.runner.batch_size,
                batch_id=batch_id,
            )
            total.merge(summary)
            counts = self.queue.count_by_status(user_id=user_id, batch_id=batch_id)
            finished = counts.get(JobStatus.DONE) + counts.get(JobStatus.ERROR)
            # Follow-up jobs grow the total; never report going backwards.
            percentage = max(
                percentage,
                scale_percentage(
                    finished,
                    counts.total,
                    start=IMPORT_END_PERCENT,
                    end=PROCESSING_END_PERCENT,
                ),
            )
            reporter.report(
                f"Processed {finished} of {counts.total} job(s)",
                percentage,
                processed_items=counts.get(JobStatus.DONE),
            )
            if summary.processed == 0:
                pending = counts.get(JobStatus.QUEUED) + counts.get(JobStatus.RUNNING)
                if pending:
                    logger.info("Batch %s left %d job(s) for later sweeps", batch_id, pending)
                return total, counts
