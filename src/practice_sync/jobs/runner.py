"""Job runner: claim, dispatch by job type, record the outcome."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime

from practice_sync.errors import ConfigurationError
from practice_sync.jobs.failure_classifier import classify_failure
from practice_sync.jobs.models import JobType, JobView
from practice_sync.jobs.payloads import JobPayload, parse_payload_json
from practice_sync.jobs.queue import JobQueue
from practice_sync.storage.common import utc_now

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobView, JobPayload], None]


@dataclass(slots=True)
class RunnerSummary:
    """Outcome counters for one or more runner passes."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: RunnerSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.errors.extend(other.errors)


class JobRunner:
    """Executes queued jobs one at a time.

    A pass only looks at jobs enqueued before it started and never claims the
    same job twice, so follow-up jobs created by handlers and retries scheduled
    by the queue are left for the next pass. Every handler exception is
    classified, reported to the queue and recorded in the summary; nothing a
    single job does can abort the pass.
    """

    def __init__(  # noqa: PLR0913
        self,
        queue: JobQueue,
        handlers: Mapping[JobType, JobHandler],
        *,
        batch_size: int = 50,
        stale_after_seconds: int = 900,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = queue
        self.handlers = dict(handlers)
        self.batch_size = batch_size
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock

    def process_pending_jobs(self, batch_size: int | None = None) -> RunnerSummary:
        """Global sweep across all users, used by scheduled triggers."""

        recovered = self.queue.requeue_stale(stale_after_seconds=self.stale_after_seconds)
        if recovered:
            logger.info("Requeued %d stale job(s) before sweep", recovered)
        summary = self._run_pass(limit=batch_size or self.batch_size)
        if summary.processed:
            logger.info(
                "Sweep finished: processed=%d succeeded=%d failed=%d",
                summary.processed,
                summary.succeeded,
                summary.failed,
            )
        return summary

    def process_user_jobs(
        self,
        user_id: str,
        limit: int = 10,
        *,
        batch_id: str | None = None,
    ) -> RunnerSummary:
        """Synchronous pass over one user's queue for callers that wait on the result."""

        return self._run_pass(limit=limit, user_id=user_id, batch_id=batch_id)

    def run_forever(
        self,
        *,
        poll_interval_seconds: float = 5.0,
        max_sweeps: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> RunnerSummary:
        """Sweep until ``max_sweeps`` is reached; idle sweeps wait ``poll_interval_seconds``."""

        total = RunnerSummary()
        sweeps = 0
        while max_sweeps is None or sweeps < max_sweeps:
            summary = self.process_pending_jobs()
            total.merge(summary)
            sweeps += 1
            if summary.processed == 0 and (max_sweeps is None or sweeps < max_sweeps):
                sleep(poll_interval_seconds)
        return total

    def process_job(self, job: JobView) -> str | None:
        """Run one claimed job to completion; returns the error text on failure."""

        try:
            handler = self.handlers.get(job.job_type)
            if handler is None:
                raise ConfigurationError(f"No handler registered for job type {job.job_type.value}")
            payload = parse_payload_json(job.job_type, job.payload_json)
            handler(job, payload)
        except Exception as error:  # noqa: BLE001
            classification = classify_failure(error)
            error_text = f"{type(error).__name__}: {error}"
            requeued = self.queue.mark_failed(
                job.job_id,
                error_text,
                failure_class=classification.failure_class,
            )
            logger.warning(
                "%s job %s failed (%s, %s)%s: %s",
                job.job_type.value,
                job.job_id,
                classification.failure_class.value,
                classification.reason_code,
                ", requeued" if requeued else "",
                error_text,
                exc_info=classification.matched_rule == "fallback_transient",
            )
            return error_text

        if not self.queue.mark_done(job.job_id):
            return "completion not recorded: job is no longer running"
        return None

    def _run_pass(
        self,
        *,
        limit: int,
        user_id: str | None = None,
        batch_id: str | None = None,
    ) -> RunnerSummary:
        summary = RunnerSummary()
        started_at = self._clock()
        seen: set[str] = set()
        while summary.processed < limit:
            claimed = self.queue.claim_next(
                1,
                user_id=user_id,
                batch_id=batch_id,
                enqueued_before=started_at,
                exclude_ids=seen,
            )
            if not claimed:
                break
            job = claimed[0]
            seen.add(job.job_id)
            summary.processed += 1
            error = self.process_job(job)
            if error is None:
                summary.succeeded += 1
            else:
                summary.failed += 1
                summary.errors.append(f"{job.job_id}: {error}")
        return summary
