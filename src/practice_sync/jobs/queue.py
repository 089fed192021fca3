"""Persistent job queue backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func, literal_column
from sqlalchemy import update as sa_update
from sqlmodel import col, select

from practice_sync.jobs.models import (
    FailureClass,
    JobCounts,
    JobItem,
    JobPriority,
    JobStatus,
    JobType,
    JobView,
)
from practice_sync.jobs.payloads import JobPayload, parse_payload, payload_to_dict
from practice_sync.storage.common import (
    dump_json,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from practice_sync.storage.database import Database
from practice_sync.storage.sqlmodel_models import Job

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 2_000

_PRIORITY_ORDER = case(
    (col(Job.priority) == JobPriority.HIGH.value, JobPriority.HIGH.rank),
    (col(Job.priority) == JobPriority.MEDIUM.value, JobPriority.MEDIUM.rank),
    else_=JobPriority.LOW.rank,
)


class JobQueue:
    """Queue persistence facade; every state change is a guarded conditional update."""

    def __init__(
        self,
        database: Database,
        *,
        max_attempts: int = 3,
        retry_base_seconds: float = 30.0,
        retry_max_seconds: float = 3_600.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self._clock = clock

    def enqueue(  # noqa: PLR0913
        self,
        user_id: str,
        job_type: JobType | str,
        payload: JobPayload | Mapping[str, Any],
        *,
        priority: JobPriority | str = JobPriority.MEDIUM,
        batch_id: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """Validate the payload and create a queued job."""

        job_ids = self.enqueue_batch(
            user_id,
            job_type,
            [JobItem(payload=payload, priority=priority, batch_id=batch_id)],
            max_attempts=max_attempts,
        )
        return job_ids[0]

    def enqueue_batch(
        self,
        user_id: str,
        job_type: JobType | str,
        items: Sequence[JobItem],
        *,
        max_attempts: int | None = None,
    ) -> list[str]:
        """Create queued jobs for every item in one transaction.

        All payloads are validated before anything is written, so a single
        malformed item rejects the whole batch.
        """

        resolved_type = JobType(job_type)
        prepared = [
            (
                parse_payload(resolved_type, item.payload),
                JobPriority(item.priority),
                item.batch_id,
            )
            for item in items
        ]
        if not prepared:
            return []

        now = to_db_datetime(self._clock())
        job_ids: list[str] = []
        with self.database.session() as session:
            for payload, priority, batch_id in prepared:
                job_id = str(uuid4())
                session.add(
                    Job(
                        job_id=job_id,
                        user_id=user_id,
                        job_type=resolved_type.value,
                        payload_json=dump_json(payload_to_dict(payload)),
                        status=JobStatus.QUEUED.value,
                        priority=priority.value,
                        batch_id=batch_id,
                        attempts=0,
                        max_attempts=max_attempts or self.max_attempts,
                        run_after=now,
                        created_at=now,
                        updated_at=now,
                    ),
                )
                job_ids.append(job_id)
            session.commit()

        logger.debug(
            "Enqueued %d %s job(s) for user=%s",
            len(job_ids),
            resolved_type.value,
            user_id,
        )
        return job_ids

    def claim_next(  # noqa: PLR0913
        self,
        limit: int = 1,
        *,
        user_id: str | None = None,
        batch_id: str | None = None,
        enqueued_before: datetime | None = None,
        exclude_ids: Collection[str] = (),
    ) -> list[JobView]:
        """Claim up to ``limit`` ready jobs, oldest first, priority breaking ties.

        A candidate lost to a concurrent claimant is skipped and the next one
        is tried, so the result may be shorter than ``limit`` only when the
        queue has no more eligible work.
        """

        claimed: list[JobView] = []
        skip_ids = set(exclude_ids)
        while len(claimed) < limit:
            candidate_id = self._next_candidate_id(
                user_id=user_id,
                batch_id=batch_id,
                enqueued_before=enqueued_before,
                skip_ids=skip_ids,
            )
            if candidate_id is None:
                break
            skip_ids.add(candidate_id)
            job = self.try_claim(candidate_id)
            if job is not None:
                claimed.append(job)
        return claimed

    def try_claim(self, job_id: str) -> JobView | None:
        """Transition one job ``queued -> running``; None when another claimant won."""

        now = to_db_datetime(self._clock())
        with self.database.session() as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.QUEUED.value,
                    col(Job.run_after) <= now,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    claimed_at=now,
                    finished_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = session.exec(select(Job).where(Job.job_id == job_id)).one()
            claimed = _to_job_view(row)
            session.commit()
        logger.debug("Claimed %s job %s", claimed.job_type.value, job_id)
        return claimed

    def mark_done(self, job_id: str) -> bool:
        """Mark a running job as done."""

        now = to_db_datetime(self._clock())
        with self.database.session() as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.DONE.value,
                    finished_at=now,
                    failure_class=None,
                    last_error=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning("mark_done ignored for job %s: not running", job_id)
                return False
            session.commit()
            return True

    def mark_failed(
        self,
        job_id: str,
        error: str,
        *,
        failure_class: FailureClass = FailureClass.TRANSIENT,
    ) -> bool:
        """Record a failed attempt and return whether the job was requeued.

        Retryable failures go back to ``queued`` with exponential backoff until
        ``attempts`` reaches ``max_attempts``; everything else ends in ``error``.
        """

        now = self._clock()
        with self.database.session() as session:
            row = session.exec(
                select(Job).where(
                    Job.job_id == job_id,
                    Job.status == JobStatus.RUNNING.value,
                ),
            ).one_or_none()
            if row is None:
                logger.warning("mark_failed ignored for job %s: not running", job_id)
                return False

            attempts = row.attempts + 1
            max_attempts = row.max_attempts
            requeue = failure_class.retryable and attempts < max_attempts
            values: dict[str, Any] = {
                "attempts": attempts,
                "failure_class": failure_class.value,
                "last_error": error[:MAX_ERROR_CHARS],
                "updated_at": to_db_datetime(now),
            }
            if requeue:
                values.update(
                    status=JobStatus.QUEUED.value,
                    run_after=to_db_datetime(now + self._retry_delay(attempts)),
                    claimed_at=None,
                )
            else:
                values.update(status=JobStatus.ERROR.value, finished_at=to_db_datetime(now))

            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                    col(Job.attempts) == row.attempts,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning("mark_failed lost a race for job %s", job_id)
                return False
            session.commit()

        if requeue:
            logger.info(
                "Job %s requeued after attempt %d/%d: %s",
                job_id,
                attempts,
                max_attempts,
                failure_class.value,
            )
        else:
            logger.warning(
                "Job %s failed permanently after attempt %d/%d: %s",
                job_id,
                attempts,
                max_attempts,
                failure_class.value,
            )
        return requeue

    def requeue_stale(self, *, stale_after_seconds: int) -> int:
        """Return jobs stuck in ``running`` past the deadline to the queue.

        A runner that dies between claim and completion leaves its job
        running forever; recovering it here counts as one failed attempt, so
        a job that keeps killing its runner still ends in ``error``.
        """

        now = self._clock()
        cutoff = to_db_datetime(now - timedelta(seconds=stale_after_seconds))
        with self.database.session() as session:
            stale_rows = session.exec(
                select(Job).where(
                    Job.status == JobStatus.RUNNING.value,
                    col(Job.claimed_at) < cutoff,
                ),
            ).all()
            stale = [(row.job_id, row.attempts, row.max_attempts) for row in stale_rows]

        requeued = 0
        for job_id, attempts, max_attempts in stale:
            next_attempts = attempts + 1
            exhausted = next_attempts >= max_attempts
            with self.database.session() as session:
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == JobStatus.RUNNING.value,
                        col(Job.claimed_at) < cutoff,
                    )
                    .values(
                        status=JobStatus.ERROR.value if exhausted else JobStatus.QUEUED.value,
                        attempts=next_attempts,
                        claimed_at=None,
                        finished_at=to_db_datetime(now) if exhausted else None,
                        failure_class=FailureClass.TRANSIENT.value,
                        last_error="claim expired before completion was recorded",
                        run_after=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
            if exhausted:
                logger.warning("Stale job %s exhausted its attempts", job_id)
            else:
                requeued += 1
        if stale:
            logger.info("Recovered %d stale job(s), %d requeued", len(stale), requeued)
        return requeued

    def retry_job(self, job_id: str) -> bool:
        """Operator retry: move an ``error`` job back to the queue with a fresh budget."""

        now = to_db_datetime(self._clock())
        with self.database.session() as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.ERROR.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    attempts=0,
                    run_after=now,
                    claimed_at=None,
                    finished_at=None,
                    failure_class=None,
                    last_error=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_job(self, job_id: str) -> JobView | None:
        with self.database.session() as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        user_id: str | None = None,
        status: JobStatus | None = None,
        batch_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
        if user_id is not None:
            statement = statement.where(Job.user_id == user_id)
        if status is not None:
            statement = statement.where(Job.status == status.value)
        if batch_id is not None:
            statement = statement.where(Job.batch_id == batch_id)
        with self.database.session() as session:
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def count_by_status(
        self,
        *,
        user_id: str | None = None,
        batch_id: str | None = None,
    ) -> JobCounts:
        statement = select(Job.status, func.count()).group_by(Job.status)
        if user_id is not None:
            statement = statement.where(Job.user_id == user_id)
        if batch_id is not None:
            statement = statement.where(Job.batch_id == batch_id)
        with self.database.session() as session:
            rows = session.exec(statement).all()
        return JobCounts(by_status={JobStatus(status): int(count) for status, count in rows})

    def _next_candidate_id(
        self,
        *,
        user_id: str | None,
        batch_id: str | None,
        enqueued_before: datetime | None,
        skip_ids: set[str],
    ) -> str | None:
        now = to_db_datetime(self._clock())
        statement = (
            select(Job.job_id)
            .where(
                Job.status == JobStatus.QUEUED.value,
                Job.run_after <= now,
            )
            .order_by(
                col(Job.created_at).asc(),
                _PRIORITY_ORDER,
                # insertion order inside one enqueue_batch transaction
                literal_column("jobs.rowid").asc(),
            )
            .limit(1)
        )
        if user_id is not None:
            statement = statement.where(Job.user_id == user_id)
        if batch_id is not None:
            statement = statement.where(Job.batch_id == batch_id)
        if enqueued_before is not None:
            statement = statement.where(Job.created_at <= to_db_datetime(enqueued_before))
        if skip_ids:
            statement = statement.where(col(Job.job_id).not_in(skip_ids))
        with self.database.session() as session:
            return session.exec(statement).first()

    def _retry_delay(self, attempts: int) -> timedelta:
        seconds = self.retry_base_seconds * (2 ** max(0, attempts - 1))
        return timedelta(seconds=min(seconds, self.retry_max_seconds))


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        job_type=JobType(row.job_type),
        payload_json=row.payload_json,
        status=JobStatus(row.status),
        priority=JobPriority(row.priority),
        batch_id=row.batch_id,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware(row.run_after),
        claimed_at=optional_utc_aware(row.claimed_at),
        finished_at=optional_utc_aware(row.finished_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        last_error=row.last_error,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
