"""Controllers for job queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from practice_sync.config import Settings
from practice_sync.ingestion.pipeline import IngestionPipeline
from practice_sync.jobs.models import JobStatus, JobType
from practice_sync.jobs.queue import JobQueue
from practice_sync.jobs.runner import RunnerSummary
from practice_sync.storage.database import Database


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for a single enqueue."""

    db_path: Path | None
    user_id: str
    job_type: str
    payload_json: str
    priority: str
    batch_id: str | None


@dataclass(slots=True)
class JobRunCommand:
    """CLI input for one runner pass."""

    db_path: Path | None
    user_id: str | None
    batch_id: str | None
    limit: int | None


@dataclass(slots=True)
class JobWorkCommand:
    """CLI input for the polling worker."""

    db_path: Path | None
    max_sweeps: int | None
    poll_interval_seconds: float | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    user_id: str | None
    status: str | None
    batch_id: str | None
    limit: int


@dataclass(slots=True)
class JobMutateCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobRecoverCommand:
    db_path: Path | None
    stale_after_seconds: int | None


class JobsCliController:
    """Coordinates job queue command execution."""

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        settings = load_settings(command.db_path)
        try:
            payload = json.loads(command.payload_json)
        except json.JSONDecodeError as error:
            raise ValueError(f"--payload is not valid JSON: {error}") from error
        with open_database(settings) as database:
            job_id = _queue(settings, database).enqueue(
                command.user_id,
                JobType(command.job_type),
                payload,
                priority=command.priority,
                batch_id=command.batch_id,
            )
        return [
            f"Job enqueued: job_id={job_id} type={command.job_type} "
            f"priority={command.priority} batch_id={command.batch_id or '-'}",
        ]

    def run(self, command: JobRunCommand) -> list[str]:
        settings = load_settings(command.db_path)
        with open_pipeline(settings) as pipeline:
            if command.user_id is not None:
                summary = pipeline.runner.process_user_jobs(
                    command.user_id,
                    limit=command.limit or 10,
                    batch_id=command.batch_id,
                )
                scope = f"user={command.user_id}"
            else:
                summary = pipeline.runner.process_pending_jobs(batch_size=command.limit)
                scope = "all users"
        return _summary_lines(f"Runner pass ({scope})", summary)

    def work(self, command: JobWorkCommand) -> list[str]:
        settings = load_settings(command.db_path)
        poll_interval = command.poll_interval_seconds or settings.queue.poll_interval_seconds
        with open_pipeline(settings) as pipeline:
            summary = pipeline.runner.run_forever(
                poll_interval_seconds=poll_interval,
                max_sweeps=command.max_sweeps,
            )
        return _summary_lines("Worker stopped", summary)

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = load_settings(command.db_path)
        status = JobStatus(command.status) if command.status else None
        with open_database(settings) as database:
            queue = _queue(settings, database)
            jobs = queue.list_jobs(
                user_id=command.user_id,
                status=status,
                batch_id=command.batch_id,
                limit=command.limit,
            )
            counts = queue.count_by_status(user_id=command.user_id, batch_id=command.batch_id)

        lines = [
            "Jobs: "
            + " ".join(f"{item.value}={counts.get(item)}" for item in JobStatus)
            + f" total={counts.total}",
        ]
        for job in jobs:
            lines.append(
                f"  {job.job_id} user={job.user_id} type={job.job_type.value} "
                f"status={job.status.value} priority={job.priority.value} "
                f"attempts={job.attempts}/{job.max_attempts} batch={job.batch_id or '-'} "
                f"failure={job.failure_class.value if job.failure_class else '-'}",
            )
            if job.last_error:
                lines.append(f"    error: {job.last_error}")
        return lines

    def retry(self, command: JobMutateCommand) -> list[str]:
        settings = load_settings(command.db_path)
        with open_database(settings) as database:
            retried = _queue(settings, database).retry_job(command.job_id)
        if not retried:
            raise ValueError(f"Job {command.job_id} is not in error status")
        return [f"Job re-queued: {command.job_id}"]

    def recover_stale(self, command: JobRecoverCommand) -> list[str]:
        settings = load_settings(command.db_path)
        stale_after = command.stale_after_seconds or settings.queue.stale_after_seconds
        with open_database(settings) as database:
            requeued = _queue(settings, database).requeue_stale(stale_after_seconds=stale_after)
        return [f"Stale jobs requeued: {requeued} (stale_after={stale_after}s)"]


def load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _queue(settings: Settings, database: Database) -> JobQueue:
    return JobQueue(
        database,
        max_attempts=settings.queue.max_attempts,
        retry_base_seconds=settings.queue.retry_base_seconds,
        retry_max_seconds=settings.queue.retry_max_seconds,
    )


def _summary_lines(title: str, summary: RunnerSummary) -> list[str]:
    lines = [
        f"{title}: processed={summary.processed} "
        f"succeeded={summary.succeeded} failed={summary.failed}",
    ]
    lines.extend(f"  error: {error}" for error in summary.errors)
    return lines


@contextmanager
def open_database(settings: Settings) -> Iterator[Database]:
    database = Database(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    try:
        database.init_schema()
        yield database
    finally:
        database.close()


@contextmanager
def open_pipeline(settings: Settings) -> Iterator[IngestionPipeline]:
    with open_database(settings) as database:
        pipeline = IngestionPipeline(settings=settings, database=database)
        try:
            yield pipeline
        finally:
            pipeline.close()
