"""CLI entrypoint for practice-sync."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from practice_sync import __version__
from practice_sync.errors import ConfigurationError
from practice_sync.ingestion.controllers import (
    EmbedSearchCommand,
    IngestionCliController,
    QuotaShowCommand,
    SyncImportCommand,
    SyncStatusCommand,
)
from practice_sync.ingestion.sources.base import ProviderError
from practice_sync.jobs.controllers import (
    JobEnqueueCommand,
    JobListCommand,
    JobMutateCommand,
    JobRecoverCommand,
    JobRunCommand,
    JobsCliController,
    JobWorkCommand,
)
from practice_sync.jobs.models import JobPriority, JobStatus, JobType

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()
INGESTION_CONTROLLER = IngestionCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
USER_ID_OPTION = click.option("--user-id", required=True, help="Owner of the data.")


@click.group()
@click.version_option(version=__version__, prog_name="practice-sync")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root log level.",
)
def practice_sync(log_level: str) -> None:
    """Practice sync: job queue, ingestion pipeline and AI guardrails."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@practice_sync.group()
def jobs() -> None:
    """Durable job queue commands."""


@jobs.command("enqueue")
@DB_PATH_OPTION
@USER_ID_OPTION
@click.option(
    "--type",
    "job_type",
    type=click.Choice([item.value for item in JobType]),
    required=True,
    help="Job type.",
)
@click.option("--payload", "payload_json", required=True, help="Job payload as a JSON object.")
@click.option(
    "--priority",
    type=click.Choice([item.value for item in JobPriority]),
    default=JobPriority.MEDIUM.value,
    show_default=True,
)
@click.option("--batch-id", default=None, help="Correlation id of a bulk sync.")
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str,
    job_type: str,
    payload_json: str,
    priority: str,
    batch_id: str | None,
) -> None:
    """Validate a payload and enqueue one job."""

    _emit(
        lambda: JOBS_CONTROLLER.enqueue(
            JobEnqueueCommand(
                db_path=db_path,
                user_id=user_id,
                job_type=job_type,
                payload_json=payload_json,
                priority=priority,
                batch_id=batch_id,
            ),
        ),
    )


@jobs.command("run")
@DB_PATH_OPTION
@click.option(
    "--user-id",
    default=None,
    help="Run a synchronous pass over one user's queue instead of a global sweep.",
)
@click.option("--batch-id", default=None, help="Only jobs of this batch (with --user-id).")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max jobs to process.")
def jobs_run(
    db_path: Path | None,
    user_id: str | None,
    batch_id: str | None,
    limit: int | None,
) -> None:
    """Run one pass of the job runner."""

    _emit(
        lambda: JOBS_CONTROLLER.run(
            JobRunCommand(db_path=db_path, user_id=user_id, batch_id=batch_id, limit=limit),
        ),
    )


@jobs.command("work")
@DB_PATH_OPTION
@click.option(
    "--max-sweeps",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many sweeps (default: run until interrupted).",
)
@click.option(
    "--poll-interval",
    "poll_interval_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds to wait after an idle sweep.",
)
def jobs_work(
    db_path: Path | None,
    max_sweeps: int | None,
    poll_interval_seconds: float | None,
) -> None:
    """Poll the queue and process jobs for all users."""

    _emit(
        lambda: JOBS_CONTROLLER.work(
            JobWorkCommand(
                db_path=db_path,
                max_sweeps=max_sweeps,
                poll_interval_seconds=poll_interval_seconds,
            ),
        ),
    )


@jobs.command("list")
@DB_PATH_OPTION
@click.option("--user-id", default=None)
@click.option("--status", type=click.Choice([item.value for item in JobStatus]), default=None)
@click.option("--batch-id", default=None)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def jobs_list(
    db_path: Path | None,
    user_id: str | None,
    status: str | None,
    batch_id: str | None,
    limit: int,
) -> None:
    """List recent jobs with queue counts."""

    _emit(
        lambda: JOBS_CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                user_id=user_id,
                status=status,
                batch_id=batch_id,
                limit=limit,
            ),
        ),
    )


@jobs.command("retry")
@DB_PATH_OPTION
@click.argument("job_id")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue a job that ended in error."""

    _emit(lambda: JOBS_CONTROLLER.retry(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("recover-stale")
@DB_PATH_OPTION
@click.option(
    "--stale-after-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Running jobs claimed longer ago than this are requeued.",
)
def jobs_recover_stale(db_path: Path | None, stale_after_seconds: int | None) -> None:
    """Requeue jobs left running by a crashed runner."""

    _emit(
        lambda: JOBS_CONTROLLER.recover_stale(
            JobRecoverCommand(db_path=db_path, stale_after_seconds=stale_after_seconds),
        ),
    )


@practice_sync.group()
def sync() -> None:
    """Bulk sync commands."""


@sync.command("import")
@DB_PATH_OPTION
@USER_ID_OPTION
@click.option("--provider", required=True, help="Provider name, for example gmail.")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSONL export, one provider event per line.",
)
@click.option(
    "--run-jobs/--no-run-jobs",
    default=True,
    show_default=True,
    help="Process the queued jobs before returning.",
)
def sync_import(
    db_path: Path | None,
    user_id: str,
    provider: str,
    file_path: Path,
    run_jobs: bool,
) -> None:
    """Import provider events inside a tracked sync session."""

    _emit(
        lambda: INGESTION_CONTROLLER.sync_import(
            SyncImportCommand(
                db_path=db_path,
                user_id=user_id,
                provider=provider,
                file_path=file_path,
                run_jobs=run_jobs,
            ),
        ),
    )


@sync.command("status")
@DB_PATH_OPTION
@USER_ID_OPTION
@click.option("--session-id", default=None, help="Specific session (default: latest).")
@click.option("--service", default=None, help="Latest session of this provider.")
def sync_status(
    db_path: Path | None,
    user_id: str,
    session_id: str | None,
    service: str | None,
) -> None:
    """Show sync session progress."""

    _emit(
        lambda: INGESTION_CONTROLLER.sync_status(
            SyncStatusCommand(
                db_path=db_path,
                user_id=user_id,
                session_id=session_id,
                service=service,
            ),
        ),
    )


@practice_sync.group()
def quota() -> None:
    """AI guardrail commands."""


@quota.command("show")
@DB_PATH_OPTION
@USER_ID_OPTION
def quota_show(db_path: Path | None, user_id: str) -> None:
    """Show credits left and today's AI usage."""

    _emit(
        lambda: INGESTION_CONTROLLER.quota_show(
            QuotaShowCommand(db_path=db_path, user_id=user_id),
        ),
    )


@practice_sync.group()
def embed() -> None:
    """Embedding commands."""


@embed.command("search")
@DB_PATH_OPTION
@USER_ID_OPTION
@click.option("--query", required=True, help="Free-text query.")
@click.option("--owner-type", default=None, help="Only match embeddings of this owner type.")
@click.option("--limit", type=click.IntRange(min=1, max=100), default=10, show_default=True)
@click.option(
    "--threshold",
    type=click.FloatRange(min=-1.0, max=1.0),
    default=None,
    help="Minimum cosine similarity (default: configured threshold).",
)
def embed_search(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str,
    query: str,
    owner_type: str | None,
    limit: int,
    threshold: float | None,
) -> None:
    """Find interactions similar to a query (one guarded embedding call on cache miss)."""

    _emit(
        lambda: INGESTION_CONTROLLER.embed_search(
            EmbedSearchCommand(
                db_path=db_path,
                user_id=user_id,
                query=query,
                owner_type=owner_type,
                limit=limit,
                threshold=threshold,
            ),
        ),
    )


def _emit(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (ValueError, ConfigurationError, ProviderError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    practice_sync()
