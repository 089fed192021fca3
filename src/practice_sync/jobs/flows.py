"""Prefect flow for scheduled queue sweeps."""

from __future__ import annotations

import logging
from pathlib import Path

from prefect import flow, task
from prefect.cache_policies import NONE

from practice_sync.config import Settings
from practice_sync.ingestion.pipeline import IngestionPipeline
from practice_sync.jobs.runner import RunnerSummary
from practice_sync.storage.database import Database

logger = logging.getLogger(__name__)


@task(name="sweep_pending_jobs_task", cache_policy=NONE)
def sweep_once(pipeline: IngestionPipeline, batch_size: int | None = None) -> RunnerSummary:
    return pipeline.runner.process_pending_jobs(batch_size=batch_size)


@flow(name="sweep_pending_jobs")
def sweep_pending_jobs(
    *,
    db_path: Path | None = None,
    batch_size: int | None = None,
) -> RunnerSummary:
    """One global sweep; schedule this flow with a Prefect deployment interval."""

    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    with Database(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms) as database:
        database.init_schema()
        pipeline = IngestionPipeline(settings=settings, database=database)
        try:
            summary = sweep_once(pipeline, batch_size=batch_size)
        finally:
            pipeline.close()
    logger.info(
        "Scheduled sweep: processed=%d succeeded=%d failed=%d",
        summary.processed,
        summary.succeeded,
        summary.failed,
    )
    return summary
