from __future__ import annotations

import allure

from practice_sync.ingestion.pipeline import IngestionPipeline
from practice_sync.jobs.flows import sweep_once
from practice_sync.jobs.models import JobStatus, JobType
from practice_sync.jobs.payloads import NormalizePayload

pytestmark = [
    allure.epic("Background Jobs"),
    allure.feature("Scheduled Sweep"),
]


def test_sweep_task_processes_jobs_across_users(
    pipeline: IngestionPipeline,
    make_gmail_event,
) -> None:
    for user_id in ("user-1", "user-2"):
        capture = pipeline.capture_service.capture(user_id, "gmail", make_gmail_event("msg-1"))
        pipeline.queue.enqueue(
            user_id,
            JobType.NORMALIZE,
            NormalizePayload(raw_event_id=capture.raw_event_id),
        )

    summary = sweep_once.fn(pipeline)

    assert summary.processed == 2
    assert summary.failed == 0
    counts = pipeline.queue.count_by_status()
    assert counts.get(JobStatus.QUEUED) == 2
    assert counts.get(JobStatus.DONE) == 2
