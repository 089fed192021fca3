from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest
from sqlmodel import func, select

from practice_sync.jobs.models import FailureClass, JobItem, JobPriority, JobStatus, JobType
from practice_sync.jobs.payloads import NormalizePayload, PayloadValidationError
from practice_sync.jobs.queue import JobQueue
from practice_sync.storage.database import Database
from practice_sync.storage.sqlmodel_models import Job

pytestmark = [
    allure.epic("Background Jobs"),
    allure.feature("Job Queue Reliability"),
]


def _job_count(database: Database) -> int:
    with database.session() as session:
        return int(session.exec(select(func.count()).select_from(Job)).one())


def test_enqueue_rejects_payload_that_does_not_match_job_type(database: Database) -> None:
    queue = JobQueue(database)

    with pytest.raises(PayloadValidationError, match="Unexpected payload fields: owner_id"):
        queue.enqueue("user-1", JobType.NORMALIZE, {"raw_event_id": "r1", "owner_id": "x"})
    with pytest.raises(PayloadValidationError, match="raw_event_id: required"):
        queue.enqueue("user-1", JobType.NORMALIZE, {})
    assert _job_count(database) == 0


def test_enqueue_batch_is_all_or_nothing(database: Database) -> None:
    queue = JobQueue(database)

    with pytest.raises(PayloadValidationError):
        queue.enqueue_batch(
            "user-1",
            JobType.NORMALIZE,
            [
                JobItem(payload=NormalizePayload(raw_event_id="r1")),
                JobItem(payload={"raw_event_id": 42}),
            ],
        )
    assert _job_count(database) == 0

    job_ids = queue.enqueue_batch(
        "user-1",
        JobType.NORMALIZE,
        [JobItem(payload=NormalizePayload(raw_event_id=f"r{index}")) for index in range(3)],
    )
    assert len(job_ids) == 3
    assert queue.count_by_status(user_id="user-1").get(JobStatus.QUEUED) == 3


def test_claim_order_is_fifo_with_priority_breaking_ties(database: Database, clock) -> None:
    queue = JobQueue(database, clock=clock)
    early = queue.enqueue(
        "user-1",
        JobType.NORMALIZE,
        NormalizePayload(raw_event_id="early"),
        priority=JobPriority.LOW,
    )
    clock.advance(seconds=1)
    low, high, medium = queue.enqueue_batch(
        "user-1",
        JobType.NORMALIZE,
        [
            JobItem(payload=NormalizePayload(raw_event_id="low"), priority=JobPriority.LOW),
            JobItem(payload=NormalizePayload(raw_event_id="high"), priority=JobPriority.HIGH),
            JobItem(payload=NormalizePayload(raw_event_id="medium"), priority="medium"),
        ],
    )

    claimed = queue.claim_next(limit=10)

    assert [job.job_id for job in claimed] == [early, high, medium, low]
    assert all(job.status == JobStatus.RUNNING for job in claimed)
    assert queue.claim_next(limit=1) == []


def test_claim_next_filters_by_user_and_batch(database: Database) -> None:
    queue = JobQueue(database)
    queue.enqueue("user-1", JobType.NORMALIZE, {"raw_event_id": "a"}, batch_id="B1")
    queue.enqueue("user-1", JobType.NORMALIZE, {"raw_event_id": "b"}, batch_id="B2")
    other = queue.enqueue("user-2", JobType.NORMALIZE, {"raw_event_id": "c"}, batch_id="B1")

    claimed = queue.claim_next(limit=5, user_id="user-1", batch_id="B1")

    assert len(claimed) == 1
    assert claimed[0].batch_id == "B1"
    assert claimed[0].user_id == "user-1"
    other_job = queue.get_job(other)
    assert other_job is not None
    assert other_job.status == JobStatus.QUEUED


def test_concurrent_try_claim_has_exactly_one_winner(database: Database) -> None:
    queue = JobQueue(database)
    job_id = queue.enqueue("user-1", JobType.NORMALIZE, {"raw_event_id": "r1"})
    contenders = 8
    barrier = threading.Barrier(contenders)
    results: list[object] = []
    lock = threading.Lock()

    def _claim() -> None:
        barrier.wait(timeout=5)
        claimed = queue.try_claim(job_id)
        with lock:
            results.append(claimed)

    threads = [threading.Thread(target=_claim) for _ in range(contenders)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    winners = [item for item in results if item is not None]
    assert len(results) == contenders
    assert len(winners) == 1
    job = queue.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.RUNNING


def test_concurrent_claim_next_never_hands_out_a_job_twice(database: Database) -> None:
    queue = JobQueue(database)
    queue.enqueue_batch(
        "user-1",
        JobType.NORMALIZE,
        [JobItem(payload={"raw_event_id": f"r{index}"}) for index in range(20)],
    )
    claimed_ids: list[str] = []
    lock = threading.Lock()
    barrier = threading.Barrier(4)

    def _drain() -> None:
        barrier.wait(timeout=5)
        while True:
            jobs = queue.claim_next(limit=1)
            if not jobs:
                return
            with lock:
                claimed_ids.append(jobs[0].job_id)

    threads = [threading.Thread(target=_drain) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert len(claimed_ids) == 20
    assert len(set(claimed_ids)) == 20


def test_transient_failure_requeues_with_backoff_until_attempts_exhausted(
    database: Database,
    clock,
) -> None:
    queue = JobQueue(database, retry_base_seconds=30, retry_max_seconds=3_600, clock=clock)
    job_id = queue.enqueue("user-1", JobType.NORMALIZE, {"raw_event_id": "r1"})

    assert queue.claim_next()[0].job_id == job_id
    assert queue.mark_failed(job_id, "timeout") is True
    job = queue.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 1
    assert job.run_after == clock.now + timedelta(seconds=30)
    assert queue.claim_next() == []

    clock.advance(seconds=30)
    assert queue.claim_next()[0].job_id == job_id
    assert queue.mark_failed(job_id, "timeout") is True
    job = queue.get_job(job_id)
    assert job is not None
    assert job.run_after == clock.now + timedelta(seconds=60)

    clock.advance(seconds=60)
    assert queue.claim_next()[0].job_id == job_id
    assert queue.mark_failed(job_id, "timeout") is False
    job = queue.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.ERROR
    assert job.attempts == 3
    assert job.failure_class == FailureClass.TRANSIENT
    assert job.last_error == "timeout"


def test_non_retryable_failure_goes_straight_to_error(database: Database) -> None:
    queue = JobQueue(database)
    job_id = queue.enqueue("user-1", JobType.NORMALIZE, {"raw_event_id": "r1"})
    queue.claim_next()

    requeued = queue.mark_failed(job_id, "bad payload", failure_class=FailureClass.VALIDATION)

    job = queue.get_job(job_id)
    assert requeued is False
    assert job is not None
    assert job.status == JobStatus.ERROR
    assert job.attempts == 1
    assert job.failure_class == FailureClass.VALIDATION


def test_state_transitions_require_running_job(database: Database) -> None:
    queue = JobQueue(database)
    job_id = queue.enqueue("user-1", JobType.NORMALIZE, {"raw_event_id": "r1"})

    assert queue.mark_done(job_id) is False
    assert queue.mark_failed(job_id, "boom") is False

    queue.claim_next()
    assert queue.mark_done(job_id) is True
    assert queue.mark_done(job_id) is False
    job = queue.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.DONE
    assert job.finished_at is not None


def test_requeue_stale_recovers_abandoned_running_jobs(database: Database, clock) -> None:
    queue = JobQueue(database, max_attempts=2, clock=clock)
    first = queue.enqueue("user-1", JobType.NORMALIZE, {"raw_event_id": "r1"})
    queue.claim_next()
    clock.advance(seconds=60)
    second = queue.enqueue("user-1", JobType.NORMALIZE, {"raw_event_id": "r2"})
    queue.claim_next()

    clock.advance(seconds=900)
    assert queue.requeue_stale(stale_after_seconds=900) == 1

    recovered = queue.get_job(first)
    fresh = queue.get_job(second)
    assert recovered is not None
    assert recovered.status == JobStatus.QUEUED
    assert recovered.attempts == 1
    assert fresh is not None
    assert fresh.status == JobStatus.RUNNING

    assert queue.claim_next(user_id="user-1")[0].job_id == first
    clock.advance(seconds=901)
    assert queue.requeue_stale(stale_after_seconds=900) == 1
    exhausted = queue.get_job(first)
    assert exhausted is not None
    assert exhausted.status == JobStatus.ERROR
    assert exhausted.attempts == 2
    requeued = queue.get_job(second)
    assert requeued is not None
    assert requeued.status == JobStatus.QUEUED


def test_retry_job_gives_error_job_a_fresh_budget(database: Database) -> None:
    queue = JobQueue(database)
    job_id = queue.enqueue("user-1", JobType.NORMALIZE, {"raw_event_id": "r1"})
    queue.claim_next()
    queue.mark_failed(job_id, "bad", failure_class=FailureClass.VALIDATION)

    assert queue.retry_job(job_id) is True
    assert queue.retry_job(job_id) is False
    job = queue.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 0
    assert job.last_error is None
