"""Domain models for the durable job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobType(str, Enum):
    """Kinds of background work a job can carry."""

    NORMALIZE = "normalize"
    EMBED = "embed"
    SYNC = "sync"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class JobPriority(str, Enum):
    """Ordering hint applied after FIFO within a user's queue."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {JobPriority.HIGH: 0, JobPriority.MEDIUM: 1, JobPriority.LOW: 2}


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    VALIDATION = "validation"
    BLOCKED = "blocked"
    CONFIGURATION = "configuration"

    @property
    def retryable(self) -> bool:
        return self is FailureClass.TRANSIENT


@dataclass(slots=True)
class JobItem:
    """One entry of a batch enqueue."""

    payload: Any
    priority: JobPriority | str = JobPriority.MEDIUM
    batch_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for runner and CLI logic."""

    job_id: str
    user_id: str
    job_type: JobType
    payload_json: str
    status: JobStatus
    priority: JobPriority
    batch_id: str | None
    attempts: int
    max_attempts: int
    run_after: datetime
    claimed_at: datetime | None
    finished_at: datetime | None
    failure_class: FailureClass | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobCounts:
    """Queue depth grouped by status."""

    by_status: dict[JobStatus, int] = field(default_factory=dict)

    def get(self, status: JobStatus) -> int:
        return self.by_status.get(status, 0)

    @property
    def total(self) -> int:
        return sum(self.by_status.values())
