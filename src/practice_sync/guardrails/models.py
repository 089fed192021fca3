"""Value types returned by the guardrail ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class BlockedReason(str, Enum):
    """Why a metered operation was not allowed to run."""

    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    COST_CAPPED = "cost_capped"


_BLOCKED_MESSAGES = {
    BlockedReason.QUOTA_EXCEEDED: "Monthly AI credits exhausted",
    BlockedReason.RATE_LIMITED: "Too many AI requests in the last minute",
    BlockedReason.COST_CAPPED: "Daily AI cost cap reached",
}


@dataclass(slots=True, frozen=True)
class Blocked:
    """Explicit rejection; callers surface the reason instead of retrying."""

    reason: BlockedReason
    credits_left: int | None = None

    @property
    def message(self) -> str:
        return _BLOCKED_MESSAGES[self.reason]


@dataclass(slots=True, frozen=True)
class QuotaView:
    """Current credit balance for one user."""

    user_id: str
    period_start: date
    credits_left: int


@dataclass(slots=True)
class MeteredCall(Generic[T]):
    """What a paid operation hands back: its value plus the usage to bill."""

    value: T
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float | None = None


@dataclass(slots=True)
class GuardedResult(Generic[T]):
    """Successful guarded call."""

    value: T
    credits_left: int
    cost_usd: float


@dataclass(slots=True, frozen=True)
class UsageSummary:
    """Aggregated ledger rows for a time window."""

    requests: int
    input_tokens: int
    output_tokens: int
    cost_usd: float


class GuardrailBlockedError(Exception):
    """Raised by job handlers to fail a job permanently with a blocked reason."""

    def __init__(self, blocked: Blocked) -> None:
        super().__init__(f"{blocked.reason.value}: {blocked.message}")
        self.blocked = blocked
