"""Deterministic job failure classification for queue retry policy."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from sqlalchemy.exc import OperationalError

from practice_sync.errors import ConfigurationError
from practice_sync.guardrails.models import GuardrailBlockedError
from practice_sync.ingestion.errors import (
    InvalidEventError,
    NormalizationError,
    RecordNotFoundError,
)
from practice_sync.ingestion.sources.base import NonRetryableProviderError, TemporaryProviderError
from practice_sync.jobs.models import FailureClass
from practice_sync.jobs.payloads import PayloadValidationError

_TRANSIENT_MESSAGE_PATTERNS: tuple[str, ...] = (
    "database is locked",
    "too many requests",
    "rate limit",
    "temporarily unavailable",
    "connection reset",
    "try again later",
)
_AUTH_STATUS_CODES = frozenset({401, 403})
_TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429})


@dataclass(slots=True)
class JobFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str


def classify_failure(error: BaseException) -> JobFailureClassification:
    """Map a handler exception to a failure class; unknown errors are transient."""

    if isinstance(error, PayloadValidationError):
        return _result(FailureClass.VALIDATION, "payload_invalid", "payload_validation")
    if isinstance(error, GuardrailBlockedError):
        return _result(
            FailureClass.BLOCKED,
            f"guardrail_{error.blocked.reason.value}",
            "guardrail_blocked",
        )
    if isinstance(error, ConfigurationError):
        return _result(FailureClass.CONFIGURATION, "configuration", "configuration")
    if isinstance(error, InvalidEventError | NormalizationError):
        return _result(FailureClass.VALIDATION, "event_invalid", "stage_validation")
    if isinstance(error, RecordNotFoundError):
        return _result(FailureClass.VALIDATION, "record_not_found", "stage_validation")
    if isinstance(error, NonRetryableProviderError):
        return _result(FailureClass.VALIDATION, f"provider_{error.code}", "provider_non_retryable")
    if isinstance(error, TemporaryProviderError):
        return _result(FailureClass.TRANSIENT, f"provider_{error.code}", "provider_transient")
    if isinstance(error, httpx.HTTPStatusError):
        return _classify_http_status(error.response.status_code)
    if isinstance(error, httpx.TransportError | TimeoutError | ConnectionError):
        return _result(FailureClass.TRANSIENT, "network", "network_transient")
    if isinstance(error, OperationalError) and "locked" in str(error).lower():
        return _result(FailureClass.TRANSIENT, "database_locked", "database_locked")

    message = str(error).lower()
    for pattern in _TRANSIENT_MESSAGE_PATTERNS:
        if pattern in message:
            return _result(FailureClass.TRANSIENT, "message_transient", f"pattern:{pattern}")
    return _result(FailureClass.TRANSIENT, "unclassified", "fallback_transient")


def _classify_http_status(status_code: int) -> JobFailureClassification:
    reason = f"http_{status_code}"
    if status_code in _AUTH_STATUS_CODES:
        return _result(FailureClass.CONFIGURATION, reason, "http_auth")
    if status_code in _TRANSIENT_STATUS_CODES or status_code >= 500:
        return _result(FailureClass.TRANSIENT, reason, "http_transient")
    return _result(FailureClass.VALIDATION, reason, "http_client_error")


def _result(
    failure_class: FailureClass,
    reason_code: str,
    matched_rule: str,
) -> JobFailureClassification:
    return JobFailureClassification(
        failure_class=failure_class,
        reason_code=reason_code,
        matched_rule=matched_rule,
    )
