"""Typed job payloads keyed by job type.

Payloads are stored as JSON but never handled as opaque dicts: every job
type has one payload dataclass, and the queue validates the JSON against it
both when the job is enqueued and when it is claimed.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

from practice_sync.jobs.models import JobType

MAX_PAYLOAD_BYTES = 1024 * 1024
MAX_PAYLOAD_DEPTH = 10
MAX_ID_LENGTH = 128


class PayloadValidationError(ValueError):
    """Payload does not match the schema of its job type."""


@dataclass(slots=True, frozen=True)
class NormalizePayload:
    """Turn one captured raw event into an interaction."""

    job_type: ClassVar[JobType] = JobType.NORMALIZE

    raw_event_id: str


@dataclass(slots=True, frozen=True)
class EmbedPayload:
    """Embed the text of one owner row (an interaction by default)."""

    job_type: ClassVar[JobType] = JobType.EMBED

    owner_id: str
    owner_type: str = "interaction"


@dataclass(slots=True, frozen=True)
class SyncPayload:
    """Run a bulk import for one registered provider source."""

    job_type: ClassVar[JobType] = JobType.SYNC

    provider: str
    preferences: dict[str, Any] = field(default_factory=dict)


JobPayload = NormalizePayload | EmbedPayload | SyncPayload


def parse_payload(job_type: JobType | str, raw: JobPayload | Mapping[str, Any]) -> JobPayload:
    """Validate ``raw`` against the schema of ``job_type`` and return the typed payload."""

    resolved_type = _resolve_job_type(job_type)
    if isinstance(raw, NormalizePayload | EmbedPayload | SyncPayload):
        if raw.job_type is not resolved_type:
            raise PayloadValidationError(
                f"Payload {type(raw).__name__} does not belong to job type {resolved_type.value}",
            )
        data: Mapping[str, Any] = payload_to_dict(raw)
    elif isinstance(raw, Mapping):
        data = raw
    else:
        raise PayloadValidationError(f"Payload must be an object, got {type(raw).__name__}")

    _check_limits(data)
    if resolved_type is JobType.NORMALIZE:
        _reject_unknown_keys(data, allowed={"raw_event_id"})
        return NormalizePayload(raw_event_id=_required_id(data, "raw_event_id"))
    if resolved_type is JobType.EMBED:
        _reject_unknown_keys(data, allowed={"owner_id", "owner_type"})
        return EmbedPayload(
            owner_id=_required_id(data, "owner_id"),
            owner_type=_optional_id(data, "owner_type") or "interaction",
        )
    _reject_unknown_keys(data, allowed={"provider", "preferences"})
    preferences = data.get("preferences", {})
    if not isinstance(preferences, Mapping):
        raise PayloadValidationError("preferences: expected an object")
    return SyncPayload(provider=_required_id(data, "provider"), preferences=dict(preferences))


def parse_payload_json(job_type: JobType | str, payload_json: str) -> JobPayload:
    try:
        decoded = json.loads(payload_json)
    except json.JSONDecodeError as error:
        raise PayloadValidationError(f"Payload is not valid JSON: {error}") from error
    return parse_payload(job_type, decoded)


def payload_to_dict(payload: JobPayload) -> dict[str, Any]:
    return asdict(payload)


def _resolve_job_type(job_type: JobType | str) -> JobType:
    try:
        return JobType(job_type)
    except ValueError as error:
        raise PayloadValidationError(f"Unknown job type: {job_type!r}") from error


def _check_limits(data: Mapping[str, Any]) -> None:
    try:
        encoded = json.dumps(data, ensure_ascii=False)
    except (TypeError, ValueError) as error:
        raise PayloadValidationError(f"Payload is not JSON serializable: {error}") from error

    size = len(encoded.encode("utf-8"))
    if size > MAX_PAYLOAD_BYTES:
        raise PayloadValidationError(
            f"Payload size {size // 1024}KB exceeds limit of {MAX_PAYLOAD_BYTES // 1024}KB",
        )
    depth = _depth(data)
    if depth > MAX_PAYLOAD_DEPTH:
        raise PayloadValidationError(
            f"Payload nesting depth {depth} exceeds limit of {MAX_PAYLOAD_DEPTH}",
        )


def _depth(value: Any) -> int:
    if isinstance(value, Mapping):
        return 1 + max((_depth(item) for item in value.values()), default=0)
    if isinstance(value, list):
        return 1 + max((_depth(item) for item in value), default=0)
    return 0


def _reject_unknown_keys(data: Mapping[str, Any], *, allowed: set[str]) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise PayloadValidationError(f"Unexpected payload fields: {', '.join(unknown)}")


def _required_id(data: Mapping[str, Any], key: str) -> str:
    value = _optional_id(data, key)
    if value is None:
        raise PayloadValidationError(f"{key}: required")
    return value


def _optional_id(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PayloadValidationError(f"{key}: expected a string")
    normalized = value.strip()
    if not normalized:
        raise PayloadValidationError(f"{key}: must not be empty")
    if len(normalized) > MAX_ID_LENGTH:
        raise PayloadValidationError(f"{key}: too long")
    return normalized
