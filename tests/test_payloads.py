from __future__ import annotations

import allure
import pytest

from practice_sync.jobs.models import JobType
from practice_sync.jobs.payloads import (
    EmbedPayload,
    NormalizePayload,
    PayloadValidationError,
    SyncPayload,
    parse_payload,
    parse_payload_json,
)

pytestmark = [
    allure.epic("Background Jobs"),
    allure.feature("Typed Payloads"),
]


def test_parse_payload_builds_typed_payload_per_job_type() -> None:
    assert parse_payload("normalize", {"raw_event_id": " r1 "}) == NormalizePayload("r1")
    assert parse_payload(JobType.EMBED, {"owner_id": "i1"}) == EmbedPayload(
        owner_id="i1",
        owner_type="interaction",
    )
    assert parse_payload(
        JobType.SYNC,
        {"provider": "gmail", "preferences": {"batch_id": "B1"}},
    ) == SyncPayload(provider="gmail", preferences={"batch_id": "B1"})


def test_parse_payload_accepts_matching_dataclass() -> None:
    payload = EmbedPayload(owner_id="i1")

    assert parse_payload(JobType.EMBED, payload) == payload


def test_parse_payload_rejects_dataclass_of_another_job_type() -> None:
    with pytest.raises(PayloadValidationError, match="does not belong to job type embed"):
        parse_payload(JobType.EMBED, NormalizePayload(raw_event_id="r1"))


@pytest.mark.parametrize(
    ("job_type", "raw", "message"),
    [
        ("transcode", {}, "Unknown job type"),
        (JobType.NORMALIZE, ["r1"], "Payload must be an object"),
        (JobType.NORMALIZE, {"raw_event_id": ""}, "raw_event_id: must not be empty"),
        (JobType.NORMALIZE, {"raw_event_id": 7}, "raw_event_id: expected a string"),
        (JobType.NORMALIZE, {"raw_event_id": "x" * 129}, "raw_event_id: too long"),
        (JobType.EMBED, {"owner_type": "interaction"}, "owner_id: required"),
        (JobType.SYNC, {"provider": "gmail", "preferences": []}, "preferences: expected an object"),
        (JobType.SYNC, {"provider": "gmail", "cursor": "abc"}, "Unexpected payload fields: cursor"),
    ],
)
def test_parse_payload_rejects_invalid_input(job_type, raw, message: str) -> None:
    with pytest.raises(PayloadValidationError, match=message):
        parse_payload(job_type, raw)


def test_parse_payload_enforces_size_and_depth_limits() -> None:
    nested: dict = {}
    cursor = nested
    for _ in range(11):
        cursor["next"] = {}
        cursor = cursor["next"]

    with pytest.raises(PayloadValidationError, match="nesting depth"):
        parse_payload(JobType.SYNC, {"provider": "gmail", "preferences": nested})
    with pytest.raises(PayloadValidationError, match="exceeds limit of 1024KB"):
        parse_payload(JobType.SYNC, {"provider": "gmail", "preferences": {"blob": "x" * 1_100_000}})


def test_parse_payload_json_reports_broken_json() -> None:
    with pytest.raises(PayloadValidationError, match="not valid JSON"):
        parse_payload_json(JobType.NORMALIZE, "{raw_event_id")

    assert parse_payload_json(JobType.NORMALIZE, '{"raw_event_id": "r1"}') == NormalizePayload("r1")
