"""Provider-specific extraction of interaction fields from raw payloads."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from practice_sync.ingestion.cleaning import (
    decode_base64url,
    html_to_text,
    normalize_whitespace,
    parse_address_list,
)
from practice_sync.ingestion.errors import NormalizationError
from practice_sync.ingestion.models import NormalizedInteraction, Participant, RawEventRecord
from practice_sync.storage.common import from_iso

GMAIL_PROVIDERS = frozenset({"gmail", "google_gmail"})
CALENDAR_PROVIDERS = frozenset({"google_calendar", "calendar"})
MAX_BODY_CHARS = 100_000


def normalize_raw_event(raw_event: RawEventRecord) -> NormalizedInteraction:
    """Dispatch to the extractor for the event's provider."""

    provider = raw_event.provider.strip().lower()
    if provider in GMAIL_PROVIDERS:
        normalized = normalize_gmail_message(raw_event)
    elif provider in CALENDAR_PROVIDERS:
        normalized = normalize_calendar_event(raw_event)
    else:
        normalized = normalize_generic(raw_event)

    if not normalized.body_text and not normalized.subject:
        raise NormalizationError(
            f"{raw_event.provider} event {raw_event.source_id} has neither subject nor body",
        )
    normalized.body_text = normalized.body_text[:MAX_BODY_CHARS]
    return normalized


def normalize_gmail_message(raw_event: RawEventRecord) -> NormalizedInteraction:
    """Gmail API message resource: headers, MIME parts, snippet fallback."""

    message = raw_event.payload
    mime_root = message.get("payload")
    if not isinstance(mime_root, Mapping):
        mime_root = {}
    headers = _header_map(mime_root.get("headers"))

    body = _mime_body(mime_root, "text/plain")
    if not body:
        body = html_to_text(_mime_body(mime_root, "text/html"))
    if not body:
        body = html_to_text(str(message.get("snippet") or ""))

    participants = [
        *parse_address_list(headers.get("from"), role="from"),
        *parse_address_list(headers.get("to"), role="to"),
        *parse_address_list(headers.get("cc"), role="cc"),
    ]
    occurred_at = _epoch_millis(message.get("internalDate")) or raw_event.occurred_at
    meta = {
        key: message[key]
        for key in ("threadId", "labelIds")
        if message.get(key) is not None
    }
    return NormalizedInteraction(
        interaction_type="email",
        subject=(headers.get("subject") or "").strip() or None,
        body_text=normalize_whitespace(body),
        participants=participants,
        occurred_at=occurred_at,
        source_meta=meta,
    )


def normalize_calendar_event(raw_event: RawEventRecord) -> NormalizedInteraction:
    """Google Calendar event resource: summary, description, attendees."""

    event = raw_event.payload
    description = html_to_text(str(event.get("description") or ""))
    location = str(event.get("location") or "").strip()
    body = description
    if location:
        body = f"{description}\n\nLocation: {location}".strip()

    participants: list[Participant] = []
    organizer = event.get("organizer")
    if isinstance(organizer, Mapping):
        participants.append(_calendar_participant(organizer, role="organizer"))
    attendees = event.get("attendees")
    if isinstance(attendees, list):
        participants.extend(
            _calendar_participant(attendee, role="attendee")
            for attendee in attendees
            if isinstance(attendee, Mapping)
        )

    meta: dict[str, Any] = {}
    if event.get("status"):
        meta["status"] = event["status"]
    end = _calendar_time(event.get("end"))
    if end is not None:
        meta["ends_at"] = end.isoformat()
    return NormalizedInteraction(
        interaction_type="meeting",
        subject=str(event.get("summary") or "").strip() or None,
        body_text=body,
        participants=[item for item in participants if item.email or item.name],
        occurred_at=_calendar_time(event.get("start")) or raw_event.occurred_at,
        source_meta=meta,
    )


def normalize_generic(raw_event: RawEventRecord) -> NormalizedInteraction:
    """Best-effort mapping for providers without a dedicated extractor."""

    payload = raw_event.payload
    subject = payload.get("subject") or payload.get("title")
    body = payload.get("body") or payload.get("text") or payload.get("content") or ""
    participants: list[Participant] = []
    raw_participants = payload.get("participants")
    if isinstance(raw_participants, list):
        for item in raw_participants:
            if isinstance(item, str):
                participants.extend(parse_address_list(item, role="participant"))
            elif isinstance(item, Mapping):
                participants.append(
                    Participant(
                        email=_lower_or_none(item.get("email")),
                        name=_str_or_none(item.get("name")),
                        role=str(item.get("role") or "participant"),
                    ),
                )
    return NormalizedInteraction(
        interaction_type=str(payload.get("type") or "note"),
        subject=_str_or_none(subject),
        body_text=html_to_text(str(body)),
        participants=participants,
        occurred_at=raw_event.occurred_at,
    )


def _header_map(headers: Any) -> dict[str, str]:
    mapped: dict[str, str] = {}
    if not isinstance(headers, list):
        return mapped
    for header in headers:
        if not isinstance(header, Mapping):
            continue
        name = str(header.get("name") or "").strip().lower()
        if name and name not in mapped:
            mapped[name] = str(header.get("value") or "")
    return mapped


def _mime_body(part: Mapping[str, Any], mime_type: str) -> str:
    """Depth-first search for the first part of ``mime_type`` with inline data."""

    if str(part.get("mimeType") or "").lower() == mime_type:
        body = part.get("body")
        if isinstance(body, Mapping) and body.get("data"):
            return decode_base64url(str(body["data"]))
    children = part.get("parts")
    if isinstance(children, list):
        for child in children:
            if isinstance(child, Mapping):
                found = _mime_body(child, mime_type)
                if found:
                    return found
    return ""


def _epoch_millis(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None


def _calendar_time(value: Any) -> datetime | None:
    if not isinstance(value, Mapping):
        return None
    raw = value.get("dateTime") or value.get("date")
    if not raw:
        return None
    try:
        return from_iso(str(raw))
    except ValueError:
        return None


def _calendar_participant(item: Mapping[str, Any], *, role: str) -> Participant:
    return Participant(
        email=_lower_or_none(item.get("email")),
        name=_str_or_none(item.get("displayName")),
        role=role,
    )


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _lower_or_none(value: Any) -> str | None:
    text = _str_or_none(value)
    return text.lower() if text is not None else None
