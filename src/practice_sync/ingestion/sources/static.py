"""In-memory and JSONL-file provider sources."""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from practice_sync.ingestion.models import ProviderEvent, ProviderPage
from practice_sync.ingestion.sources.base import NonRetryableProviderError
from practice_sync.storage.common import from_iso


class StaticProviderSource:
    """Serves a fixed list of events in cursor pages.

    Used for exports handed over by an external sync collaborator and for
    tests; the cursor is the offset of the next event.
    """

    def __init__(self, name: str, events: Iterable[ProviderEvent]) -> None:
        self.name = name
        self._events = list(events)

    def fetch_page(self, cursor: str | None, limit: int) -> ProviderPage:
        offset = int(cursor) if cursor else 0
        end = offset + max(1, limit)
        page = self._events[offset:end]
        return ProviderPage(
            events=page,
            cursor=cursor,
            next_cursor=str(end) if end < len(self._events) else None,
            total_estimate=len(self._events),
        )

    @classmethod
    def from_jsonl(cls, name: str, path: Path) -> StaticProviderSource:
        """Load one event per line: ``{"source_id", "payload", "occurred_at"?, ...}``."""

        events: list[ProviderEvent] = []
        with path.open(encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    record = json.loads(stripped)
                except json.JSONDecodeError as error:
                    raise _invalid_export(
                        f"{path}:{line_no}: invalid JSON ({error.msg})",
                    ) from error
                events.append(_event_from_record(record, where=f"{path}:{line_no}"))
        return cls(name, events)


def _event_from_record(record: Any, *, where: str) -> ProviderEvent:
    if not isinstance(record, dict):
        raise _invalid_export(f"{where}: expected an object")
    source_id = record.get("source_id")
    payload = record.get("payload")
    if not isinstance(source_id, str) or not source_id.strip():
        raise _invalid_export(f"{where}: source_id is required")
    if not isinstance(payload, dict):
        raise _invalid_export(f"{where}: payload must be an object")

    occurred_raw = record.get("occurred_at")
    try:
        occurred_at = from_iso(occurred_raw) if occurred_raw else None
    except (TypeError, ValueError) as error:
        raise _invalid_export(f"{where}: invalid occurred_at {occurred_raw!r}") from error
    return ProviderEvent(
        source_id=source_id.strip(),
        payload=payload,
        occurred_at=occurred_at,
        source_meta=record.get("source_meta") or {},
        contact_id=record.get("contact_id"),
    )


def _invalid_export(message: str) -> NonRetryableProviderError:
    return NonRetryableProviderError(message=message, code="invalid_export")
