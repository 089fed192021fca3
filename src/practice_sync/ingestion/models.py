"""Domain models for ingestion stages and provider sources."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class StageAction(str, Enum):
    """What a pipeline stage did with its input."""

    CREATED = "created"
    EXISTING = "existing"
    CACHED = "cached"
    BLOCKED = "blocked"


@dataclass(slots=True)
class ProviderEvent:
    """One provider record as handed over by a source adapter."""

    source_id: str
    payload: dict[str, Any]
    occurred_at: datetime | None = None
    source_meta: dict[str, Any] = field(default_factory=dict)
    contact_id: str | None = None


@dataclass(slots=True)
class ProviderPage:
    """Page of provider events with cursor-based pagination."""

    events: list[ProviderEvent]
    next_cursor: str | None
    cursor: str | None = None
    total_estimate: int | None = None


@dataclass(slots=True)
class RawEventRecord:
    """Persisted, immutable raw event."""

    raw_event_id: str
    user_id: str
    provider: str
    source_id: str
    occurred_at: datetime | None
    payload: dict[str, Any]
    source_meta: dict[str, Any]
    batch_id: str | None
    contact_id: str | None
    created_at: datetime


@dataclass(slots=True)
class Participant:
    """Person on an email or calendar event."""

    email: str | None
    name: str | None = None
    role: str = "participant"


@dataclass(slots=True)
class NormalizedInteraction:
    """Canonical interaction fields extracted from a provider payload."""

    interaction_type: str
    subject: str | None
    body_text: str
    participants: list[Participant] = field(default_factory=list)
    occurred_at: datetime | None = None
    source_meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class InteractionRecord:
    """Persisted interaction row."""

    interaction_id: str
    user_id: str
    contact_id: str | None
    interaction_type: str
    subject: str | None
    body_text: str
    participants: list[Participant]
    occurred_at: datetime | None
    source: str
    source_id: str
    raw_event_id: str | None
    batch_id: str | None
    created_at: datetime

    @property
    def embeddable_text(self) -> str:
        if self.subject:
            return f"{self.subject}\n\n{self.body_text}".strip()
        return self.body_text.strip()


@dataclass(slots=True)
class CaptureResult:
    raw_event_id: str
    action: StageAction


@dataclass(slots=True)
class NormalizeResult:
    interaction_id: str
    action: StageAction


@dataclass(slots=True)
class ChunkOutcome:
    """Result for one embedded chunk of an owner's text."""

    chunk_index: int
    content_hash: str
    action: StageAction
    embedding_id: str | None = None
    vector: list[float] | None = field(default=None, repr=False)


@dataclass(slots=True)
class EmbedResult:
    """Aggregate embed stage result for one owner."""

    owner_type: str
    owner_id: str
    chunks: list[ChunkOutcome] = field(default_factory=list)
    blocked_reason: str | None = None
    cost_usd: float = 0.0

    @property
    def action(self) -> StageAction:
        if self.blocked_reason is not None:
            return StageAction.BLOCKED
        actions = {chunk.action for chunk in self.chunks}
        if StageAction.CREATED in actions:
            return StageAction.CREATED
        if StageAction.CACHED in actions:
            return StageAction.CACHED
        return StageAction.EXISTING

    @property
    def embedding_ids(self) -> list[str]:
        return [chunk.embedding_id for chunk in self.chunks if chunk.embedding_id is not None]


@dataclass(slots=True)
class IngestResult:
    """End state of the single-item path for one provider event."""

    capture: CaptureResult
    normalize: NormalizeResult
    embed: EmbedResult | None = None
