"""Persistence for raw events and interactions with idempotent inserts."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from practice_sync.ingestion.models import (
    CaptureResult,
    InteractionRecord,
    NormalizedInteraction,
    NormalizeResult,
    Participant,
    ProviderEvent,
    RawEventRecord,
    StageAction,
)
from practice_sync.storage.common import (
    dump_json,
    load_json_object,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from practice_sync.storage.database import Database
from practice_sync.storage.sqlmodel_models import Interaction, RawEvent

logger = logging.getLogger(__name__)


class IngestionRepository:
    """Raw event and interaction storage.

    Inserts are keyed by the stable composite unique constraints
    ``(user_id, provider, source_id)`` and ``(user_id, source, source_id)``:
    an existence check short-circuits the common case and a unique-constraint
    conflict from a concurrent writer is treated as "already exists".
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def capture_raw_event(
        self,
        *,
        user_id: str,
        provider: str,
        event: ProviderEvent,
        batch_id: str | None,
    ) -> CaptureResult:
        existing = self.find_raw_event(
            user_id=user_id,
            provider=provider,
            source_id=event.source_id,
        )
        if existing is not None:
            return CaptureResult(raw_event_id=existing.raw_event_id, action=StageAction.EXISTING)

        raw_event_id = str(uuid4())
        with self.database.session() as session:
            session.add(
                RawEvent(
                    raw_event_id=raw_event_id,
                    user_id=user_id,
                    provider=provider,
                    source_id=event.source_id,
                    occurred_at=(
                        to_db_datetime(event.occurred_at) if event.occurred_at is not None else None
                    ),
                    payload_json=dump_json(event.payload),
                    source_meta_json=dump_json(event.source_meta) if event.source_meta else None,
                    batch_id=batch_id,
                    contact_id=event.contact_id,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            try:
                session.commit()
                return CaptureResult(raw_event_id=raw_event_id, action=StageAction.CREATED)
            except IntegrityError:
                session.rollback()

        winner = self.find_raw_event(user_id=user_id, provider=provider, source_id=event.source_id)
        if winner is None:
            raise RuntimeError(
                f"Raw event insert conflicted but no row found: {provider}/{event.source_id}",
            )
        logger.debug("Raw event %s/%s captured concurrently", provider, event.source_id)
        return CaptureResult(raw_event_id=winner.raw_event_id, action=StageAction.EXISTING)

    def find_raw_event(
        self,
        *,
        user_id: str,
        provider: str,
        source_id: str,
    ) -> RawEventRecord | None:
        with self.database.session() as session:
            row = session.exec(
                select(RawEvent).where(
                    RawEvent.user_id == user_id,
                    RawEvent.provider == provider,
                    RawEvent.source_id == source_id,
                ),
            ).one_or_none()
            return _to_raw_event(row) if row is not None else None

    def get_raw_event(self, *, user_id: str, raw_event_id: str) -> RawEventRecord | None:
        with self.database.session() as session:
            row = session.exec(
                select(RawEvent).where(
                    RawEvent.raw_event_id == raw_event_id,
                    RawEvent.user_id == user_id,
                ),
            ).one_or_none()
            return _to_raw_event(row) if row is not None else None

    def insert_interaction(
        self,
        *,
        raw_event: RawEventRecord,
        normalized: NormalizedInteraction,
        batch_id: str | None,
    ) -> NormalizeResult:
        existing = self.find_interaction(
            user_id=raw_event.user_id,
            source=raw_event.provider,
            source_id=raw_event.source_id,
        )
        if existing is not None:
            return NormalizeResult(
                interaction_id=existing.interaction_id,
                action=StageAction.EXISTING,
            )

        interaction_id = str(uuid4())
        with self.database.session() as session:
            session.add(
                Interaction(
                    interaction_id=interaction_id,
                    user_id=raw_event.user_id,
                    contact_id=raw_event.contact_id,
                    interaction_type=normalized.interaction_type,
                    subject=normalized.subject,
                    body_text=normalized.body_text,
                    participants_json=(
                        dump_json([asdict(item) for item in normalized.participants])
                        if normalized.participants
                        else None
                    ),
                    occurred_at=(
                        to_db_datetime(normalized.occurred_at)
                        if normalized.occurred_at is not None
                        else None
                    ),
                    source=raw_event.provider,
                    source_id=raw_event.source_id,
                    source_meta_json=(
                        dump_json(normalized.source_meta) if normalized.source_meta else None
                    ),
                    raw_event_id=raw_event.raw_event_id,
                    batch_id=batch_id,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            try:
                session.commit()
                return NormalizeResult(interaction_id=interaction_id, action=StageAction.CREATED)
            except IntegrityError:
                session.rollback()

        winner = self.find_interaction(
            user_id=raw_event.user_id,
            source=raw_event.provider,
            source_id=raw_event.source_id,
        )
        if winner is None:
            raise RuntimeError(
                "Interaction insert conflicted but no row found: "
                f"{raw_event.provider}/{raw_event.source_id}",
            )
        return NormalizeResult(interaction_id=winner.interaction_id, action=StageAction.EXISTING)

    def find_interaction(
        self,
        *,
        user_id: str,
        source: str,
        source_id: str,
    ) -> InteractionRecord | None:
        with self.database.session() as session:
            row = session.exec(
                select(Interaction).where(
                    Interaction.user_id == user_id,
                    Interaction.source == source,
                    Interaction.source_id == source_id,
                ),
            ).one_or_none()
            return _to_interaction(row) if row is not None else None

    def get_interaction(self, *, user_id: str, interaction_id: str) -> InteractionRecord | None:
        with self.database.session() as session:
            row = session.exec(
                select(Interaction).where(
                    Interaction.interaction_id == interaction_id,
                    Interaction.user_id == user_id,
                ),
            ).one_or_none()
            return _to_interaction(row) if row is not None else None

    def list_interactions(
        self,
        *,
        user_id: str,
        batch_id: str | None = None,
        limit: int = 100,
    ) -> list[InteractionRecord]:
        statement = (
            select(Interaction)
            .where(Interaction.user_id == user_id)
            .order_by(col(Interaction.created_at).asc())
            .limit(limit)
        )
        if batch_id is not None:
            statement = statement.where(Interaction.batch_id == batch_id)
        with self.database.session() as session:
            rows = session.exec(statement).all()
            return [_to_interaction(row) for row in rows]

    def count_raw_events(self, *, user_id: str, batch_id: str | None = None) -> int:
        statement = select(func.count()).select_from(RawEvent).where(RawEvent.user_id == user_id)
        if batch_id is not None:
            statement = statement.where(RawEvent.batch_id == batch_id)
        with self.database.session() as session:
            return int(session.exec(statement).one())

    def count_interactions(self, *, user_id: str, batch_id: str | None = None) -> int:
        statement = (
            select(func.count()).select_from(Interaction).where(Interaction.user_id == user_id)
        )
        if batch_id is not None:
            statement = statement.where(Interaction.batch_id == batch_id)
        with self.database.session() as session:
            return int(session.exec(statement).one())


def _to_raw_event(row: RawEvent) -> RawEventRecord:
    return RawEventRecord(
        raw_event_id=row.raw_event_id,
        user_id=row.user_id,
        provider=row.provider,
        source_id=row.source_id,
        occurred_at=optional_utc_aware(row.occurred_at),
        payload=load_json_object(row.payload_json),
        source_meta=load_json_object(row.source_meta_json),
        batch_id=row.batch_id,
        contact_id=row.contact_id,
        created_at=to_utc_aware(row.created_at),
    )


def _to_interaction(row: Interaction) -> InteractionRecord:
    participants: list[Participant] = []
    if row.participants_json:
        parsed = json.loads(row.participants_json)
        if isinstance(parsed, list):
            participants = [
                Participant(
                    email=item.get("email"),
                    name=item.get("name"),
                    role=item.get("role") or "participant",
                )
                for item in parsed
                if isinstance(item, dict)
            ]
    return InteractionRecord(
        interaction_id=row.interaction_id,
        user_id=row.user_id,
        contact_id=row.contact_id,
        interaction_type=row.interaction_type,
        subject=row.subject,
        body_text=row.body_text,
        participants=participants,
        occurred_at=optional_utc_aware(row.occurred_at),
        source=row.source,
        source_id=row.source_id,
        raw_event_id=row.raw_event_id,
        batch_id=row.batch_id,
        created_at=to_utc_aware(row.created_at),
    )
