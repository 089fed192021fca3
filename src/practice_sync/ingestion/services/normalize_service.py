"""Normalization stage: raw event -> interaction."""

from __future__ import annotations

import logging

from practice_sync.ingestion.errors import RecordNotFoundError
from practice_sync.ingestion.models import NormalizeResult, StageAction
from practice_sync.ingestion.normalizers import normalize_raw_event
from practice_sync.ingestion.repository import IngestionRepository

logger = logging.getLogger(__name__)


class NormalizeService:
    """Projects raw events into interactions, once per ``(user_id, source, source_id)``."""

    def __init__(self, repository: IngestionRepository) -> None:
        self.repository = repository

    def normalize(
        self,
        user_id: str,
        raw_event_id: str,
        *,
        batch_id: str | None = None,
    ) -> NormalizeResult:
        raw_event = self.repository.get_raw_event(user_id=user_id, raw_event_id=raw_event_id)
        if raw_event is None:
            raise RecordNotFoundError(f"Raw event not found: {raw_event_id}")

        # Redelivered jobs land here; skip extraction when the projection exists.
        existing = self.repository.find_interaction(
            user_id=user_id,
            source=raw_event.provider,
            source_id=raw_event.source_id,
        )
        if existing is not None:
            return NormalizeResult(
                interaction_id=existing.interaction_id,
                action=StageAction.EXISTING,
            )

        normalized = normalize_raw_event(raw_event)
        result = self.repository.insert_interaction(
            raw_event=raw_event,
            normalized=normalized,
            batch_id=batch_id if batch_id is not None else raw_event.batch_id,
        )
        logger.debug(
            "Normalized raw event %s -> interaction %s (%s)",
            raw_event_id,
            result.interaction_id,
            result.action.value,
        )
        return result
