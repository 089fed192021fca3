"""Raw capture stage: provider event -> immutable raw event row."""

from __future__ import annotations

import logging

from practice_sync.ingestion.errors import InvalidEventError
from practice_sync.ingestion.models import CaptureResult, ProviderEvent
from practice_sync.ingestion.repository import IngestionRepository

logger = logging.getLogger(__name__)


class CaptureService:
    """Stores provider events exactly once per ``(user_id, provider, source_id)``."""

    def __init__(self, repository: IngestionRepository) -> None:
        self.repository = repository

    def capture(
        self,
        user_id: str,
        provider: str,
        event: ProviderEvent,
        *,
        batch_id: str | None = None,
    ) -> CaptureResult:
        provider = provider.strip().lower()
        if not provider:
            raise InvalidEventError("provider is required")
        source_id = event.source_id.strip() if event.source_id else ""
        if not source_id:
            raise InvalidEventError(f"{provider} event has no source_id")
        if not isinstance(event.payload, dict):
            raise InvalidEventError(f"{provider} event {source_id} payload must be an object")
        event.source_id = source_id

        result = self.repository.capture_raw_event(
            user_id=user_id,
            provider=provider,
            event=event,
            batch_id=batch_id,
        )
        logger.debug(
            "Captured %s/%s for user=%s: %s",
            provider,
            source_id,
            user_id,
            result.action.value,
        )
        return result
