"""Ingestion pipeline wiring: single-item path and bulk-path job handlers."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from practice_sync.config import Settings
from practice_sync.embeddings.cache import EmbeddingCache
from practice_sync.embeddings.generator import Embedder, HttpEmbedder, build_embedder
from practice_sync.errors import ConfigurationError
from practice_sync.guardrails import Blocked, BlockedReason, GuardrailBlockedError, GuardrailLedger
from practice_sync.guardrails.pricing import PricingTable
from practice_sync.ingestion.bulk_sync import BulkSyncResult, BulkSyncService
from practice_sync.ingestion.models import IngestResult, ProviderEvent
from practice_sync.ingestion.repository import IngestionRepository
from practice_sync.ingestion.services.capture_service import CaptureService
from practice_sync.ingestion.services.embed_service import INTERACTION_OWNER, EmbedService
from practice_sync.ingestion.services.normalize_service import NormalizeService
from practice_sync.ingestion.sources.base import ProviderSource
from practice_sync.jobs.models import JobType, JobView
from practice_sync.jobs.payloads import (
    EmbedPayload,
    JobPayload,
    NormalizePayload,
    PayloadValidationError,
    SyncPayload,
)
from practice_sync.jobs.queue import JobQueue
from practice_sync.jobs.runner import JobHandler, JobRunner
from practice_sync.sessions.progress import ProgressChannel
from practice_sync.sessions.tracker import SyncSessionTracker
from practice_sync.storage.common import utc_now
from practice_sync.storage.database import Database

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Builds the stage services around one database and exposes both entry paths.

    ``ingest_event`` runs capture -> normalize -> embed inline for one event.
    The job handlers run the same stage services from queued jobs, so both
    paths leave the same rows behind.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        database: Database,
        embedder: Embedder | None = None,
        sources: Mapping[str, ProviderSource] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.database = database
        self.sources = dict(sources or {})

        self.repository = IngestionRepository(database)
        self.queue = JobQueue(
            database,
            max_attempts=settings.queue.max_attempts,
            retry_base_seconds=settings.queue.retry_base_seconds,
            retry_max_seconds=settings.queue.retry_max_seconds,
            clock=clock,
        )
        self.ledger = GuardrailLedger.from_settings(database, settings.guardrails, clock=clock)
        self.cache = EmbeddingCache(database)
        self._owns_embedder = embedder is None
        self.embedder = embedder or build_embedder(settings.embedding)

        self.capture_service = CaptureService(self.repository)
        self.normalize_service = NormalizeService(self.repository)
        self.embed_service = EmbedService(
            cache=self.cache,
            embedder=self.embedder,
            ledger=self.ledger,
            repository=self.repository,
            chunk_max_chars=settings.embedding.chunk_max_chars,
            similarity_threshold=settings.embedding.similarity_threshold,
            pricing=PricingTable.parse(settings.guardrails.pricing),
        )

        self.channel = ProgressChannel()
        self.tracker = SyncSessionTracker(database, clock=clock)
        self.tracker.subscribe(self.channel)
        self.runner = JobRunner(
            self.queue,
            self.job_handlers(),
            batch_size=settings.queue.batch_size,
            stale_after_seconds=settings.queue.stale_after_seconds,
            clock=clock,
        )
        self.bulk_sync = BulkSyncService(
            capture_service=self.capture_service,
            queue=self.queue,
            runner=self.runner,
            tracker=self.tracker,
            channel=self.channel,
            page_size=settings.pipeline.import_page_size,
            max_pages=settings.pipeline.max_pages,
        )

    def close(self) -> None:
        """Release the HTTP client of an embedder this pipeline built itself."""

        if self._owns_embedder and isinstance(self.embedder, HttpEmbedder):
            self.embedder.close()

    def ingest_event(
        self,
        user_id: str,
        provider: str,
        event: ProviderEvent,
        *,
        embed: bool | None = None,
    ) -> IngestResult:
        """Single-item path; a guardrail block shows up as a BLOCKED embed result."""

        capture = self.capture_service.capture(user_id, provider, event)
        normalize = self.normalize_service.normalize(user_id, capture.raw_event_id)
        result = IngestResult(capture=capture, normalize=normalize)
        if embed is None:
            embed = self.settings.pipeline.auto_embed
        if embed:
            result.embed = self.embed_service.embed_owner(
                user_id,
                INTERACTION_OWNER,
                normalize.interaction_id,
            )
        return result

    def sync(
        self,
        user_id: str,
        provider: str,
        preferences: dict[str, Any] | None = None,
        *,
        run_jobs: bool = True,
    ) -> BulkSyncResult:
        return self.bulk_sync.run(
            user_id,
            self._source(provider),
            preferences,
            run_jobs=run_jobs,
        )

    def register_source(self, source: ProviderSource) -> None:
        self.sources[source.name] = source

    def job_handlers(self) -> dict[JobType, JobHandler]:
        return {
            JobType.NORMALIZE: self._handle_normalize,
            JobType.EMBED: self._handle_embed,
            JobType.SYNC: self._handle_sync,
        }

    def _handle_normalize(self, job: JobView, payload: JobPayload) -> None:
        if not isinstance(payload, NormalizePayload):
            raise PayloadValidationError(f"Expected NormalizePayload, got {type(payload).__name__}")
        result = self.normalize_service.normalize(
            job.user_id,
            payload.raw_event_id,
            batch_id=job.batch_id,
        )
        if self.settings.pipeline.auto_embed:
            # Enqueued even for an existing interaction: a redelivered job may
            # have crashed before its embed job was written.
            self.queue.enqueue(
                job.user_id,
                JobType.EMBED,
                EmbedPayload(owner_id=result.interaction_id, owner_type=INTERACTION_OWNER),
                priority=job.priority,
                batch_id=job.batch_id,
            )

    def _handle_embed(self, job: JobView, payload: JobPayload) -> None:
        if not isinstance(payload, EmbedPayload):
            raise PayloadValidationError(f"Expected EmbedPayload, got {type(payload).__name__}")
        result = self.embed_service.embed_owner(job.user_id, payload.owner_type, payload.owner_id)
        if result.blocked_reason is not None:
            raise GuardrailBlockedError(Blocked(BlockedReason(result.blocked_reason)))

    def _handle_sync(self, job: JobView, payload: JobPayload) -> None:
        if not isinstance(payload, SyncPayload):
            raise PayloadValidationError(f"Expected SyncPayload, got {type(payload).__name__}")
        outcome = self.sync(job.user_id, payload.provider, payload.preferences)
        logger.info(
            "Sync job %s finished session %s: imported=%d failed=%d",
            job.job_id,
            outcome.session_id,
            outcome.imported_items,
            outcome.failed_items,
        )

    def _source(self, provider: str) -> ProviderSource:
        source = self.sources.get(provider)
        if source is None:
            raise ConfigurationError(f"No provider source registered for {provider!r}")
        return source
