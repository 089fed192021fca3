"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from practice_sync.config import PipelineSettings, QueueSettings, Settings
from practice_sync.embeddings.generator import EmbeddingOutput, HashingEmbedder
from practice_sync.ingestion.models import ProviderEvent
from practice_sync.ingestion.pipeline import IngestionPipeline
from practice_sync.storage.database import Database


@dataclass(slots=True)
class CountingEmbedder:
    """Metered fake backend: hashing vectors, a fixed price, and a call log."""

    model_name: str = "fake-embed"
    metered: bool = True
    cost_per_call: float = 0.001
    calls: list[str] = field(default_factory=list)
    fail_with: Exception | None = None

    def embed(self, texts: list[str]) -> EmbeddingOutput:
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.extend(texts)
        output = HashingEmbedder(model_name=self.model_name, dimensions=64).embed(texts)
        output.cost_usd = self.cost_per_call * len(texts)
        return output


class ManualClock:
    """Deterministic clock for guardrail and queue timing tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 14, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "practice_sync.db"


@pytest.fixture()
def database(db_path: Path) -> Iterator[Database]:
    db = Database(db_path)
    db.init_schema()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    base = Settings(db_path=db_path)
    return replace(
        base,
        queue=replace(QueueSettings(), retry_base_seconds=0.0),
        pipeline=replace(PipelineSettings(), auto_embed=True),
    )


@pytest.fixture()
def embedder() -> CountingEmbedder:
    return CountingEmbedder()


@pytest.fixture()
def pipeline(
    settings: Settings,
    database: Database,
    embedder: CountingEmbedder,
) -> IngestionPipeline:
    return IngestionPipeline(settings=settings, database=database, embedder=embedder)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def make_gmail_event() -> Callable[..., ProviderEvent]:
    return gmail_event


def gmail_event(
    source_id: str,
    *,
    subject: str = "Follow-up",
    body: str = "See you Tuesday.",
) -> ProviderEvent:
    return ProviderEvent(
        source_id=source_id,
        payload={
            "id": source_id,
            "threadId": f"thread-{source_id}",
            "internalDate": "1773489600000",
            "snippet": body,
            "payload": {
                "mimeType": "text/plain",
                "headers": [
                    {"name": "Subject", "value": subject},
                    {"name": "From", "value": "Dana Client <dana@example.com>"},
                    {"name": "To", "value": "coach@example.com"},
                ],
            },
        },
    )
