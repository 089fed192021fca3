from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from practice_sync.config import GuardrailSettings, Settings
from practice_sync.embeddings.generator import HttpEmbedder
from practice_sync.ingestion.errors import InvalidEventError, RecordNotFoundError
from practice_sync.ingestion.models import ProviderEvent, StageAction
from practice_sync.ingestion.pipeline import IngestionPipeline
from practice_sync.ingestion.services.embed_service import INTERACTION_OWNER
from practice_sync.jobs.models import JobStatus, JobType
from practice_sync.storage.database import Database

pytestmark = [
    allure.epic("Ingestion Pipeline"),
    allure.feature("Capture, Normalize, Embed"),
]


def _drain(pipeline: IngestionPipeline, user_id: str) -> None:
    while pipeline.runner.process_user_jobs(user_id, limit=50).processed:
        pass


def _end_state(pipeline: IngestionPipeline, user_id: str) -> list[tuple]:
    state = []
    for interaction in pipeline.repository.list_interactions(user_id=user_id):
        embeddings = pipeline.cache.list_for_owner(
            user_id,
            INTERACTION_OWNER,
            interaction.interaction_id,
        )
        state.append(
            (
                interaction.source,
                interaction.source_id,
                interaction.interaction_type,
                interaction.subject,
                interaction.body_text,
                [(item.email, item.role) for item in interaction.participants],
                interaction.occurred_at,
                [(item.chunk_index, item.content_hash) for item in embeddings],
            ),
        )
    return sorted(state, key=lambda item: item[1])


def test_ingest_event_creates_raw_event_interaction_and_embedding(
    pipeline: IngestionPipeline,
    embedder,
    make_gmail_event,
) -> None:
    result = pipeline.ingest_event("user-1", "Gmail", make_gmail_event("msg-1"))

    assert result.capture.action == StageAction.CREATED
    assert result.normalize.action == StageAction.CREATED
    assert result.embed is not None
    assert result.embed.action == StageAction.CREATED
    assert len(result.embed.embedding_ids) == 1
    assert embedder.calls == ["Follow-up\n\nSee you Tuesday."]

    interaction = pipeline.repository.get_interaction(
        user_id="user-1",
        interaction_id=result.normalize.interaction_id,
    )
    assert interaction is not None
    assert interaction.source == "gmail"
    assert interaction.interaction_type == "email"
    assert interaction.subject == "Follow-up"
    assert interaction.body_text == "See you Tuesday."
    assert interaction.occurred_at == datetime(2026, 3, 14, 12, 0, tzinfo=UTC)
    assert [(item.email, item.name, item.role) for item in interaction.participants] == [
        ("dana@example.com", "Dana Client", "from"),
        ("coach@example.com", None, "to"),
    ]


def test_ingest_event_is_idempotent(
    pipeline: IngestionPipeline,
    embedder,
    make_gmail_event,
) -> None:
    first = pipeline.ingest_event("user-1", "gmail", make_gmail_event("msg-1"))
    second = pipeline.ingest_event("user-1", "gmail", make_gmail_event("msg-1"))

    assert second.capture.action == StageAction.EXISTING
    assert second.capture.raw_event_id == first.capture.raw_event_id
    assert second.normalize.action == StageAction.EXISTING
    assert second.normalize.interaction_id == first.normalize.interaction_id
    assert second.embed is not None
    assert second.embed.action == StageAction.EXISTING
    assert second.embed.embedding_ids == first.embed.embedding_ids
    assert len(embedder.calls) == 1
    assert pipeline.repository.count_raw_events(user_id="user-1") == 1
    assert pipeline.repository.count_interactions(user_id="user-1") == 1


def test_same_source_id_for_different_users_is_stored_separately(
    pipeline: IngestionPipeline,
    make_gmail_event,
) -> None:
    first = pipeline.ingest_event("user-1", "gmail", make_gmail_event("msg-1"), embed=False)
    second = pipeline.ingest_event("user-2", "gmail", make_gmail_event("msg-1"), embed=False)

    assert second.capture.action == StageAction.CREATED
    assert second.capture.raw_event_id != first.capture.raw_event_id
    assert pipeline.repository.count_interactions(user_id="user-2") == 1


def test_identical_text_on_another_owner_reuses_cached_vector(
    pipeline: IngestionPipeline,
    embedder,
    make_gmail_event,
) -> None:
    first = pipeline.ingest_event("user-1", "gmail", make_gmail_event("msg-1"))
    copy = pipeline.ingest_event("user-1", "gmail", make_gmail_event("msg-2"))

    assert copy.embed is not None
    assert copy.embed.action == StageAction.CACHED
    assert copy.embed.cost_usd == 0.0
    assert len(embedder.calls) == 1
    stored = pipeline.cache.list_for_owner(
        "user-1",
        INTERACTION_OWNER,
        copy.normalize.interaction_id,
    )
    original = pipeline.cache.list_for_owner(
        "user-1",
        INTERACTION_OWNER,
        first.normalize.interaction_id,
    )
    assert len(stored) == 1
    assert stored[0].meta == {"cache_hit": True}
    assert stored[0].vector == original[0].vector


def test_cached_vectors_are_not_shared_between_users(
    pipeline: IngestionPipeline,
    embedder,
    make_gmail_event,
) -> None:
    pipeline.ingest_event("user-1", "gmail", make_gmail_event("msg-1"))
    other = pipeline.ingest_event("user-2", "gmail", make_gmail_event("msg-1"))

    assert other.embed is not None
    assert other.embed.action == StageAction.CREATED
    assert len(embedder.calls) == 2


def test_direct_and_job_paths_leave_the_same_rows(
    tmp_path: Path,
    settings: Settings,
    pipeline: IngestionPipeline,
    embedder,
    make_gmail_event,
) -> None:
    events = [
        make_gmail_event("msg-1"),
        make_gmail_event("msg-2", subject="Invoice", body="Payment received, thanks."),
    ]
    for event in events:
        pipeline.ingest_event("user-1", "gmail", replace(event))

    job_db_path = tmp_path / "job_path.db"
    with Database(job_db_path) as job_database:
        job_database.init_schema()
        job_pipeline = IngestionPipeline(
            settings=replace(settings, db_path=job_db_path),
            database=job_database,
            embedder=embedder,
        )
        for event in events:
            captured = job_pipeline.capture_service.capture("user-1", "gmail", replace(event))
            job_pipeline.queue.enqueue(
                "user-1",
                JobType.NORMALIZE,
                {"raw_event_id": captured.raw_event_id},
            )
        _drain(job_pipeline, "user-1")

        assert job_pipeline.queue.count_by_status(user_id="user-1").get(JobStatus.DONE) == 4
        assert _end_state(job_pipeline, "user-1") == _end_state(pipeline, "user-1")


def test_redelivered_normalize_job_does_not_duplicate_rows(
    pipeline: IngestionPipeline,
    make_gmail_event,
) -> None:
    captured = pipeline.capture_service.capture("user-1", "gmail", make_gmail_event("msg-1"))
    for _ in range(2):
        pipeline.queue.enqueue(
            "user-1",
            JobType.NORMALIZE,
            {"raw_event_id": captured.raw_event_id},
        )

    _drain(pipeline, "user-1")

    assert pipeline.repository.count_interactions(user_id="user-1") == 1
    interaction = pipeline.repository.list_interactions(user_id="user-1")[0]
    stored = pipeline.cache.list_for_owner("user-1", INTERACTION_OWNER, interaction.interaction_id)
    assert len(stored) == 1
    assert pipeline.queue.count_by_status(user_id="user-1").get(JobStatus.DONE) == 4


def test_direct_path_reports_blocked_embed_without_calling_embedder(
    settings: Settings,
    database: Database,
    embedder,
    make_gmail_event,
) -> None:
    no_credits = replace(settings, guardrails=replace(GuardrailSettings(), credits_monthly=0))
    pipeline = IngestionPipeline(settings=no_credits, database=database, embedder=embedder)

    result = pipeline.ingest_event("user-1", "gmail", make_gmail_event("msg-1"))

    assert result.normalize.action == StageAction.CREATED
    assert result.embed is not None
    assert result.embed.action == StageAction.BLOCKED
    assert result.embed.blocked_reason == "quota_exceeded"
    assert result.embed.embedding_ids == []
    assert embedder.calls == []


def test_embedder_failure_is_logged_as_zero_token_usage(
    pipeline: IngestionPipeline,
    embedder,
    make_gmail_event,
) -> None:
    embedder.fail_with = RuntimeError("backend exploded")

    with pytest.raises(RuntimeError, match="backend exploded"):
        pipeline.ingest_event("user-1", "gmail", make_gmail_event("msg-1"))

    usage = pipeline.ledger.usage_summary("user-1", since=datetime(2000, 1, 1, tzinfo=UTC))
    quota = pipeline.ledger.get_quota("user-1")
    assert usage.requests == 1
    assert usage.input_tokens == 0
    assert usage.cost_usd == 0.0
    assert quota is not None
    assert quota.credits_left == 199
    assert pipeline.repository.count_interactions(user_id="user-1") == 1


def test_metered_embed_spends_a_credit_and_records_cost(
    pipeline: IngestionPipeline,
    make_gmail_event,
) -> None:
    result = pipeline.ingest_event("user-1", "gmail", make_gmail_event("msg-1"))

    usage = pipeline.ledger.usage_summary("user-1", since=datetime(2000, 1, 1, tzinfo=UTC))
    quota = pipeline.ledger.get_quota("user-1")
    assert result.embed is not None
    assert result.embed.cost_usd == pytest.approx(0.001)
    assert usage.requests == 1
    assert usage.cost_usd == pytest.approx(0.001)
    assert quota is not None
    assert quota.credits_left == 199


def test_invalid_events_are_rejected_before_storage(pipeline: IngestionPipeline) -> None:
    with pytest.raises(InvalidEventError, match="no source_id"):
        pipeline.ingest_event("user-1", "gmail", ProviderEvent(source_id="  ", payload={}))
    with pytest.raises(InvalidEventError, match="provider is required"):
        pipeline.ingest_event("user-1", " ", ProviderEvent(source_id="x", payload={}))

    assert pipeline.repository.count_raw_events(user_id="user-1") == 0


def test_normalize_of_unknown_raw_event_raises(pipeline: IngestionPipeline) -> None:
    with pytest.raises(RecordNotFoundError):
        pipeline.normalize_service.normalize("user-1", "missing")


def test_search_similar_finds_embedded_interaction(
    pipeline: IngestionPipeline,
    embedder,
    make_gmail_event,
) -> None:
    result = pipeline.ingest_event("user-1", "gmail", make_gmail_event("msg-1"))

    matches = pipeline.embed_service.search_similar("user-1", "Follow-up\n\nSee you Tuesday.")

    assert isinstance(matches, list)
    assert [match.owner_id for match in matches] == [result.normalize.interaction_id]
    assert matches[0].similarity == pytest.approx(1.0, abs=1e-5)
    assert len(embedder.calls) == 1
    assert pipeline.embed_service.search_similar("user-2", "Follow-up\n\nSee you Tuesday.") == []


def test_close_releases_http_client_of_built_embedder(
    settings: Settings,
    database: Database,
) -> None:
    http_settings = replace(
        settings,
        embedding=replace(settings.embedding, backend="http", api_key="test-key"),
    )
    pipeline = IngestionPipeline(settings=http_settings, database=database)
    assert isinstance(pipeline.embedder, HttpEmbedder)
    assert not pipeline.embedder.closed

    pipeline.close()

    assert pipeline.embedder.closed


def test_close_leaves_injected_embedder_to_its_owner(
    settings: Settings,
    database: Database,
) -> None:
    embedder = HttpEmbedder(
        model_name="text-embedding-3-small",
        base_url="https://api.example.com/v1",
        api_key="test-key",
    )
    pipeline = IngestionPipeline(settings=settings, database=database, embedder=embedder)

    pipeline.close()

    assert not embedder.closed
    embedder.close()
