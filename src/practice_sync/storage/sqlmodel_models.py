"""SQLModel ORM tables for the job queue, ingestion and guardrail ledger."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    LargeBinary,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_queue", "user_id", "status", "run_after", "created_at"),
        Index("idx_jobs_batch", "batch_id", "status"),
    )

    job_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    job_type: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: str = Field(default="medium")
    batch_id: str | None = None
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failure_class: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RawEvent(SQLModel, table=True):
    __tablename__ = "raw_events"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "provider",
            "source_id",
            name="uq_raw_events_scope_provider_source",
        ),
    )

    raw_event_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    provider: str
    source_id: str
    occurred_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    source_meta_json: str | None = Field(default=None, sa_column=Column(Text))
    batch_id: str | None = Field(default=None, index=True)
    contact_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Interaction(SQLModel, table=True):
    __tablename__ = "interactions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "source",
            "source_id",
            name="uq_interactions_scope_source_source_id",
        ),
    )

    interaction_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    contact_id: str | None = None
    interaction_type: str
    subject: str | None = Field(default=None, sa_column=Column(Text))
    body_text: str = Field(sa_column=Column(Text, nullable=False))
    participants_json: str | None = Field(default=None, sa_column=Column(Text))
    occurred_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    source: str
    source_id: str
    source_meta_json: str | None = Field(default=None, sa_column=Column(Text))
    raw_event_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("raw_events.raw_event_id", ondelete="SET NULL")),
    )
    batch_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Embedding(SQLModel, table=True):
    __tablename__ = "embeddings"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "owner_type",
            "owner_id",
            "chunk_index",
            "content_hash",
            name="uq_embeddings_owner_chunk_hash",
        ),
        Index("idx_embeddings_user_hash", "user_id", "content_hash"),
        Index("idx_embeddings_user_owner_type", "user_id", "owner_type"),
    )

    embedding_id: str = Field(primary_key=True)
    user_id: str
    owner_type: str
    owner_id: str
    chunk_index: int = Field(default=0)
    content_hash: str
    model_name: str
    embedding_dim: int
    embedding_blob: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    meta_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SyncSession(SQLModel, table=True):
    __tablename__ = "sync_sessions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_sync_sessions_user_service", "user_id", "service", "started_at"),)

    session_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    service: str
    status: str = Field(index=True)
    current_step: str | None = None
    progress_percentage: int = Field(default=0)
    total_items: int = Field(default=0)
    imported_items: int = Field(default=0)
    processed_items: int = Field(default=0)
    failed_items: int = Field(default=0)
    error_details_json: str | None = Field(default=None, sa_column=Column(Text))
    preferences_json: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AiQuota(SQLModel, table=True):
    __tablename__ = "ai_quotas"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True)
    period_start: date = Field(sa_column=Column(Date, nullable=False))
    credits_left: int
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AiUsage(SQLModel, table=True):
    __tablename__ = "ai_usage"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_ai_usage_user_time", "user_id", "created_at"),)

    usage_id: int | None = Field(default=None, primary_key=True)
    user_id: str
    model: str
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    cost_usd: float = Field(default=0.0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
