"""Runtime configuration for the job queue, ingestion pipeline and AI guardrails."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

EMBEDDING_BACKENDS = ("hashing", "sentence-transformers", "http")


@dataclass(slots=True)
class QueueSettings:
    """Durable job queue and runner settings."""

    max_attempts: int = 3
    retry_base_seconds: float = 30.0
    retry_max_seconds: float = 3_600.0
    stale_after_seconds: int = 900
    batch_size: int = 50
    poll_interval_seconds: float = 5.0


@dataclass(slots=True)
class GuardrailSettings:
    """Per-user AI quota, rate and cost limits."""

    credits_monthly: int = 200
    requests_per_minute: int = 8
    daily_cost_cap_usd: float = 0.0
    default_model: str = "hashing-384"
    pricing: str = ""


@dataclass(slots=True)
class EmbeddingSettings:
    """Embedding generation and similarity search settings."""

    backend: str = "hashing"
    model_name: str = "hashing-384"
    allow_model_fallback: bool = False
    dimensions: int = 384
    chunk_max_chars: int = 2_000
    similarity_threshold: float = 0.7
    api_base_url: str = "https://openrouter.ai/api/v1"
    api_key: str | None = None
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class PipelineSettings:
    """Ingestion pipeline and bulk sync settings."""

    auto_embed: bool = True
    import_page_size: int = 100
    max_pages: int = 0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".practice_sync.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    guardrails: GuardrailSettings = field(default_factory=GuardrailSettings)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PRACTICE_SYNC_DB_PATH", ".practice_sync.db")),
            sqlite_busy_timeout_ms=int(os.getenv("PRACTICE_SYNC_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                max_attempts=int(os.getenv("PRACTICE_SYNC_JOB_MAX_ATTEMPTS", "3")),
                retry_base_seconds=float(
                    os.getenv("PRACTICE_SYNC_JOB_RETRY_BASE_SECONDS", "30"),
                ),
                retry_max_seconds=float(
                    os.getenv("PRACTICE_SYNC_JOB_RETRY_MAX_SECONDS", "3600"),
                ),
                stale_after_seconds=int(
                    os.getenv("PRACTICE_SYNC_JOB_STALE_AFTER_SECONDS", "900"),
                ),
                batch_size=int(os.getenv("PRACTICE_SYNC_JOB_BATCH_SIZE", "50")),
                poll_interval_seconds=float(
                    os.getenv("PRACTICE_SYNC_WORKER_POLL_INTERVAL_SECONDS", "5"),
                ),
            ),
            guardrails=GuardrailSettings(
                credits_monthly=int(os.getenv("PRACTICE_SYNC_AI_CREDITS_MONTHLY", "200")),
                requests_per_minute=int(
                    os.getenv("PRACTICE_SYNC_AI_REQUESTS_PER_MINUTE", "8"),
                ),
                daily_cost_cap_usd=float(
                    os.getenv("PRACTICE_SYNC_AI_DAILY_COST_CAP_USD", "0"),
                ),
                default_model=os.getenv(
                    "PRACTICE_SYNC_AI_DEFAULT_MODEL",
                    os.getenv("PRACTICE_SYNC_EMBEDDING_MODEL_NAME", "hashing-384"),
                ),
                pricing=os.getenv("PRACTICE_SYNC_AI_PRICING", ""),
            ),
            embedding=EmbeddingSettings(
                backend=os.getenv("PRACTICE_SYNC_EMBEDDING_BACKEND", "hashing").strip().lower(),
                model_name=os.getenv("PRACTICE_SYNC_EMBEDDING_MODEL_NAME", "hashing-384"),
                allow_model_fallback=_env_bool(
                    "PRACTICE_SYNC_EMBEDDING_ALLOW_MODEL_FALLBACK",
                    default=False,
                ),
                dimensions=int(os.getenv("PRACTICE_SYNC_EMBEDDING_DIMENSIONS", "384")),
                chunk_max_chars=int(os.getenv("PRACTICE_SYNC_EMBEDDING_CHUNK_MAX_CHARS", "2000")),
                similarity_threshold=float(
                    os.getenv("PRACTICE_SYNC_EMBEDDING_SIMILARITY_THRESHOLD", "0.7"),
                ),
                api_base_url=os.getenv(
                    "PRACTICE_SYNC_EMBEDDING_API_BASE_URL",
                    "https://openrouter.ai/api/v1",
                ),
                api_key=os.getenv("PRACTICE_SYNC_EMBEDDING_API_KEY") or None,
                request_timeout_seconds=float(
                    os.getenv("PRACTICE_SYNC_EMBEDDING_REQUEST_TIMEOUT_SECONDS", "30"),
                ),
                max_retries=int(os.getenv("PRACTICE_SYNC_EMBEDDING_MAX_RETRIES", "3")),
            ),
            pipeline=PipelineSettings(
                auto_embed=_env_bool("PRACTICE_SYNC_AUTO_EMBED", default=True),
                import_page_size=int(os.getenv("PRACTICE_SYNC_IMPORT_PAGE_SIZE", "100")),
                max_pages=int(os.getenv("PRACTICE_SYNC_IMPORT_MAX_PAGES", "0")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot honour."""

        if self.queue.max_attempts < 1:
            raise ValueError("PRACTICE_SYNC_JOB_MAX_ATTEMPTS must be >= 1.")
        if self.queue.retry_base_seconds < 0:
            raise ValueError("PRACTICE_SYNC_JOB_RETRY_BASE_SECONDS must be >= 0.")
        if self.queue.retry_max_seconds < self.queue.retry_base_seconds:
            raise ValueError(
                "PRACTICE_SYNC_JOB_RETRY_MAX_SECONDS must be >= "
                "PRACTICE_SYNC_JOB_RETRY_BASE_SECONDS.",
            )
        if self.queue.stale_after_seconds <= 0:
            raise ValueError("PRACTICE_SYNC_JOB_STALE_AFTER_SECONDS must be > 0.")
        if self.queue.batch_size <= 0:
            raise ValueError("PRACTICE_SYNC_JOB_BATCH_SIZE must be > 0.")
        if self.guardrails.credits_monthly < 0:
            raise ValueError("PRACTICE_SYNC_AI_CREDITS_MONTHLY must be >= 0.")
        if self.guardrails.requests_per_minute <= 0:
            raise ValueError("PRACTICE_SYNC_AI_REQUESTS_PER_MINUTE must be > 0.")
        if self.guardrails.daily_cost_cap_usd < 0:
            raise ValueError("PRACTICE_SYNC_AI_DAILY_COST_CAP_USD must be >= 0 (0 disables).")
        if self.embedding.backend not in EMBEDDING_BACKENDS:
            raise ValueError(
                f"Unsupported PRACTICE_SYNC_EMBEDDING_BACKEND: {self.embedding.backend!r}. "
                f"Expected one of: {', '.join(EMBEDDING_BACKENDS)}.",
            )
        if self.embedding.chunk_max_chars <= 0:
            raise ValueError("PRACTICE_SYNC_EMBEDDING_CHUNK_MAX_CHARS must be > 0.")
        if not 0.0 <= self.embedding.similarity_threshold <= 1.0:
            raise ValueError("PRACTICE_SYNC_EMBEDDING_SIMILARITY_THRESHOLD must be in [0, 1].")
        if self.embedding.backend == "http":
            _validate_api_base_url(self.embedding.api_base_url)
            if not self.embedding.api_key:
                raise ValueError(
                    "PRACTICE_SYNC_EMBEDDING_API_KEY is required for the http embedding backend.",
                )
        if self.pipeline.import_page_size <= 0:
            raise ValueError("PRACTICE_SYNC_IMPORT_PAGE_SIZE must be > 0.")
        if self.pipeline.max_pages < 0:
            raise ValueError("PRACTICE_SYNC_IMPORT_MAX_PAGES must be >= 0 (0 = unlimited).")


def _validate_api_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid PRACTICE_SYNC_EMBEDDING_API_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
