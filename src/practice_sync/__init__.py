"""Background job queue, ingestion pipeline and AI guardrails for practice sync."""

__version__ = "0.1.0"
