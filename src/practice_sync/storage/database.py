"""Process-wide database handle injected into repositories and services."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlmodel import Session

from practice_sync.storage.alembic_runner import current_revision, upgrade_head
from practice_sync.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)


class Database:
    """Owns the SQLAlchemy engine for one SQLite file.

    Built once at process start and passed to every component constructor;
    components open short-lived sessions from it and never cache connections.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)
        logger.debug("Schema of %s at revision %s", self.db_path, self.schema_revision())

    def schema_revision(self) -> str | None:
        return current_revision(self.engine)

    def session(self) -> Session:
        return Session(self.engine)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
