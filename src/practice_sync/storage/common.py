"""Common helpers for storage repositories."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; a missing offset means UTC."""

    parsed = datetime.fromisoformat(value.strip())
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def month_start(value: datetime) -> date:
    """First day of the UTC month containing ``value``."""

    return to_utc_aware(value).date().replace(day=1)


def day_start(value: datetime) -> datetime:
    """UTC midnight of the day containing ``value``."""

    aware = to_utc_aware(value)
    return aware.replace(hour=0, minute=0, second=0, microsecond=0)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """SQLite engine shared by every repository: no pooling, WAL, busy timeout."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        # Runner threads share the engine; every session opens its own connection.
        connect_args={"check_same_thread": False, "timeout": max(1.0, busy_timeout_ms / 1000)},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        _apply_sqlite_pragmas(dbapi_connection, busy_timeout_ms=busy_timeout_ms)

    return engine


def to_db_datetime(value: datetime) -> datetime:
    """Convert aware datetimes to naive UTC, the form SQLite stores."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def optional_utc_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware(value) if value is not None else None


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def load_json_object(raw: str | None) -> dict[str, Any]:
    """Parse a JSON column expected to hold an object; anything else reads as empty."""

    if not raw:
        return {}
    parsed = json.loads(raw)
    if isinstance(parsed, dict):
        return parsed
    return {}


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    try:
        for pragma in (
            "journal_mode = WAL",
            f"busy_timeout = {max(1, busy_timeout_ms)}",
            "foreign_keys = ON",
        ):
            cursor.execute(f"PRAGMA {pragma}")
    finally:
        cursor.close()
