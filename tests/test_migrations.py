from pathlib import Path

import allure
from sqlalchemy import inspect, text

from practice_sync.storage.database import Database

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    database = Database(tmp_path / "migrations.db")
    database.init_schema()
    database.init_schema()

    with database.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    assert version == "20261019_0002"
    assert database.schema_revision() == "20261019_0002"
    assert str(journal_mode).lower() == "wal"

    inspector = inspect(database.engine)
    assert set(inspector.get_table_names()) >= {
        "jobs",
        "raw_events",
        "interactions",
        "embeddings",
        "sync_sessions",
        "ai_quotas",
        "ai_usage",
    }
    unique_names = {
        constraint["name"] for constraint in inspector.get_unique_constraints("embeddings")
    }
    assert "uq_embeddings_owner_chunk_hash" in unique_names
    database.close()
