"""Programmatic Alembic entry points used by ``Database.init_schema``."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Engine

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    # env.py leaves the caller's logging setup alone.
    config.attributes["configure_logger"] = False
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the SQLite file at ``db_path`` up to the latest revision."""

    command.upgrade(alembic_config(db_path), "head")


def current_revision(engine: Engine) -> str | None:
    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
