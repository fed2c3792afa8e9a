"""Programmatic Alembic migrations for the imagegen SQLite database."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision() -> str:
    """Newest revision shipped in ``alembic/versions``."""

    head = ScriptDirectory.from_config(_alembic_config(Path(":memory:"))).get_current_head()
    if head is None:
        raise RuntimeError("No Alembic revisions found.")
    return head


def schema_revision(db_path: Path) -> str | None:
    """Revision stamped in the database, or None for an unmigrated file."""

    engine = create_engine(f"sqlite:///{db_path}", poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> None:
    """Migrate the database to head; a database already at head is left untouched."""

    target = head_revision()
    current = schema_revision(db_path)
    if current == target:
        return
    logger.info("Migrating %s from %s to %s", db_path, current or "empty", target)
    command.upgrade(_alembic_config(db_path), "head")
