"""Apply the execution registry migrations programmatically."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, pool

from execution_orchestrator.storage.common import sqlite_url

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config


def head_revision() -> str:
    """Newest revision shipped with the package."""

    script = ScriptDirectory.from_config(_alembic_config(Path(":memory:")))
    head = script.get_current_head()
    if head is None:
        raise RuntimeError("No Alembic revisions found.")
    return head


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the database, or None for an empty file."""

    if not db_path.exists():
        return None
    engine = create_engine(sqlite_url(db_path), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> None:
    """Bring the registry database at ``db_path`` up to the head revision."""

    target = head_revision()
    current = current_revision(db_path)
    if current == target:
        logger.debug("Registry schema at %s already at %s", db_path, target)
        return
    logger.info("Migrating registry schema at %s: %s -> %s", db_path, current or "empty", target)
    command.upgrade(_alembic_config(db_path), "head")
