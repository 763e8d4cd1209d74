"""Alembic helpers for the job store schema."""

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

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision() -> str | None:
    """Newest revision shipped with the package."""

    return ScriptDirectory.from_config(alembic_config(Path(":memory:"))).get_current_head()


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the database, or None for a fresh file."""

    if not db_path.exists():
        return None
    engine = create_engine(f"sqlite:///{db_path}", poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> None:
    """Bring the job store at db_path up to the newest schema revision."""

    current = current_revision(db_path)
    head = head_revision()
    if current is not None and current == head:
        return
    logger.info("Migrating job store %s from %s to %s", db_path, current or "empty", head)
    command.upgrade(alembic_config(db_path), "head")
