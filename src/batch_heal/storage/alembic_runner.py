"""Programmatic Alembic entry points for the checkpoint database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext

from batch_heal.storage.common import build_sqlite_engine

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path) -> Config:
    """Alembic config pointing at the project migrations and ``db_path``."""

    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Create or upgrade the checkpoint schema; safe to call on every start."""

    command.upgrade(migration_config(db_path), "head")


def current_revision(db_path: Path, *, busy_timeout_ms: int = 5_000) -> str | None:
    """Revision stamped in ``db_path``, or ``None`` for an unmigrated file."""

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()
