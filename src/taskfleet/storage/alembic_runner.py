"""Apply and inspect Alembic migrations for a store file."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from taskfleet.storage.common import sqlite_url

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def upgrade_head(db_path: Path) -> None:
    command.upgrade(_alembic_config(db_path), "head")


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the store, or ``None`` for a fresh file."""

    engine = create_engine(sqlite_url(db_path), poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def _alembic_config(db_path: Path) -> Config:
    alembic_ini = PROJECT_ROOT / "alembic.ini"
    script_location = PROJECT_ROOT / "alembic"
    if not alembic_ini.is_file() or not script_location.is_dir():
        raise FileNotFoundError(f"Alembic migrations not found under {PROJECT_ROOT}")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config
