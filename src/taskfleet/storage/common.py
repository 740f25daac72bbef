"""SQLite engine policy and timestamp conversion shared by the task store."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA foreign_keys = ON",
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine for one store file.

    Every connection runs in WAL mode with foreign keys on, and waits up to
    ``busy_timeout_ms`` for a competing writer. Connections are not pooled so
    separate processes see each other's commits on the next checkout.
    """

    db_path.parent.mkdir(parents=True, exist_ok=True)
    busy_timeout_ms = max(1, busy_timeout_ms)
    engine = create_engine(
        sqlite_url(db_path),
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in SQLITE_PRAGMAS:
                cursor.execute(pragma)
            cursor.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
        finally:
            cursor.close()

    return engine


def to_storage_datetime(value: datetime) -> datetime:
    """Naive UTC, the form SQLite columns hold."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def from_storage_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_storage_optional(value: datetime | None) -> datetime | None:
    return from_storage_datetime(value) if value is not None else None
