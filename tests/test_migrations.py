from pathlib import Path

import allure
from sqlalchemy import text

from taskfleet.orchestrator.repository import OrchestratorDatabase
from taskfleet.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    database = OrchestratorDatabase(tmp_path / "migrations.db")
    database.init_schema()

    with database.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('tasks', 'task_dependencies', 'agents')
                ORDER BY name
                """,
            ),
        ).scalars()
        table_names = list(tables)
    database.close()

    assert version == "20261018_0001"
    assert table_names == ["agents", "task_dependencies", "tasks"]


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    for _ in range(2):
        database = OrchestratorDatabase(db_path)
        database.init_schema()
        database.close()

    database = OrchestratorDatabase(db_path)
    with database.engine.connect() as connection:
        count = connection.execute(text("SELECT COUNT(*) FROM alembic_version")).scalar_one()
    database.close()

    assert count == 1


def test_current_revision_tracks_upgrade(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.db"
    database = OrchestratorDatabase(db_path)

    assert current_revision(db_path) is None
    database.init_schema()
    database.close()

    assert current_revision(db_path) == "20261018_0001"
