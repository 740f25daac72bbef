"""Durable task and agent stores backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import exists, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from taskfleet.orchestrator.errors import PersistenceError
from taskfleet.orchestrator.models import (
    Agent,
    AgentMetrics,
    AgentRegistration,
    AgentStatus,
    Task,
    TaskMetadata,
    TaskMetrics,
    TaskSpec,
    TaskStatus,
)
from taskfleet.storage.alembic_runner import upgrade_head
from taskfleet.storage.common import (
    build_sqlite_engine,
    from_storage_datetime,
    from_storage_optional,
    to_storage_datetime,
)
from taskfleet.storage.sqlmodel_models import AgentRow, TaskDependencyRow, TaskRow

logger = logging.getLogger(__name__)


class OrchestratorDatabase:
    """Engine owner shared by the task and agent stores."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        try:
            upgrade_head(self.db_path)
        except OperationalError as error:
            message = f"Cannot migrate task store at {self.db_path}: {error}"
            raise PersistenceError(message) from error

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Open a session, translating driver failures into ``PersistenceError``."""

        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise PersistenceError(f"Task store unavailable: {error.orig}") from error


class TaskStore:
    """Task table access plus an in-memory mirror of known tasks.

    Only the coordinator mutates the mirror, and only after a commit.
    """

    def __init__(self) -> None:
        self.cache: dict[str, Task] = {}

    def insert(self, *, session: Session, spec: TaskSpec, now: datetime) -> TaskRow:
        row = TaskRow(
            task_id=spec.task_id,
            title=spec.title,
            description=spec.description,
            agent_type=spec.agent_type,
            dependencies_json=json.dumps(list(spec.dependencies)),
            priority=spec.priority,
            status=TaskStatus.PENDING.value,
            metadata_json=dump_json(spec.metadata.to_dict()),
            created_at=to_storage_datetime(now),
            updated_at=to_storage_datetime(now),
        )
        session.add(row)
        for dependency in spec.dependencies:
            session.add(TaskDependencyRow(task_id=spec.task_id, depends_on=dependency))
        return row

    def get_row(self, *, session: Session, task_id: str) -> TaskRow | None:
        return session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()

    def existing_ids(self, *, session: Session, task_ids: Iterable[str]) -> set[str]:
        wanted = list(set(task_ids))
        if not wanted:
            return set()
        rows = session.exec(select(TaskRow.task_id).where(col(TaskRow.task_id).in_(wanted))).all()
        return set(rows)

    def dependency_statuses(self, *, session: Session, task_id: str) -> dict[str, TaskStatus]:
        rows = session.exec(
            select(TaskRow.task_id, TaskRow.status)
            .join(TaskDependencyRow, col(TaskDependencyRow.depends_on) == col(TaskRow.task_id))
            .where(TaskDependencyRow.task_id == task_id),
        ).all()
        return {dep_id: TaskStatus(status) for dep_id, status in rows}

    def next_ready(
        self,
        *,
        session: Session,
        agent_type: str | None,
        capabilities: Sequence[str],
    ) -> TaskRow | None:
        """Highest-priority pending task whose dependencies are all completed."""

        statement = select(TaskRow).where(
            TaskRow.status == TaskStatus.PENDING.value,
            ~_unfinished_dependency_exists(),
        )
        if agent_type is not None:
            matchers = [col(TaskRow.agent_type) == agent_type]
            if capabilities:
                matchers.append(col(TaskRow.agent_type).in_(list(capabilities)))
            statement = statement.where(or_(*matchers))
        statement = statement.order_by(
            col(TaskRow.priority).desc(),
            col(TaskRow.created_at).asc(),
            col(TaskRow.task_id).asc(),
        ).limit(1)
        return session.exec(statement).first()

    def transition(
        self,
        *,
        session: Session,
        task_id: str,
        expected: Sequence[TaskStatus],
        values: dict[str, Any],
        require_ready: bool = False,
    ) -> bool:
        """Conditionally update one task; False when its status moved underneath us."""

        statement = sa_update(TaskRow).where(
            col(TaskRow.task_id) == task_id,
            col(TaskRow.status).in_([status.value for status in expected]),
        )
        if require_ready:
            statement = statement.where(~_unfinished_dependency_exists())
        result = session.exec(statement.values(**values))
        return result.rowcount == 1

    def pending_dependents(self, *, session: Session, task_id: str) -> list[str]:
        rows = session.exec(
            select(TaskDependencyRow.task_id)
            .join(TaskRow, col(TaskRow.task_id) == col(TaskDependencyRow.task_id))
            .where(
                TaskDependencyRow.depends_on == task_id,
                TaskRow.status == TaskStatus.PENDING.value,
            )
            .order_by(col(TaskDependencyRow.task_id).asc()),
        ).all()
        return list(rows)

    def list_rows(
        self,
        *,
        session: Session,
        statuses: Sequence[TaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[TaskRow]:
        statement = select(TaskRow).order_by(
            col(TaskRow.created_at).asc(),
            col(TaskRow.task_id).asc(),
        )
        if statuses is not None:
            statement = statement.where(col(TaskRow.status).in_([s.value for s in statuses]))
        if limit is not None:
            statement = statement.limit(limit)
        return list(session.exec(statement).all())

    def count_by_status(self, *, session: Session) -> dict[str, int]:
        rows = session.exec(
            select(TaskRow.status, func.count()).group_by(TaskRow.status),
        ).all()
        return {status: int(count) for status, count in rows}

    def average_completed_duration(self, *, session: Session) -> float | None:
        value = session.exec(
            select(func.avg(func.json_extract(TaskRow.metrics_json, "$.duration"))).where(
                TaskRow.status == TaskStatus.COMPLETED.value,
                col(TaskRow.metrics_json).is_not(None),
            ),
        ).one()
        return float(value) if value is not None else None


class AgentStore:
    """Agent table access plus an in-memory mirror of live agents."""

    def __init__(self) -> None:
        self.cache: dict[str, Agent] = {}

    def get_row(self, *, session: Session, agent_id: str) -> AgentRow | None:
        return session.exec(select(AgentRow).where(AgentRow.agent_id == agent_id)).one_or_none()

    def upsert(
        self,
        *,
        session: Session,
        registration: AgentRegistration,
        now: datetime,
    ) -> AgentRow:
        row = self.get_row(session=session, agent_id=registration.agent_id)
        if row is None:
            row = AgentRow(
                agent_id=registration.agent_id,
                agent_type=registration.agent_type,
                status=AgentStatus.IDLE.value,
                metrics_json=dump_json(AgentMetrics().to_dict()),
                registered_at=to_storage_datetime(now),
                updated_at=to_storage_datetime(now),
            )
        elif row.current_task is None:
            row.status = AgentStatus.IDLE.value
        row.agent_type = registration.agent_type
        row.capabilities_json = json.dumps(list(registration.capabilities))
        row.session_id = registration.session_id
        row.metadata_json = dump_json(registration.metadata)
        row.updated_at = to_storage_datetime(now)
        session.add(row)
        return row

    def transition(
        self,
        *,
        session: Session,
        agent_id: str,
        expected: Sequence[AgentStatus] | None,
        current_task: str | None,
        values: dict[str, Any],
    ) -> bool:
        """Conditionally update one agent holding ``current_task``."""

        statement = sa_update(AgentRow).where(col(AgentRow.agent_id) == agent_id)
        if expected is not None:
            statement = statement.where(
                col(AgentRow.status).in_([status.value for status in expected]),
            )
        if current_task is None:
            statement = statement.where(col(AgentRow.current_task).is_(None))
        else:
            statement = statement.where(col(AgentRow.current_task) == current_task)
        result = session.exec(statement.values(**values))
        return result.rowcount == 1

    def list_rows(self, *, session: Session, include_offline: bool = True) -> list[AgentRow]:
        statement = select(AgentRow).order_by(
            col(AgentRow.registered_at).asc(),
            col(AgentRow.agent_id).asc(),
        )
        if not include_offline:
            statement = statement.where(AgentRow.status != AgentStatus.OFFLINE.value)
        return list(session.exec(statement).all())

    def count_by_status_and_type(self, *, session: Session) -> dict[str, dict[str, int]]:
        rows = session.exec(
            select(AgentRow.status, AgentRow.agent_type, func.count()).group_by(
                AgentRow.status,
                AgentRow.agent_type,
            ),
        ).all()
        counts: dict[str, dict[str, int]] = {}
        for status, agent_type, count in rows:
            counts.setdefault(status, {})[agent_type] = int(count)
        return counts

    def mark_offline(
        self,
        *,
        session: Session,
        now: datetime,
        session_id: str | None = None,
        agent_ids: Iterable[str] | None = None,
    ) -> int:
        """Mark agents offline, limited to one session and/or an id set when given."""

        statement = sa_update(AgentRow).where(col(AgentRow.status) != AgentStatus.OFFLINE.value)
        if session_id is not None:
            statement = statement.where(col(AgentRow.session_id) == session_id)
        if agent_ids is not None:
            statement = statement.where(col(AgentRow.agent_id).in_(list(agent_ids)))
        result = session.exec(
            statement.values(
                status=AgentStatus.OFFLINE.value,
                current_task=None,
                updated_at=to_storage_datetime(now),
            ),
        )
        return int(result.rowcount or 0)


def _unfinished_dependency_exists():
    blocker = aliased(TaskRow)
    return exists().where(
        col(TaskDependencyRow.task_id) == col(TaskRow.task_id),
        col(TaskDependencyRow.depends_on) == blocker.task_id,
        blocker.status != TaskStatus.COMPLETED.value,
    )


def dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(value: str | None, default: Any) -> Any:
    if not value:
        return default
    parsed = json.loads(value)
    return parsed if isinstance(parsed, type(default)) else default


def to_task(row: TaskRow) -> Task:
    metrics = _load_json(row.metrics_json, {})
    result = _load_json(row.result_json, {})
    return Task(
        task_id=row.task_id,
        title=row.title,
        description=row.description,
        agent_type=row.agent_type,
        dependencies=tuple(str(item) for item in _load_json(row.dependencies_json, [])),
        priority=row.priority,
        status=TaskStatus(row.status),
        metadata=TaskMetadata.from_dict(_load_json(row.metadata_json, {})),
        created_at=from_storage_datetime(row.created_at),
        updated_at=from_storage_datetime(row.updated_at),
        assigned_agent=row.assigned_agent,
        result=result or None,
        metrics=TaskMetrics.from_dict(metrics) if metrics else None,
        assigned_at=from_storage_optional(row.assigned_at),
        completed_at=from_storage_optional(row.completed_at),
    )


def to_agent(row: AgentRow) -> Agent:
    return Agent(
        agent_id=row.agent_id,
        agent_type=row.agent_type,
        capabilities=tuple(str(item) for item in _load_json(row.capabilities_json, [])),
        status=AgentStatus(row.status),
        metrics=AgentMetrics.from_dict(_load_json(row.metrics_json, {})),
        registered_at=from_storage_datetime(row.registered_at),
        updated_at=from_storage_datetime(row.updated_at),
        session_id=row.session_id,
        current_task=row.current_task,
        metadata=_load_json(row.metadata_json, {}),
    )
