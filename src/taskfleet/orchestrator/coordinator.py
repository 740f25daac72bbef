"""Transactional authority over task and agent lifecycle."""

from __future__ import annotations

import logging
import os
import socket
import threading
from collections.abc import Callable, Sequence
from datetime import datetime

from sqlmodel import Session

from taskfleet.orchestrator.errors import ConflictError, NotFoundError, ValidationError
from taskfleet.orchestrator.graph import find_cycle, topological_order
from taskfleet.orchestrator.models import (
    ACTIVE_TASK_STATUSES,
    Agent,
    AgentRegistration,
    AgentStatus,
    CoordinatorStatus,
    Task,
    TaskCompletion,
    TaskMetrics,
    TaskSpec,
    TaskStatus,
)
from taskfleet.orchestrator.repository import (
    AgentStore,
    OrchestratorDatabase,
    TaskStore,
    dump_json,
    to_agent,
    to_task,
)
from taskfleet.storage.common import to_storage_datetime, utc_now

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Interrupted: the previous run stopped before this task finished."


class Coordinator:
    """Sole writer of task and agent state.

    Every operation that touches both a task and an agent runs in one store
    transaction. The in-memory mirrors on ``tasks``/``agents`` are refreshed
    only after a successful commit and can always be rebuilt with
    ``load_from_database``.
    """

    def __init__(
        self,
        database: OrchestratorDatabase,
        *,
        clock: Callable[[], datetime] = utc_now,
        owner_alive: Callable[[Agent], bool] | None = None,
    ) -> None:
        self.database = database
        self.owner_alive = owner_alive or agent_owner_alive
        self.tasks = TaskStore()
        self.agents = AgentStore()
        self._clock = clock
        self._lock = threading.RLock()

    def enqueue_task(self, spec: TaskSpec) -> Task:
        """Persist one pending task whose dependencies already exist."""

        _validate_spec(spec)
        with self._lock, self.database.session() as session:
            if self.tasks.get_row(session=session, task_id=spec.task_id) is not None:
                raise ConflictError(f"Task already exists: {spec.task_id}")
            missing = set(spec.dependencies) - self.tasks.existing_ids(
                session=session,
                task_ids=spec.dependencies,
            )
            if missing:
                raise ValidationError(
                    f"Task {spec.task_id} depends on unknown tasks: {', '.join(sorted(missing))}",
                )
            row = self.tasks.insert(session=session, spec=spec, now=self._clock())
            session.commit()
            session.refresh(row)
            task = to_task(row)
            self.tasks.cache[task.task_id] = task
        logger.debug("Enqueued task %s (%s)", task.task_id, task.agent_type)
        return task

    def enqueue_graph(self, specs: Sequence[TaskSpec]) -> list[Task]:
        """Validate a batch as a whole and persist it in dependency order."""

        by_id: dict[str, TaskSpec] = {}
        for spec in specs:
            _validate_spec(spec)
            if spec.task_id in by_id:
                raise ValidationError(f"Duplicate task id in batch: {spec.task_id}")
            by_id[spec.task_id] = spec

        edges = {task_id: spec.dependencies for task_id, spec in by_id.items()}
        cycle = find_cycle(edges)
        if cycle is not None:
            raise ValidationError(f"Dependency cycle detected: {' -> '.join(cycle)}")

        with self._lock, self.database.session() as session:
            existing = self.tasks.existing_ids(session=session, task_ids=by_id)
            if existing:
                raise ConflictError(f"Tasks already exist: {', '.join(sorted(existing))}")
            external = {dep for spec in specs for dep in spec.dependencies if dep not in by_id}
            missing = external - self.tasks.existing_ids(session=session, task_ids=external)
            if missing:
                raise ValidationError(f"Unknown dependencies: {', '.join(sorted(missing))}")

            now = self._clock()
            rows = []
            for task_id in topological_order(edges):
                rows.append(self.tasks.insert(session=session, spec=by_id[task_id], now=now))
                session.flush()
            session.commit()
            tasks = []
            for row in rows:
                session.refresh(row)
                task = to_task(row)
                self.tasks.cache[task.task_id] = task
                tasks.append(task)
        logger.info("Enqueued %d tasks", len(tasks))
        return tasks

    def get_next_task(
        self,
        agent_type: str | None = None,
        capabilities: Sequence[str] = (),
    ) -> Task | None:
        """Highest-priority ready task for the given agent type or capability tags."""

        with self.database.session() as session:
            row = self.tasks.next_ready(
                session=session,
                agent_type=agent_type,
                capabilities=capabilities,
            )
            return to_task(row) if row is not None else None

    def assign_task(self, task_id: str, agent_id: str) -> Task:
        """Hand a ready pending task to an idle agent, atomically."""

        with self._lock, self.database.session() as session:
            task_row = self.tasks.get_row(session=session, task_id=task_id)
            if task_row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            agent_row = self.agents.get_row(session=session, agent_id=agent_id)
            if agent_row is None:
                raise NotFoundError(f"Agent not found: {agent_id}")
            if task_row.status != TaskStatus.PENDING.value:
                raise ConflictError(f"Task {task_id} is {task_row.status}, not pending.")
            blocking = [
                dep_id
                for dep_id, status in self.tasks.dependency_statuses(
                    session=session,
                    task_id=task_id,
                ).items()
                if status is not TaskStatus.COMPLETED
            ]
            if blocking:
                raise ConflictError(
                    f"Task {task_id} is waiting on dependencies: {', '.join(sorted(blocking))}",
                )
            if agent_row.status != AgentStatus.IDLE.value:
                raise ConflictError(f"Agent {agent_id} is {agent_row.status}, not idle.")

            now = to_storage_datetime(self._clock())
            if not self.tasks.transition(
                session=session,
                task_id=task_id,
                expected=(TaskStatus.PENDING,),
                require_ready=True,
                values={
                    "status": TaskStatus.ASSIGNED.value,
                    "assigned_agent": agent_id,
                    "assigned_at": now,
                    "updated_at": now,
                },
            ):
                session.rollback()
                raise ConflictError(f"Task {task_id} was claimed concurrently.")
            if not self.agents.transition(
                session=session,
                agent_id=agent_id,
                expected=(AgentStatus.IDLE,),
                current_task=None,
                values={
                    "status": AgentStatus.BUSY.value,
                    "current_task": task_id,
                    "updated_at": now,
                },
            ):
                session.rollback()
                raise ConflictError(f"Agent {agent_id} was taken concurrently.")
            session.commit()
            task = self._refresh_task(session=session, task_id=task_id)
            self._refresh_agent(session=session, agent_id=agent_id)
        logger.debug("Assigned task %s to %s", task_id, agent_id)
        return task

    def start_task(self, task_id: str) -> Task:
        """Mark an assigned task as running inside its workspace."""

        with self._lock, self.database.session() as session:
            row = self.tasks.get_row(session=session, task_id=task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            now = to_storage_datetime(self._clock())
            if not self.tasks.transition(
                session=session,
                task_id=task_id,
                expected=(TaskStatus.ASSIGNED,),
                values={"status": TaskStatus.IN_PROGRESS.value, "updated_at": now},
            ):
                session.rollback()
                raise ConflictError(f"Task {task_id} is {row.status}, not assigned.")
            session.commit()
            return self._refresh_task(session=session, task_id=task_id)

    def complete_task(self, task_id: str, completion: TaskCompletion) -> bool:
        """Record a terminal outcome and release the agent.

        Unknown and already-finished tasks are ignored so duplicate or late
        worker reports are harmless. Returns whether anything changed.
        """

        with self._lock, self.database.session() as session:
            row = self.tasks.get_row(session=session, task_id=task_id)
            if row is None:
                logger.debug("Ignoring completion for unknown task %s", task_id)
                return False
            status = TaskStatus(row.status)
            target = TaskStatus.COMPLETED if completion.success else TaskStatus.FAILED
            if not status.can_advance_to(target):
                logger.debug("Ignoring completion for finished task %s", task_id)
                return False
            if status is TaskStatus.PENDING:
                raise ConflictError(f"Task {task_id} was never assigned.")

            now = to_storage_datetime(self._clock())
            if not self.tasks.transition(
                session=session,
                task_id=task_id,
                expected=(TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS),
                values={
                    "status": target.value,
                    "result_json": dump_json(completion.result_payload()),
                    "metrics_json": dump_json(completion.metrics.to_dict()),
                    "completed_at": now,
                    "updated_at": now,
                },
            ):
                session.rollback()
                return False

            agent_id = row.assigned_agent
            released = False
            if agent_id is not None:
                released = self._release_agent(
                    session=session,
                    agent_id=agent_id,
                    task_id=task_id,
                    completion=completion,
                    now=now,
                )
            cascaded = []
            if target is TaskStatus.FAILED:
                cascaded = self._fail_dependents(session=session, task_id=task_id, now=now)
            session.commit()

            self._refresh_task(session=session, task_id=task_id)
            for dependent_id in cascaded:
                self._refresh_task(session=session, task_id=dependent_id)
            if released and agent_id is not None:
                self._refresh_agent(session=session, agent_id=agent_id)

        if target is TaskStatus.FAILED:
            logger.warning("Task %s failed: %s", task_id, completion.error or "unknown error")
        else:
            logger.info("Task %s completed in %.1fs", task_id, completion.metrics.duration_seconds)
        return True

    def fail_task(
        self,
        task_id: str,
        error: str,
        *,
        metrics: TaskMetrics | None = None,
    ) -> bool:
        return self.complete_task(
            task_id,
            TaskCompletion(
                success=False,
                metrics=metrics or TaskMetrics(duration_seconds=0.0),
                error=error,
            ),
        )

    def register_agent(self, registration: AgentRegistration) -> Agent:
        """Create or refresh an agent record."""

        if not registration.agent_id.strip() or not registration.agent_type.strip():
            raise ValidationError("Agent id and type are required.")
        with self._lock, self.database.session() as session:
            row = self.agents.upsert(session=session, registration=registration, now=self._clock())
            session.commit()
            session.refresh(row)
            agent = to_agent(row)
            self.agents.cache[agent.agent_id] = agent
        return agent

    def update_agent_status(
        self,
        agent_id: str,
        status: AgentStatus,
        *,
        current_task: str | None = None,
    ) -> Agent:
        """Set an agent status, keeping ``busy`` paired with a current task."""

        if (status is AgentStatus.BUSY) != (current_task is not None):
            raise ValidationError("An agent is busy exactly when it holds a current task.")
        with self._lock, self.database.session() as session:
            row = self.agents.get_row(session=session, agent_id=agent_id)
            if row is None:
                raise NotFoundError(f"Agent not found: {agent_id}")
            row.status = status.value
            row.current_task = current_task
            row.updated_at = to_storage_datetime(self._clock())
            session.add(row)
            session.commit()
            return self._refresh_agent(session=session, agent_id=agent_id)

    def get_task(self, task_id: str) -> Task:
        with self.database.session() as session:
            row = self.tasks.get_row(session=session, task_id=task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            return to_task(row)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        with self.database.session() as session:
            rows = self.tasks.list_rows(
                session=session,
                statuses=(status,) if status is not None else None,
                limit=limit,
            )
        return [to_task(row) for row in rows]

    def list_agents(self, *, include_offline: bool = True) -> list[Agent]:
        with self.database.session() as session:
            rows = self.agents.list_rows(session=session, include_offline=include_offline)
        return [to_agent(row) for row in rows]

    def get_status(self) -> CoordinatorStatus:
        """Aggregate counts straight from the durable store."""

        with self.database.session() as session:
            return CoordinatorStatus(
                tasks_by_status=self.tasks.count_by_status(session=session),
                agents_by_status=self.agents.count_by_status_and_type(session=session),
                average_task_duration=self.tasks.average_completed_duration(session=session),
            )

    def in_flight_count(self) -> int:
        """Tasks this process has assigned or started and not yet finished."""

        with self._lock:
            return sum(
                1
                for task in self.tasks.cache.values()
                if task.status in {TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS}
            )

    def load_from_database(self) -> tuple[int, int]:
        """Rebuild the mirrors from active tasks and non-offline agents."""

        with self._lock, self.database.session() as session:
            task_rows = self.tasks.list_rows(session=session, statuses=ACTIVE_TASK_STATUSES)
            agent_rows = self.agents.list_rows(session=session, include_offline=False)
            self.tasks.cache = {row.task_id: to_task(row) for row in task_rows}
            self.agents.cache = {row.agent_id: to_agent(row) for row in agent_rows}
        logger.info(
            "Loaded %d active tasks and %d agents from %s",
            len(task_rows),
            len(agent_rows),
            self.database.db_path,
        )
        return len(task_rows), len(agent_rows)

    def fail_interrupted_tasks(self, *, session_id: str | None = None) -> list[str]:
        """Move tasks orphaned by a crashed run forward to ``failed``.

        A task is orphaned when its agent is missing or offline, or when the agent
        belongs to another session whose process has stopped. Agents of stopped
        sessions are marked offline. Work held by ``session_id`` or by any live
        session is left alone.
        """

        agents = {agent.agent_id: agent for agent in self.list_agents()}
        abandoned = {
            agent.agent_id
            for agent in agents.values()
            if agent.status is not AgentStatus.OFFLINE
            and (session_id is None or agent.session_id != session_id)
            and not self.owner_alive(agent)
        }
        interrupted = []
        for task in self.list_tasks():
            if task.status not in {TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS}:
                continue
            agent = agents.get(task.assigned_agent or "")
            if agent is None or agent.status is AgentStatus.OFFLINE or agent.agent_id in abandoned:
                interrupted.append(task.task_id)

        failed = [
            task_id for task_id in interrupted if self.fail_task(task_id, INTERRUPTED_ERROR)
        ]
        if failed:
            logger.warning("Failed %d interrupted tasks: %s", len(failed), ", ".join(failed))
        if abandoned:
            with self._lock, self.database.session() as session:
                count = self.agents.mark_offline(
                    session=session,
                    now=self._clock(),
                    agent_ids=abandoned,
                )
                session.commit()
                for agent_id in abandoned:
                    self.agents.cache.pop(agent_id, None)
            logger.info("Marked %d agents of stopped sessions offline", count)
        return failed

    def cleanup(self, *, session_id: str) -> None:
        """Mark this session's agents offline and drop the mirrors."""

        with self._lock, self.database.session() as session:
            count = self.agents.mark_offline(
                session=session,
                now=self._clock(),
                session_id=session_id,
            )
            session.commit()
            self.tasks.cache.clear()
            self.agents.cache.clear()
        logger.info("Marked %d agents of session %s offline", count, session_id)

    def _release_agent(
        self,
        *,
        session: Session,
        agent_id: str,
        task_id: str,
        completion: TaskCompletion,
        now: datetime,
    ) -> bool:
        agent_row = self.agents.get_row(session=session, agent_id=agent_id)
        if agent_row is None or agent_row.current_task != task_id:
            return False
        metrics = to_agent(agent_row).metrics.folded(
            duration_seconds=completion.metrics.duration_seconds,
            success=completion.success,
        )
        next_status = (
            AgentStatus.IDLE.value
            if agent_row.status == AgentStatus.BUSY.value
            else agent_row.status
        )
        return self.agents.transition(
            session=session,
            agent_id=agent_id,
            expected=None,
            current_task=task_id,
            values={
                "status": next_status,
                "current_task": None,
                "metrics_json": dump_json(metrics.to_dict()),
                "updated_at": now,
            },
        )

    def _fail_dependents(self, *, session: Session, task_id: str, now: datetime) -> list[str]:
        failed: list[str] = []
        frontier = [task_id]
        while frontier:
            upstream = frontier.pop()
            for dependent_id in self.tasks.pending_dependents(session=session, task_id=upstream):
                error = f"Dependency failed: {upstream}"
                if self.tasks.transition(
                    session=session,
                    task_id=dependent_id,
                    expected=(TaskStatus.PENDING,),
                    values={
                        "status": TaskStatus.FAILED.value,
                        "result_json": dump_json(
                            {"success": False, "output": "", "error": error},
                        ),
                        "metrics_json": dump_json(TaskMetrics(duration_seconds=0.0).to_dict()),
                        "completed_at": now,
                        "updated_at": now,
                    },
                ):
                    failed.append(dependent_id)
                    frontier.append(dependent_id)
        return failed

    def _refresh_task(self, *, session: Session, task_id: str) -> Task:
        row = self.tasks.get_row(session=session, task_id=task_id)
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        session.refresh(row)
        task = to_task(row)
        self.tasks.cache[task_id] = task
        return task

    def _refresh_agent(self, *, session: Session, agent_id: str) -> Agent:
        row = self.agents.get_row(session=session, agent_id=agent_id)
        if row is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        session.refresh(row)
        agent = to_agent(row)
        self.agents.cache[agent_id] = agent
        return agent


def _validate_spec(spec: TaskSpec) -> None:
    if not spec.task_id.strip():
        raise ValidationError("Task id is required.")
    if not spec.title.strip():
        raise ValidationError(f"Task {spec.task_id} requires a title.")
    if not spec.agent_type.strip():
        raise ValidationError(f"Task {spec.task_id} requires an agent type.")
    if spec.task_id in spec.dependencies:
        raise ValidationError(f"Task {spec.task_id} cannot depend on itself.")
    if len(set(spec.dependencies)) != len(spec.dependencies):
        raise ValidationError(f"Task {spec.task_id} lists a dependency twice.")


def owner_identity() -> dict[str, object]:
    """Agent metadata that lets other processes check whether this one still runs."""

    return {"pid": os.getpid(), "host": socket.gethostname()}


def agent_owner_alive(agent: Agent) -> bool:
    """Whether the process that registered ``agent`` is still running.

    Agents without an owner pid count as stopped. Owners on another host
    cannot be checked and count as running.
    """

    pid = agent.metadata.get("pid")
    if not isinstance(pid, int) or pid <= 0:
        return False
    if agent.metadata.get("host") != socket.gethostname() or os.name == "nt":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
