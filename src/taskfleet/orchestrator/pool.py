"""Bounded-concurrency execution of ready tasks by leased agents."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from taskfleet.orchestrator.backend import (
    AgentBackend,
    BackendRunError,
    BackendRunRequest,
)
from taskfleet.orchestrator.coordinator import Coordinator, owner_identity
from taskfleet.orchestrator.errors import (
    ConflictError,
    IsolationError,
    OrchestratorError,
    WorkerTimeoutError,
)
from taskfleet.orchestrator.graph import dependency_levels
from taskfleet.orchestrator.models import (
    AgentRegistration,
    Task,
    TaskCompletion,
    TaskMetrics,
    TaskSpec,
    TaskStatus,
)
from taskfleet.orchestrator.routing import CapabilityRouter
from taskfleet.orchestrator.workspace import Workspace, WorkspaceIsolator

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_TASK_TIMEOUT_SECONDS = 300


@dataclass(slots=True, frozen=True)
class AgentAssignment:
    """Agent type chosen for one task by capability scoring."""

    task_id: str
    agent_type: str
    score: float
    fallback: bool = False


@dataclass(slots=True)
class TaskOutcome:
    task_id: str
    success: bool
    agent_id: str | None = None
    output: str = ""
    error: str | None = None
    duration_seconds: float = 0.0
    timed_out: bool = False
    executed: bool = True


@dataclass(slots=True)
class PoolRunSummary:
    """Aggregate pool counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    skipped: int = 0
    peak_in_flight: int = 0
    outcomes: list[TaskOutcome] = field(default_factory=list)

    def record(self, outcome: TaskOutcome) -> None:
        self.outcomes.append(outcome)
        if not outcome.executed:
            self.skipped += 1
            return
        self.processed += 1
        if outcome.success:
            self.succeeded += 1
        else:
            self.failed += 1
        if outcome.timed_out:
            self.timeouts += 1


class WorkerPool:
    """Runs tasks level by level with at most ``max_concurrency`` in flight."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        coordinator: Coordinator,
        router: CapabilityRouter,
        backend: AgentBackend,
        command_template: str,
        runs_root: Path,
        isolator: WorkspaceIsolator | None = None,
        default_workdir: Path | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS,
        slot_poll_interval_seconds: float = 0.1,
        graceful_shutdown_seconds: int = 10,
        session_id: str | None = None,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0.")
        self.coordinator = coordinator
        self.router = router
        self.backend = backend
        self.command_template = command_template
        self.runs_root = runs_root
        self.isolator = isolator
        self.default_workdir = default_workdir or Path.cwd()
        self.max_concurrency = max_concurrency
        self.task_timeout_seconds = task_timeout_seconds
        self.slot_poll_interval_seconds = slot_poll_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.session_id = session_id or uuid4().hex[:12]
        self.peak_in_flight = 0
        self._in_flight = 0
        self._slot_lock = threading.Lock()
        self._agents_lock = threading.Lock()
        self._idle_agents: dict[str, list[str]] = {}
        self._agent_counter: dict[str, int] = {}
        self._stop_event = threading.Event()

    @property
    def in_flight(self) -> int:
        with self._slot_lock:
            return self._in_flight

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Cancel in-flight invocations and keep unstarted tasks pending."""

        if not self._stop_event.is_set():
            logger.info("Worker pool stop requested with %d tasks in flight", self.in_flight)
        self._stop_event.set()

    def assign_tasks_to_agents(
        self,
        tasks: Sequence[TaskSpec | Task],
    ) -> dict[str, AgentAssignment]:
        """Choose an agent type per task, spreading estimated work across types."""

        workloads: dict[str, float] = {}
        assignments: dict[str, AgentAssignment] = {}
        for task in tasks:
            spec = _as_spec(task)
            decision = self.router.choose(spec, workloads=workloads)
            workloads[decision.agent_type] = (
                workloads.get(decision.agent_type, 0.0) + spec.metadata.estimated_minutes
            )
            assignments[spec.task_id] = AgentAssignment(
                task_id=spec.task_id,
                agent_type=decision.agent_type,
                score=decision.score,
                fallback=decision.fallback,
            )
        return assignments

    def execute_tasks_with_agents(
        self,
        tasks: Sequence[TaskSpec | Task],
        assignments: dict[str, AgentAssignment] | None = None,
    ) -> PoolRunSummary:
        """Run dependency levels in order, every task of a level concurrently.

        Each level is collected completely, successes and failures alike,
        before the next one starts.
        """

        assignments = assignments or self.assign_tasks_to_agents(tasks)
        by_id = {task.task_id: task for task in tasks}
        levels = dependency_levels({task_id: task.dependencies for task_id, task in by_id.items()})
        summary = PoolRunSummary()

        for index, level in enumerate(levels):
            if self.stop_requested:
                logger.info("Stopping before level %d; %d levels left", index, len(levels) - index)
                break
            logger.info("Executing level %d with %d tasks", index, len(level))
            outcomes: dict[str, TaskOutcome] = {}
            threads = [
                threading.Thread(
                    target=self._run_slot,
                    kwargs={
                        "task_id": task_id,
                        "agent_type": assignments[task_id].agent_type,
                        "outcomes": outcomes,
                    },
                    name=f"taskfleet-{task_id}",
                    daemon=True,
                )
                for task_id in level
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
            for task_id in level:
                summary.record(
                    outcomes.get(task_id)
                    or TaskOutcome(task_id=task_id, success=False, error="Worker thread crashed."),
                )

        summary.peak_in_flight = self.peak_in_flight
        return summary

    def drain(self, *, max_tasks: int | None = None) -> PoolRunSummary:
        """Pull ready tasks from the coordinator until nothing is ready or running."""

        summary = PoolRunSummary()
        outcomes: dict[str, TaskOutcome] = {}
        threads: list[threading.Thread] = []
        workloads: dict[str, float] = {}
        started = 0

        while not self.stop_requested and (max_tasks is None or started < max_tasks):
            if not self._acquire_slot():
                break
            task = self.coordinator.get_next_task()
            if task is None:
                self._release_slot()
                if not any(thread.is_alive() for thread in threads):
                    break
                time.sleep(self.slot_poll_interval_seconds)
                continue

            decision = self.router.choose(_as_spec(task), workloads=workloads)
            workloads[decision.agent_type] = (
                workloads.get(decision.agent_type, 0.0) + task.metadata.estimated_minutes
            )
            agent_id = self._lease_agent(decision.agent_type)
            try:
                self.coordinator.assign_task(task.task_id, agent_id)
            except ConflictError as error:
                logger.info("Task %s skipped: %s", task.task_id, error)
                self._return_agent(decision.agent_type, agent_id)
                self._release_slot()
                continue

            thread = threading.Thread(
                target=self._run_assigned,
                kwargs={
                    "task_id": task.task_id,
                    "agent_type": decision.agent_type,
                    "agent_id": agent_id,
                    "outcomes": outcomes,
                },
                name=f"taskfleet-{task.task_id}",
                daemon=True,
            )
            threads.append(thread)
            thread.start()
            started += 1

        for thread in threads:
            thread.join()
        for outcome in outcomes.values():
            summary.record(outcome)
        summary.peak_in_flight = self.peak_in_flight
        return summary

    def _run_slot(self, *, task_id: str, agent_type: str, outcomes: dict[str, TaskOutcome]) -> None:
        current = self.coordinator.get_task(task_id)
        if current.status is not TaskStatus.PENDING:
            outcomes[task_id] = TaskOutcome(
                task_id=task_id,
                success=current.status is TaskStatus.COMPLETED,
                error=(current.result or {}).get("error"),
                executed=False,
            )
            return
        if not self._acquire_slot():
            outcomes[task_id] = TaskOutcome(
                task_id=task_id,
                success=False,
                error="Not started: pool is stopping.",
                executed=False,
            )
            return

        agent_id = self._lease_agent(agent_type)
        try:
            self.coordinator.assign_task(task_id, agent_id)
        except OrchestratorError as error:
            self._return_agent(agent_type, agent_id)
            self._release_slot()
            outcomes[task_id] = TaskOutcome(
                task_id=task_id,
                success=False,
                agent_id=agent_id,
                error=str(error),
                executed=False,
            )
            return
        self._run_assigned(
            task_id=task_id,
            agent_type=agent_type,
            agent_id=agent_id,
            outcomes=outcomes,
        )

    def _run_assigned(
        self,
        *,
        task_id: str,
        agent_type: str,
        agent_id: str,
        outcomes: dict[str, TaskOutcome],
    ) -> None:
        try:
            outcome = self._execute_one(task_id=task_id, agent_type=agent_type, agent_id=agent_id)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected failure while executing task %s", task_id)
            self.coordinator.fail_task(task_id, f"{type(error).__name__}: {error}")
            outcome = TaskOutcome(
                task_id=task_id,
                success=False,
                agent_id=agent_id,
                error=f"{type(error).__name__}: {error}",
            )
        finally:
            self._return_agent(agent_type, agent_id)
            self._release_slot()
        outcomes[task_id] = outcome

    def _execute_one(self, *, task_id: str, agent_type: str, agent_id: str) -> TaskOutcome:
        started = time.monotonic()
        workspace: Workspace | None = None
        exit_code: int | None = None
        timed_out = False
        output = ""
        error: str | None = None
        try:
            if self.isolator is not None:
                workspace = self.isolator.create(task_id)
            task = self.coordinator.start_task(task_id)
            workdir = workspace.path if workspace is not None else self.default_workdir
            result = self.backend.run(
                BackendRunRequest(
                    task_id=task_id,
                    agent_type=agent_type,
                    prompt=compose_instruction(task, workdir=workdir),
                    workdir=workdir,
                    run_dir=self.runs_root / task_id,
                    timeout_seconds=self.task_timeout_seconds,
                    command_template=self.command_template,
                    shutdown_requested=self._stop_event.is_set,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                ),
            )
            exit_code = result.exit_code
            output = result.read_stdout()
            if result.timed_out:
                if self.stop_requested:
                    raise BackendRunError("Cancelled by pool shutdown.", transient=True)
                raise WorkerTimeoutError(task_id, self.task_timeout_seconds)
            if result.exit_code != 0:
                stderr = result.read_stderr().strip()
                error = f"Agent exited with code {result.exit_code}: {stderr or 'no stderr'}"
            elif workspace is not None:
                self.isolator.commit(workspace, f"{task.title} ({task_id})")
                self.isolator.merge(workspace)
        except WorkerTimeoutError as timeout_error:
            timed_out = True
            error = f"{type(timeout_error).__name__}: {timeout_error}"
        except (BackendRunError, IsolationError) as run_error:
            error = f"{type(run_error).__name__}: {run_error}"
        finally:
            if workspace is not None:
                self.isolator.remove(workspace)

        completion = TaskCompletion(
            success=error is None,
            output=output,
            error=error,
            metrics=TaskMetrics(
                duration_seconds=time.monotonic() - started,
                exit_code=exit_code,
                timed_out=timed_out,
            ),
        )
        self.coordinator.complete_task(task_id, completion)
        return TaskOutcome(
            task_id=task_id,
            success=completion.success,
            agent_id=agent_id,
            output=output,
            error=error,
            duration_seconds=completion.metrics.duration_seconds,
            timed_out=timed_out,
        )

    def _acquire_slot(self) -> bool:
        while True:
            with self._slot_lock:
                if self._stop_event.is_set():
                    return False
                if self._in_flight < self.max_concurrency:
                    self._in_flight += 1
                    self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
                    return True
            self._stop_event.wait(self.slot_poll_interval_seconds)

    def _release_slot(self) -> None:
        with self._slot_lock:
            self._in_flight -= 1

    def _lease_agent(self, agent_type: str) -> str:
        with self._agents_lock:
            idle = self._idle_agents.setdefault(agent_type, [])
            if idle:
                return idle.pop(0)
            self._agent_counter[agent_type] = self._agent_counter.get(agent_type, 0) + 1
            agent_id = f"{agent_type}-{self._agent_counter[agent_type]}"

        declared = self.router.registry.get(agent_type)
        self.coordinator.register_agent(
            AgentRegistration(
                agent_id=agent_id,
                agent_type=agent_type,
                capabilities=declared.capabilities if declared is not None else (),
                session_id=self.session_id,
                metadata=owner_identity(),
            ),
        )
        return agent_id

    def _return_agent(self, agent_type: str, agent_id: str) -> None:
        with self._agents_lock:
            idle = self._idle_agents.setdefault(agent_type, [])
            if agent_id not in idle:
                idle.append(agent_id)


def compose_instruction(task: Task, *, workdir: Path) -> str:
    """Render the instruction handed to the worker for one task."""

    lines = [
        f"# {task.title}",
        "",
        task.description,
        "",
        f"Role: {task.agent_type}",
        f"Task id: {task.task_id}",
        f"Working directory: {workdir}",
    ]
    if task.metadata.tools:
        lines.append(f"Suggested tools: {', '.join(task.metadata.tools)}")
    if task.metadata.expected_outputs:
        lines.append("Expected outputs:")
        lines.extend(f"- {item}" for item in task.metadata.expected_outputs)
    if task.dependencies:
        lines.append(f"Builds on completed tasks: {', '.join(task.dependencies)}")
    lines.extend(
        [
            "",
            "Work only inside the working directory. Leave your changes on disk;",
            "they are committed and merged when you finish.",
        ],
    )
    return "\n".join(lines) + "\n"


def _as_spec(task: TaskSpec | Task) -> TaskSpec:
    if isinstance(task, TaskSpec):
        return task
    return TaskSpec(
        task_id=task.task_id,
        title=task.title,
        description=task.description,
        agent_type=task.agent_type,
        dependencies=task.dependencies,
        priority=task.priority,
        metadata=task.metadata,
    )
