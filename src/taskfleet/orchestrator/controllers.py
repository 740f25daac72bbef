"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskfleet.config import Settings
from taskfleet.orchestrator.backend import CliAgentBackend
from taskfleet.orchestrator.coordinator import Coordinator
from taskfleet.orchestrator.decomposer import QueryDecomposer
from taskfleet.orchestrator.models import TaskStatus
from taskfleet.orchestrator.pool import PoolRunSummary, WorkerPool
from taskfleet.orchestrator.registry import AgentRegistry
from taskfleet.orchestrator.repository import OrchestratorDatabase
from taskfleet.orchestrator.routing import CapabilityRouter
from taskfleet.orchestrator.services import OrchestratorService, QueryPlan, RecoveryReport
from taskfleet.orchestrator.shutdown import ShutdownGuard
from taskfleet.orchestrator.workspace import WorkspaceIsolator

STOP_WAIT_MARGIN_SECONDS = 5.0


@dataclass(slots=True)
class PlanCommand:
    """CLI input for a dry-run decomposition."""

    db_path: Path | None
    query: str


@dataclass(slots=True)
class RunCommand:
    """CLI input for decomposing and executing one request."""

    db_path: Path | None
    query: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for draining ready tasks from the store."""

    db_path: Path | None
    max_tasks: int | None


@dataclass(slots=True)
class StatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ListAgentsCommand:
    db_path: Path | None
    include_offline: bool = True


@dataclass(slots=True)
class CleanupWorkspacesCommand:
    db_path: Path | None


@dataclass(slots=True)
class _Runtime:
    settings: Settings
    coordinator: Coordinator
    pool: WorkerPool
    service: OrchestratorService
    isolator: WorkspaceIsolator | None


class OrchestratorCliController:
    """Coordinates planning, execution and inspection CLI operations."""

    def plan(self, command: PlanCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            plan = runtime.service.plan(command.query)
        return _render_plan(plan)

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_run()
        with _runtime(settings) as runtime, _pool_session(runtime) as recovery:
            with _shutdown_guard(runtime).guarding():
                report = runtime.service.run_query(command.query)

        lines = []
        if recovery.interrupted_tasks:
            lines.append(f"Recovered: failed {len(recovery.interrupted_tasks)} interrupted tasks")
        lines.extend(_render_plan(report.plan))
        lines.append(_render_summary(report.summary))
        for outcome in report.summary.outcomes:
            state = "ok" if outcome.success else "failed"
            detail = f" error={outcome.error}" if outcome.error else ""
            lines.append(
                f"  {outcome.task_id} {state} agent={outcome.agent_id or '-'} "
                f"duration={outcome.duration_seconds:.1f}s{detail}",
            )
        counts = sorted(report.status.tasks_by_status.items())
        lines.append("Store: " + " ".join(f"{name}={count}" for name, count in counts))
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_run()
        with _runtime(settings) as runtime, _pool_session(runtime):
            with _shutdown_guard(runtime).guarding():
                summary = runtime.service.drain(max_tasks=command.max_tasks)
        return [_render_summary(summary)]

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            status = runtime.coordinator.get_status()

        average = (
            f"{status.average_task_duration:.1f}s"
            if status.average_task_duration is not None
            else "-"
        )
        lines = [
            f"Tasks: total={status.total_tasks} in_flight={status.in_flight} "
            f"average_duration={average}",
        ]
        for task_status in TaskStatus:
            count = status.tasks_by_status.get(task_status.value, 0)
            lines.append(f"  {task_status.value}: {count}")
        lines.append("Agents:")
        for agent_status, by_type in sorted(status.agents_by_status.items()):
            counts = " ".join(f"{name}={count}" for name, count in sorted(by_type.items()))
            lines.append(f"  {agent_status}: {counts}")
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _runtime(settings) as runtime:
            tasks = runtime.coordinator.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            depends = ",".join(task.dependencies) or "-"
            lines.append(
                f"  {task.task_id} type={task.agent_type} status={task.status.value} "
                f"priority={task.priority} agent={task.assigned_agent or '-'} depends_on={depends}",
            )
        return lines

    def list_agents(self, command: ListAgentsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            agents = runtime.coordinator.list_agents(include_offline=command.include_offline)

        lines = [f"Agents: {len(agents)}"]
        for agent in agents:
            lines.append(
                f"  {agent.agent_id} type={agent.agent_type} status={agent.status.value} "
                f"task={agent.current_task or '-'} completed={agent.metrics.tasks_completed} "
                f"avg={agent.metrics.average_task_time:.1f}s "
                f"success_rate={agent.metrics.success_rate:.2f}",
            )
        return lines

    def cleanup_workspaces(self, command: CleanupWorkspacesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            if runtime.isolator is None:
                return ["Workspace isolation is disabled (TASKFLEET_WORKSPACES_ENABLED=false)."]
            removed = runtime.isolator.cleanup_all(keep=runtime.service.active_task_ids())
        return [f"Removed workspaces: {len(removed)}", *(f"  {name}" for name in removed)]


def _render_plan(plan: QueryPlan) -> list[str]:
    graph = plan.graph
    lines = [
        f"Plan: intent={graph.intent.value} complexity={graph.complexity.value} "
        f"tasks={len(graph.nodes)} estimated_minutes={graph.total_estimated_minutes} "
        f"max_concurrency={graph.max_concurrency} parallelizable={graph.parallelizable}",
    ]
    for node in graph.nodes:
        assignment = plan.assignments[node.task_id]
        fallback = " (fallback)" if assignment.fallback else ""
        depends = ",".join(node.dependencies) or "-"
        lines.append(
            f"  {node.task_id} {node.title!r} agent={assignment.agent_type}{fallback} "
            f"score={assignment.score:.2f} depends_on={depends}",
        )
    if graph.critical_path:
        lines.append(f"Critical path: {' -> '.join(graph.critical_path)}")
    return lines


def _render_summary(summary: PoolRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} timeouts={summary.timeouts} "
        f"skipped={summary.skipped} peak_in_flight={summary.peak_in_flight}"
    )


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _build_registry(settings: Settings) -> AgentRegistry:
    if settings.registry.agents_file is not None:
        return AgentRegistry.from_file(settings.registry.agents_file)
    return AgentRegistry.default()


def _shutdown_guard(runtime: _Runtime) -> ShutdownGuard:
    stop_timeout = runtime.settings.pool.graceful_shutdown_seconds + STOP_WAIT_MARGIN_SECONDS
    return ShutdownGuard(
        in_flight=lambda: runtime.pool.in_flight,
        save_state=runtime.service.save_state_snapshot,
        stop_execution=lambda: runtime.service.stop_and_wait(timeout_seconds=stop_timeout),
        quick_save=runtime.service.save_state_snapshot,
        double_interrupt_window_seconds=runtime.settings.shutdown.double_interrupt_window_seconds,
    )


@contextmanager
def _pool_session(runtime: _Runtime) -> Iterator[RecoveryReport]:
    """Recover before executing and retire this pool's agents afterwards."""

    try:
        yield runtime.service.recover()
    finally:
        runtime.coordinator.cleanup(session_id=runtime.pool.session_id)


@contextmanager
def _runtime(settings: Settings) -> Iterator[_Runtime]:
    database = OrchestratorDatabase(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    database.init_schema()
    coordinator = Coordinator(database)
    try:
        registry = _build_registry(settings)
        isolator = (
            WorkspaceIsolator(
                settings.workspace.repo_root,
                main_branch=settings.workspace.main_branch,
                worktrees_dir=settings.workspace.worktrees_dir,
                name_prefix=settings.workspace.name_prefix,
                commit_prefix=settings.workspace.commit_prefix,
            )
            if settings.workspace.enabled
            else None
        )
        pool = WorkerPool(
            coordinator=coordinator,
            router=CapabilityRouter(
                registry,
                fallback_policy=settings.pool.fallback_policy,
                fallback_agent_type=settings.pool.fallback_agent_type,
            ),
            backend=CliAgentBackend(),
            command_template=settings.pool.agent_command_template,
            runs_root=settings.pool.runs_root,
            isolator=isolator,
            default_workdir=settings.workspace.repo_root,
            max_concurrency=settings.pool.max_concurrency,
            task_timeout_seconds=settings.pool.task_timeout_seconds,
            slot_poll_interval_seconds=settings.pool.slot_poll_interval_seconds,
            graceful_shutdown_seconds=settings.pool.graceful_shutdown_seconds,
        )
        service = OrchestratorService(
            coordinator=coordinator,
            decomposer=QueryDecomposer(max_concurrency=settings.pool.max_concurrency),
            pool=pool,
            isolator=isolator,
        )
        yield _Runtime(
            settings=settings,
            coordinator=coordinator,
            pool=pool,
            service=service,
            isolator=isolator,
        )
    finally:
        database.close()
