"""Use-case services tying the decomposer, coordinator and worker pool together."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from taskfleet.orchestrator.coordinator import Coordinator
from taskfleet.orchestrator.decomposer import QueryDecomposer
from taskfleet.orchestrator.models import CoordinatorStatus, ExecutionGraph, TaskStatus
from taskfleet.orchestrator.pool import AgentAssignment, PoolRunSummary, WorkerPool
from taskfleet.orchestrator.workspace import WorkspaceIsolator
from taskfleet.storage.common import utc_now

logger = logging.getLogger(__name__)

SHUTDOWN_STATE_FILENAME = "shutdown_state.json"


@dataclass(slots=True)
class QueryPlan:
    """Graph for one request together with the agent type picked per task."""

    graph: ExecutionGraph
    assignments: dict[str, AgentAssignment]


@dataclass(slots=True)
class RecoveryReport:
    loaded_tasks: int
    loaded_agents: int
    interrupted_tasks: list[str]
    removed_workspaces: list[str]


@dataclass(slots=True)
class RunReport:
    """Everything the CLI prints after one request was executed."""

    plan: QueryPlan
    summary: PoolRunSummary
    status: CoordinatorStatus


class OrchestratorService:
    """Coordinates planning, persistence and execution for one process."""

    def __init__(
        self,
        *,
        coordinator: Coordinator,
        decomposer: QueryDecomposer,
        pool: WorkerPool,
        isolator: WorkspaceIsolator | None = None,
        state_path: Path | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.decomposer = decomposer
        self.pool = pool
        self.isolator = isolator
        self.state_path = state_path or pool.runs_root / SHUTDOWN_STATE_FILENAME

    def plan(self, query: str) -> QueryPlan:
        """Decompose a request and route its tasks without touching the store."""

        graph = self.decomposer.decompose(query)
        return QueryPlan(graph=graph, assignments=self.pool.assign_tasks_to_agents(graph.nodes))

    def recover(self) -> RecoveryReport:
        """Reload durable state and clear what crashed runs left behind.

        Tasks and worktrees still held by live sessions are kept.
        """

        loaded_tasks, loaded_agents = self.coordinator.load_from_database()
        interrupted = self.coordinator.fail_interrupted_tasks(session_id=self.pool.session_id)
        removed = (
            self.isolator.cleanup_all(keep=self.active_task_ids())
            if self.isolator is not None
            else []
        )
        return RecoveryReport(
            loaded_tasks=loaded_tasks,
            loaded_agents=loaded_agents,
            interrupted_tasks=interrupted,
            removed_workspaces=removed,
        )

    def active_task_ids(self) -> list[str]:
        """Tasks assigned or running in any session."""

        return [
            task.task_id
            for task in self.coordinator.list_tasks()
            if task.status in {TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS}
        ]

    def run_query(self, query: str) -> RunReport:
        """Decompose, enqueue, execute level by level and report."""

        plan = self.plan(query)
        self.coordinator.enqueue_graph(plan.graph.nodes)
        logger.info(
            "Enqueued %d tasks for %s request (%s)",
            len(plan.graph.nodes),
            plan.graph.intent.value,
            plan.graph.complexity.value,
        )
        summary = self.pool.execute_tasks_with_agents(plan.graph.nodes, plan.assignments)
        return RunReport(plan=plan, summary=summary, status=self.coordinator.get_status())

    def drain(self, *, max_tasks: int | None = None) -> PoolRunSummary:
        return self.pool.drain(max_tasks=max_tasks)

    def save_state_snapshot(self) -> Path:
        """Write task counts and the ids still in flight for post-mortem inspection."""

        status = self.coordinator.get_status()
        in_flight = self.active_task_ids()
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        self.state_path.write_text(
            json.dumps(
                {
                    "saved_at": utc_now().isoformat(),
                    "tasks_by_status": status.tasks_by_status,
                    "in_flight": in_flight,
                },
                indent=2,
            ),
            "utf-8",
        )
        logger.info("Saved shutdown state to %s", self.state_path)
        return self.state_path

    def stop_and_wait(self, *, timeout_seconds: float = 30.0) -> bool:
        """Stop the pool and wait for running invocations to wind down."""

        self.pool.stop()
        deadline = time.monotonic() + timeout_seconds
        while self.pool.in_flight > 0:
            if time.monotonic() >= deadline:
                logger.warning(
                    "%d tasks still in flight after %.0fs",
                    self.pool.in_flight,
                    timeout_seconds,
                )
                return False
            time.sleep(self.pool.slot_poll_interval_seconds)
        return True
