"""Domain models for tasks, agents and execution graphs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states, in forward order."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED}

    def can_advance_to(self, target: TaskStatus) -> bool:
        """Whether moving to ``target`` keeps the lifecycle monotonic."""

        if self.is_terminal:
            return False
        return _TASK_STATUS_RANK[target] > _TASK_STATUS_RANK[self]


_TASK_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.ASSIGNED: 1,
    TaskStatus.IN_PROGRESS: 2,
    TaskStatus.COMPLETED: 3,
    TaskStatus.FAILED: 3,
}

ACTIVE_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS)


class AgentStatus(str, Enum):
    """Agent availability states."""

    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    OFFLINE = "offline"


class QueryIntent(str, Enum):
    """Coarse request intent used to pick a task template."""

    BUILD = "build"
    FIX = "fix"
    TEST = "test"
    OTHER = "other"


class TaskComplexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskCategory(str, Enum):
    """Work category, used both for metadata variants and capability scoring."""

    ANALYSIS = "analysis"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    TESTING = "testing"
    DOCUMENTATION = "documentation"


@dataclass(slots=True)
class TaskMetadata:
    """Structured per-task metadata with a free-form bag for the rest."""

    category: TaskCategory = TaskCategory.IMPLEMENTATION
    complexity: TaskComplexity = TaskComplexity.MEDIUM
    estimated_minutes: int = 10
    tools: tuple[str, ...] = ()
    expected_outputs: tuple[str, ...] = ()
    extras: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "complexity": self.complexity.value,
            "estimated_minutes": self.estimated_minutes,
            "tools": list(self.tools),
            "expected_outputs": list(self.expected_outputs),
            "extras": dict(self.extras),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskMetadata:
        extras = payload.get("extras")
        return cls(
            category=TaskCategory(payload.get("category", TaskCategory.IMPLEMENTATION.value)),
            complexity=TaskComplexity(payload.get("complexity", TaskComplexity.MEDIUM.value)),
            estimated_minutes=int(payload.get("estimated_minutes", 10)),
            tools=tuple(str(item) for item in payload.get("tools", ())),
            expected_outputs=tuple(str(item) for item in payload.get("expected_outputs", ())),
            extras=dict(extras) if isinstance(extras, dict) else {},
        )


@dataclass(slots=True)
class TaskSpec:
    """Input payload for enqueuing a task."""

    task_id: str
    title: str
    description: str
    agent_type: str
    dependencies: tuple[str, ...] = ()
    priority: int = 0
    metadata: TaskMetadata = field(default_factory=TaskMetadata)


@dataclass(slots=True)
class TaskMetrics:
    """Execution measurements captured for one task run."""

    duration_seconds: float
    exit_code: int | None = None
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration": self.duration_seconds,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskMetrics:
        exit_code = payload.get("exit_code")
        return cls(
            duration_seconds=float(payload.get("duration", 0.0)),
            exit_code=int(exit_code) if exit_code is not None else None,
            timed_out=bool(payload.get("timed_out", False)),
        )


@dataclass(slots=True)
class TaskCompletion:
    """Outcome reported by a worker when a task finishes."""

    success: bool
    metrics: TaskMetrics
    output: str = ""
    error: str | None = None

    def result_payload(self) -> dict[str, Any]:
        return {"success": self.success, "output": self.output, "error": self.error}


@dataclass(slots=True)
class Task:
    """Readable task view for scheduling and CLI logic."""

    task_id: str
    title: str
    description: str
    agent_type: str
    dependencies: tuple[str, ...]
    priority: int
    status: TaskStatus
    metadata: TaskMetadata
    created_at: datetime
    updated_at: datetime
    assigned_agent: str | None = None
    result: dict[str, Any] | None = None
    metrics: TaskMetrics | None = None
    assigned_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class AgentMetrics:
    tasks_completed: int = 0
    average_task_time: float = 0.0
    success_rate: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks_completed": self.tasks_completed,
            "average_task_time": self.average_task_time,
            "success_rate": self.success_rate,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentMetrics:
        return cls(
            tasks_completed=int(payload.get("tasks_completed", 0)),
            average_task_time=float(payload.get("average_task_time", 0.0)),
            success_rate=float(payload.get("success_rate", 1.0)),
        )

    def folded(self, *, duration_seconds: float, success: bool) -> AgentMetrics:
        """Return metrics with one more finished task folded into the running means."""

        count = self.tasks_completed
        return AgentMetrics(
            tasks_completed=count + 1,
            average_task_time=(self.average_task_time * count + duration_seconds) / (count + 1),
            success_rate=(self.success_rate * count + (1.0 if success else 0.0)) / (count + 1),
        )


@dataclass(slots=True)
class AgentRegistration:
    """Input payload for registering or refreshing an agent."""

    agent_id: str
    agent_type: str
    capabilities: tuple[str, ...] = ()
    session_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Agent:
    agent_id: str
    agent_type: str
    capabilities: tuple[str, ...]
    status: AgentStatus
    metrics: AgentMetrics
    registered_at: datetime
    updated_at: datetime
    session_id: str | None = None
    current_task: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionGraph:
    """Task DAG produced for one request."""

    query: str
    intent: QueryIntent
    complexity: TaskComplexity
    nodes: list[TaskSpec]
    total_estimated_minutes: int
    max_concurrency: int
    parallelizable: bool
    critical_path: list[str]


@dataclass(slots=True)
class CoordinatorStatus:
    """Aggregated counts read from the durable store."""

    tasks_by_status: dict[str, int]
    agents_by_status: dict[str, dict[str, int]]
    average_task_duration: float | None

    @property
    def total_tasks(self) -> int:
        return sum(self.tasks_by_status.values())

    @property
    def in_flight(self) -> int:
        return self.tasks_by_status.get(TaskStatus.ASSIGNED.value, 0) + self.tasks_by_status.get(
            TaskStatus.IN_PROGRESS.value,
            0,
        )
