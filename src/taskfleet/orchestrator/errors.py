"""Error taxonomy shared by coordinator, pool and workspace isolation."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestration failures surfaced to callers."""


class ValidationError(OrchestratorError, ValueError):
    """Malformed task payload or cyclic dependency graph."""


class NotFoundError(OrchestratorError, LookupError):
    """Unknown task or agent id."""


class ConflictError(OrchestratorError):
    """State changed underneath the caller, for example a double assignment."""


class WorkerTimeoutError(OrchestratorError, TimeoutError):
    """Worker invocation exceeded its deadline."""

    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Task {task_id} exceeded its {timeout_seconds:g}s deadline.")
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


class IsolationError(OrchestratorError):
    """Workspace create, commit or merge failure."""


class PersistenceError(OrchestratorError):
    """Durable store is unavailable or rejected the write."""
