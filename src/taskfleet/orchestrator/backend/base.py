"""Backend interface for worker invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to run one task inside its workspace."""

    task_id: str
    agent_type: str
    prompt: str
    workdir: Path
    run_dir: Path
    timeout_seconds: float
    command_template: str
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class BackendRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path

    def read_stdout(self, *, limit: int = 20_000) -> str:
        return _read_tail(self.stdout_path, limit=limit)

    def read_stderr(self, *, limit: int = 4_000) -> str:
        return _read_tail(self.stderr_path, limit=limit)


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        """Run a task and return execution metadata."""


def _read_tail(path: Path, *, limit: int) -> str:
    try:
        text = path.read_text("utf-8", errors="replace")
    except FileNotFoundError:
        return ""
    return text[-limit:] if len(text) > limit else text
