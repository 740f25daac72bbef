"""Runtime configuration for the coordinator, worker pool and workspaces."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

FALLBACK_POLICIES = ("generic", "task_type", "error")
DEFAULT_AGENT_COMMAND_TEMPLATE = "claude -p {prompt}"


@dataclass(slots=True)
class PoolSettings:
    """Worker pool execution settings."""

    max_concurrency: int = 8
    task_timeout_seconds: int = 300
    slot_poll_interval_seconds: float = 0.1
    graceful_shutdown_seconds: int = 10
    fallback_policy: str = "generic"
    fallback_agent_type: str = "assistant"
    agent_command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    runs_root: Path = Path(".taskfleet/runs")


@dataclass(slots=True)
class WorkspaceSettings:
    """Per-task git worktree isolation settings."""

    enabled: bool = True
    repo_root: Path = Path()
    main_branch: str = "main"
    worktrees_dir: str = ".worktrees"
    name_prefix: str = "task"
    commit_prefix: str = "[agent]"


@dataclass(slots=True)
class ShutdownSettings:
    """Interrupt handling settings."""

    double_interrupt_window_seconds: float = 1.0


@dataclass(slots=True)
class RegistrySettings:
    """Agent catalogue settings."""

    agents_file: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskfleet.db")
    sqlite_busy_timeout_ms: int = 5_000
    pool: PoolSettings = field(default_factory=PoolSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    shutdown: ShutdownSettings = field(default_factory=ShutdownSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        agents_file = os.getenv("TASKFLEET_AGENTS_FILE", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("TASKFLEET_DB_PATH", ".taskfleet.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASKFLEET_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            pool=PoolSettings(
                max_concurrency=int(os.getenv("TASKFLEET_MAX_CONCURRENCY", "8")),
                task_timeout_seconds=int(os.getenv("TASKFLEET_TASK_TIMEOUT_SECONDS", "300")),
                slot_poll_interval_seconds=float(
                    os.getenv("TASKFLEET_SLOT_POLL_INTERVAL_SECONDS", "0.1"),
                ),
                graceful_shutdown_seconds=int(
                    os.getenv("TASKFLEET_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                fallback_policy=os.getenv("TASKFLEET_FALLBACK_POLICY", "generic").strip().lower(),
                fallback_agent_type=os.getenv("TASKFLEET_FALLBACK_AGENT_TYPE", "assistant"),
                agent_command_template=os.getenv(
                    "TASKFLEET_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                runs_root=Path(os.getenv("TASKFLEET_RUNS_ROOT", ".taskfleet/runs")),
            ),
            workspace=WorkspaceSettings(
                enabled=_env_bool("TASKFLEET_WORKSPACES_ENABLED", default=True),
                repo_root=Path(os.getenv("TASKFLEET_REPO_ROOT", ".")),
                main_branch=os.getenv("TASKFLEET_MAIN_BRANCH", "main"),
                worktrees_dir=os.getenv("TASKFLEET_WORKTREES_DIR", ".worktrees"),
                name_prefix=os.getenv("TASKFLEET_WORKSPACE_PREFIX", "task"),
                commit_prefix=os.getenv("TASKFLEET_COMMIT_PREFIX", "[agent]"),
            ),
            shutdown=ShutdownSettings(
                double_interrupt_window_seconds=float(
                    os.getenv("TASKFLEET_DOUBLE_INTERRUPT_WINDOW_SECONDS", "1.0"),
                ),
            ),
            registry=RegistrySettings(
                agents_file=Path(agents_file) if agents_file else None,
            ),
        )

    def validate_for_run(self) -> None:
        """Raise configuration error if execution settings are unusable."""

        if self.pool.max_concurrency <= 0:
            raise ValueError("TASKFLEET_MAX_CONCURRENCY must be > 0.")
        if self.pool.task_timeout_seconds <= 0:
            raise ValueError("TASKFLEET_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.pool.slot_poll_interval_seconds <= 0:
            raise ValueError("TASKFLEET_SLOT_POLL_INTERVAL_SECONDS must be > 0.")
        if self.pool.graceful_shutdown_seconds < 0:
            raise ValueError("TASKFLEET_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.pool.fallback_policy not in FALLBACK_POLICIES:
            raise ValueError(
                "TASKFLEET_FALLBACK_POLICY must be one of "
                f"{', '.join(FALLBACK_POLICIES)}, got {self.pool.fallback_policy!r}.",
            )
        if not self.pool.fallback_agent_type.strip():
            raise ValueError("TASKFLEET_FALLBACK_AGENT_TYPE must not be empty.")
        if "{prompt" not in self.pool.agent_command_template:
            raise ValueError(
                "TASKFLEET_AGENT_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )
        if self.shutdown.double_interrupt_window_seconds <= 0:
            raise ValueError("TASKFLEET_DOUBLE_INTERRUPT_WINDOW_SECONDS must be > 0.")
        if self.workspace.enabled and not self.workspace.main_branch.strip():
            raise ValueError("TASKFLEET_MAIN_BRANCH must not be empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
