"""CLI entrypoint for taskfleet."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from taskfleet import __version__
from taskfleet.orchestrator.controllers import (
    CleanupWorkspacesCommand,
    ListAgentsCommand,
    ListTasksCommand,
    OrchestratorCliController,
    PlanCommand,
    RunCommand,
    StatusCommand,
    WorkerCommand,
)
from taskfleet.orchestrator.errors import OrchestratorError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestratorCliController()
LOG_LEVELS = ["debug", "info", "warning", "error"]


@click.group()
@click.version_option(version=__version__, prog_name="taskfleet")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity.",
)
def taskfleet(log_level: str) -> None:
    """Decompose requests into task graphs and run them with a fleet of CLI agents."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskfleet.command("plan")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("query")
def plan(db_path: Path | None, query: str) -> None:
    """Show the task graph and agent routing for QUERY without running it."""

    _emit(lambda: CONTROLLER.plan(PlanCommand(db_path=db_path, query=query)))


@taskfleet.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("query")
def run(db_path: Path | None, query: str) -> None:
    """Decompose QUERY, enqueue its tasks and execute them level by level.

    Press **Ctrl+C** twice within a second to force exit while agents are running.
    """

    _emit(lambda: CONTROLLER.run(RunCommand(db_path=db_path, query=query)))


@taskfleet.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after starting this many tasks.",
)
def worker(db_path: Path | None, max_tasks: int | None) -> None:
    """Run ready tasks from the store until nothing is ready or running."""

    _emit(lambda: CONTROLLER.run_worker(WorkerCommand(db_path=db_path, max_tasks=max_tasks)))


@taskfleet.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def status(db_path: Path | None) -> None:
    """Show task counts by status and agents by status and type."""

    _emit(lambda: CONTROLLER.status(StatusCommand(db_path=db_path)))


@taskfleet.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(
        ["pending", "assigned", "in_progress", "completed", "failed"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum number of tasks to show.",
)
def tasks(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks in creation order."""

    _emit(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                status=status,
                limit=limit,
            ),
        ),
    )


@taskfleet.command("agents")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--include-offline/--online-only",
    default=True,
    show_default=True,
    help="Include agents marked offline by a finished run.",
)
def agents(db_path: Path | None, include_offline: bool) -> None:
    """List registered agents with their running metrics."""

    _emit(
        lambda: CONTROLLER.list_agents(
            ListAgentsCommand(db_path=db_path, include_offline=include_offline),
        ),
    )


@taskfleet.group()
def workspaces() -> None:
    """Per-task git worktree commands."""


@workspaces.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def workspaces_cleanup(db_path: Path | None) -> None:
    """Remove task worktrees and branches not held by an active task."""

    _emit(lambda: CONTROLLER.cleanup_workspaces(CleanupWorkspacesCommand(db_path=db_path)))


def _emit(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskfleet()
