from __future__ import annotations

import subprocess
from pathlib import Path

import allure
import pytest

from taskfleet.orchestrator.backend import CliAgentBackend
from taskfleet.orchestrator.coordinator import Coordinator, owner_identity
from taskfleet.orchestrator.decomposer import QueryDecomposer
from taskfleet.orchestrator.errors import IsolationError
from taskfleet.orchestrator.models import AgentRegistration, AgentStatus, TaskSpec, TaskStatus
from taskfleet.orchestrator.pool import WorkerPool
from taskfleet.orchestrator.registry import AgentRegistry
from taskfleet.orchestrator.repository import OrchestratorDatabase
from taskfleet.orchestrator.routing import CapabilityRouter
from taskfleet.orchestrator.services import OrchestratorService
from taskfleet.orchestrator.workspace import WorkspaceIsolator

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Workspace Isolation"),
]


def git(repo: Path, *args: str) -> str:
    return subprocess.run(  # noqa: S603
        ["git", *args],  # noqa: S607
        cwd=repo,
        text=True,
        capture_output=True,
        check=True,
    ).stdout.strip()


def _branches(repo: Path) -> list[str]:
    return git(repo, "branch", "--format=%(refname:short)").splitlines()


def test_create_then_remove_leaves_no_residue(git_repo: Path) -> None:
    isolator = WorkspaceIsolator(git_repo)

    workspace = isolator.create("q1-backend")

    assert workspace.branch == "task/q1-backend"
    assert workspace.path == git_repo / ".worktrees" / "task-q1-backend"
    assert workspace.path.is_dir()
    assert workspace.base_revision == git(git_repo, "rev-parse", "main")
    assert "task/q1-backend" in _branches(git_repo)

    isolator.remove(workspace)

    assert not workspace.path.exists()
    assert _branches(git_repo) == ["main"]
    assert isolator.list_workspaces() == []


def test_commit_without_changes_creates_no_commit(git_repo: Path) -> None:
    isolator = WorkspaceIsolator(git_repo)
    workspace = isolator.create("idle")

    head = isolator.commit(workspace, "nothing to see")

    assert head == workspace.base_revision
    assert git(workspace.path, "rev-list", "--count", "HEAD") == "1"
    isolator.remove(workspace)


def test_committed_work_is_merged_into_main(git_repo: Path) -> None:
    isolator = WorkspaceIsolator(git_repo, commit_prefix="[fleet]")
    workspace = isolator.create("feature")
    (workspace.path / "feature.txt").write_text("hello\n", "utf-8")

    head = isolator.commit(workspace, "Add feature")
    merged = isolator.merge(workspace)
    isolator.remove(workspace)

    assert head != workspace.base_revision
    assert git(git_repo, "log", "-1", "--format=%s", head) == "[fleet] Add feature"
    assert merged == git(git_repo, "rev-parse", "main")
    assert git(git_repo, "log", "-1", "--format=%s", "main") == "Merge agent work: feature"
    assert (git_repo / "feature.txt").read_text("utf-8") == "hello\n"


def test_merge_conflict_is_aborted_and_raised(git_repo: Path) -> None:
    isolator = WorkspaceIsolator(git_repo)
    left = isolator.create("left")
    right = isolator.create("right")
    (left.path / "README.md").write_text("left\n", "utf-8")
    (right.path / "README.md").write_text("right\n", "utf-8")
    isolator.commit(left, "left edit")
    isolator.commit(right, "right edit")
    isolator.merge(left)

    with pytest.raises(IsolationError):
        isolator.merge(right)

    assert git(git_repo, "status", "--porcelain", "--untracked-files=no") == ""
    assert (git_repo / "README.md").read_text("utf-8") == "left\n"
    isolator.remove(left)
    isolator.remove(right)


def test_create_rolls_back_when_branch_is_taken(git_repo: Path) -> None:
    git(git_repo, "branch", "task/busy")
    isolator = WorkspaceIsolator(git_repo)

    with pytest.raises(IsolationError):
        isolator.create("busy")

    assert not isolator.workspace_path("busy").exists()
    assert "task/busy" in _branches(git_repo)


def test_cleanup_all_sweeps_prefixed_workspaces(git_repo: Path) -> None:
    isolator = WorkspaceIsolator(git_repo)
    isolator.create("a")
    isolator.create("b")
    git(git_repo, "branch", "task/orphan")
    git(git_repo, "branch", "keep-me")

    removed = isolator.cleanup_all()

    assert set(removed) >= {"task/a", "task/b", "task/orphan"}
    assert sorted(_branches(git_repo)) == ["keep-me", "main"]
    assert isolator.list_workspaces() == []


def test_cleanup_all_keeps_workspaces_of_active_tasks(git_repo: Path) -> None:
    isolator = WorkspaceIsolator(git_repo)
    running = isolator.create("running")
    isolator.create("stale")

    removed = isolator.cleanup_all(keep=["running"])

    assert removed == ["task/stale"]
    assert sorted(_branches(git_repo)) == ["main", "task/running"]
    assert [branch for _, branch in isolator.list_workspaces()] == ["task/running"]
    assert running.path.is_dir()


def test_unsafe_task_ids_are_sanitized(git_repo: Path) -> None:
    isolator = WorkspaceIsolator(git_repo)

    assert isolator.branch_name("feat: login/form") == "task/feat-login-form"
    with pytest.raises(IsolationError):
        isolator.branch_name("///")


def test_pool_merges_agent_output_from_isolated_workspace(
    git_repo: Path,
    coordinator: Coordinator,
    tmp_path: Path,
    echo_agent_command: str,
) -> None:
    isolator = WorkspaceIsolator(git_repo)
    spec = TaskSpec(
        task_id="q1-research",
        title="Research and Analysis",
        description="Research and analyze: the login flow",
        agent_type="researcher",
    )
    coordinator.enqueue_task(spec)
    pool = WorkerPool(
        coordinator=coordinator,
        router=CapabilityRouter(AgentRegistry.default()),
        backend=CliAgentBackend(),
        command_template=echo_agent_command,
        runs_root=tmp_path / "runs",
        isolator=isolator,
        task_timeout_seconds=60,
        slot_poll_interval_seconds=0.01,
    )

    summary = pool.execute_tasks_with_agents([spec])

    assert summary.succeeded == 1
    assert coordinator.get_task("q1-research").status is TaskStatus.COMPLETED
    merged = git_repo / "q1-research.md"
    assert merged.read_text("utf-8").startswith("# Research and Analysis")
    assert _branches(git_repo) == ["main"]
    assert isolator.list_workspaces() == []


def _service(database: OrchestratorDatabase, isolator: WorkspaceIsolator, tmp_path: Path):
    coordinator = Coordinator(database)
    pool = WorkerPool(
        coordinator=coordinator,
        router=CapabilityRouter(AgentRegistry.default()),
        backend=CliAgentBackend(),
        command_template="agent {prompt}",
        runs_root=tmp_path / "runs",
        isolator=isolator,
    )
    return OrchestratorService(
        coordinator=coordinator,
        decomposer=QueryDecomposer(),
        pool=pool,
        isolator=isolator,
    )


def test_recovery_in_a_second_process_keeps_live_work(
    git_repo: Path,
    database: OrchestratorDatabase,
    tmp_path: Path,
) -> None:
    isolator = WorkspaceIsolator(git_repo)
    running = _service(database, isolator, tmp_path)
    running.coordinator.enqueue_graph(
        [
            TaskSpec(task_id="live", title="Live", description="", agent_type="backend"),
            TaskSpec(
                task_id="crashed",
                title="Crashed",
                description="",
                agent_type="backend",
            ),
        ],
    )
    running.coordinator.register_agent(
        AgentRegistration(
            agent_id="live-agent",
            agent_type="backend",
            session_id=running.pool.session_id,
            metadata=owner_identity(),
        ),
    )
    running.coordinator.register_agent(
        AgentRegistration(agent_id="crashed-agent", agent_type="backend", session_id="gone"),
    )
    running.coordinator.assign_task("live", "live-agent")
    running.coordinator.start_task("live")
    running.coordinator.assign_task("crashed", "crashed-agent")
    live_workspace = isolator.create("live")
    isolator.create("crashed")

    starting = _service(database, WorkspaceIsolator(git_repo), tmp_path)
    report = starting.recover()

    assert report.interrupted_tasks == ["crashed"]
    assert report.removed_workspaces == ["task/crashed"]
    assert starting.coordinator.get_task("live").status is TaskStatus.IN_PROGRESS
    assert live_workspace.path.is_dir()
    assert sorted(_branches(git_repo)) == ["main", "task/live"]
    agents = {agent.agent_id: agent.status for agent in starting.coordinator.list_agents()}
    assert agents == {"live-agent": AgentStatus.BUSY, "crashed-agent": AgentStatus.OFFLINE}
