"""Shared test fixtures."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from taskfleet.orchestrator.coordinator import Coordinator
from taskfleet.orchestrator.repository import OrchestratorDatabase

_SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
_ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m taskfleet.orchestrator.backend.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def database(tmp_path: Path):
    """Migrated SQLite store in a temporary directory."""

    db = OrchestratorDatabase(tmp_path / "taskfleet.db")
    db.init_schema()
    yield db
    db.close()


@pytest.fixture()
def coordinator(database: OrchestratorDatabase) -> Coordinator:
    return Coordinator(database)


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(  # noqa: S603
        ["git", *args],  # noqa: S607
        cwd=repo,
        text=True,
        capture_output=True,
        check=True,
    )
    return result.stdout.strip()


@pytest.fixture()
def echo_agent_command(monkeypatch: pytest.MonkeyPatch) -> str:
    """Command template running the local echo agent with this interpreter."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(part for part in (str(_SRC_ROOT), existing) if part),
    )
    return _ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Repository on ``main`` with a single commit and a local identity."""

    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-b", "main")
    _git(repo, "config", "user.email", "fleet@example.com")
    _git(repo, "config", "user.name", "Fleet Tests")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# demo\n", "utf-8")
    (repo / ".gitignore").write_text(".worktrees/\n", "utf-8")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-m", "initial")
    return repo
