"""Per-task git worktrees so concurrent workers never share a checkout."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from taskfleet.orchestrator.errors import IsolationError

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class Workspace:
    """Isolated checkout bound to one task branch."""

    task_id: str
    branch: str
    path: Path
    base_revision: str
    head_revision: str


class WorkspaceIsolator:
    """Create, commit, merge and remove per-task git worktrees.

    Operations that touch the shared repository (branches, the worktree list,
    the main checkout) are serialized; work inside a worktree is not.
    """

    def __init__(  # noqa: PLR0913
        self,
        repo_root: Path,
        *,
        main_branch: str = "main",
        worktrees_dir: str = ".worktrees",
        name_prefix: str = "task",
        commit_prefix: str = "[agent]",
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.main_branch = main_branch
        self.worktrees_root = self.repo_root / worktrees_dir
        self.name_prefix = name_prefix
        self.commit_prefix = commit_prefix
        self._lock = threading.Lock()

    def branch_name(self, task_id: str) -> str:
        return f"{self.name_prefix}/{_safe_name(task_id)}"

    def workspace_path(self, task_id: str) -> Path:
        return self.worktrees_root / f"{self.name_prefix}-{_safe_name(task_id)}"

    def create(self, task_id: str) -> Workspace:
        """Branch off the main line and check the branch out in a fresh worktree.

        A failed step removes whatever was created so far and raises
        ``IsolationError``.
        """

        branch = self.branch_name(task_id)
        path = self.workspace_path(task_id)
        with self._lock:
            if path.exists():
                raise IsolationError(f"Workspace already exists for task {task_id}: {path}")
            branch_created = False
            try:
                self.worktrees_root.mkdir(parents=True, exist_ok=True)
                self._run_git(["branch", branch, self.main_branch])
                branch_created = True
                self._run_git(["worktree", "add", str(path), branch])
                revision = self._run_git(["rev-parse", "HEAD"], cwd=path).stdout.strip()
            except (IsolationError, OSError) as error:
                try:
                    self._rollback_create(path=path, branch=branch if branch_created else None)
                except IsolationError as rollback_error:
                    logger.warning("Workspace rollback failed for %s: %s", task_id, rollback_error)
                if isinstance(error, IsolationError):
                    raise
                raise IsolationError(f"Cannot create workspace for {task_id}: {error}") from error

        logger.debug("Created workspace %s on %s at %s", path, branch, revision[:8])
        return Workspace(
            task_id=task_id,
            branch=branch,
            path=path,
            base_revision=revision,
            head_revision=revision,
        )

    def commit(self, workspace: Workspace, message: str) -> str:
        """Stage everything and commit; no-op returning HEAD when nothing changed."""

        self._run_git(["add", "-A"], cwd=workspace.path)
        status = self._run_git(["status", "--porcelain"], cwd=workspace.path).stdout
        if not status.strip():
            return workspace.head_revision

        self._run_git(
            ["commit", "--no-verify", "-m", f"{self.commit_prefix} {message}".strip()],
            cwd=workspace.path,
        )
        workspace.head_revision = self._run_git(
            ["rev-parse", "HEAD"],
            cwd=workspace.path,
        ).stdout.strip()
        return workspace.head_revision

    def merge(self, workspace: Workspace) -> str:
        """Merge the task branch into the main line with a merge commit.

        Raises ``IsolationError`` on conflict after aborting the merge.
        """

        with self._lock:
            if workspace.head_revision == workspace.base_revision:
                return self._run_git(["rev-parse", self.main_branch]).stdout.strip()
            self._run_git(["checkout", self.main_branch])
            try:
                self._run_git(
                    [
                        "merge",
                        "--no-ff",
                        workspace.branch,
                        "-m",
                        f"Merge agent work: {workspace.task_id}",
                    ],
                )
            except IsolationError:
                self._run_git(["merge", "--abort"], check=False)
                raise
            return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def remove(self, workspace: Workspace) -> None:
        """Detach and delete the worktree and its branch; failures are only logged."""

        with self._lock:
            try:
                self._remove_locked(path=workspace.path, branch=workspace.branch)
            except IsolationError as error:
                logger.warning("Workspace cleanup failed for %s: %s", workspace.task_id, error)

    def cleanup_all(self, *, keep: Iterable[str] = ()) -> list[str]:
        """Remove every worktree and branch carrying this isolator's prefix.

        Workspaces of the task ids in ``keep`` are left in place.
        """

        kept_paths = {self.workspace_path(task_id) for task_id in keep}
        kept_branches = {self.branch_name(task_id) for task_id in keep}
        removed: list[str] = []
        with self._lock:
            for path, branch in self._list_prefixed_worktrees():
                if branch in kept_branches or path.resolve() in kept_paths:
                    continue
                self._remove_locked(path=path, branch=branch)
                removed.append(branch or str(path))
            for branch in self._list_prefixed_branches():
                if branch in kept_branches:
                    continue
                result = self._run_git(["branch", "-D", branch], check=False)
                if result.returncode == 0:
                    removed.append(branch)
            if self.worktrees_root.exists():
                for leftover in self.worktrees_root.glob(f"{self.name_prefix}-*"):
                    if leftover not in kept_paths:
                        shutil.rmtree(leftover, ignore_errors=True)
            self._run_git(["worktree", "prune"], check=False)
        if removed:
            logger.info("Cleaned up %d stale workspaces", len(removed))
        return removed

    def list_workspaces(self) -> list[tuple[Path, str | None]]:
        with self._lock:
            return self._list_prefixed_worktrees()

    def _remove_locked(self, *, path: Path, branch: str | None) -> None:
        result = self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        if result.returncode != 0:
            logger.warning("git worktree remove failed for %s: %s", path, result.stderr.strip())
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        self._run_git(["worktree", "prune"], check=False)
        if branch and branch != self.main_branch:
            result = self._run_git(["branch", "-D", branch], check=False)
            if result.returncode != 0:
                logger.warning("git branch -D %s failed: %s", branch, result.stderr.strip())

    def _rollback_create(self, *, path: Path, branch: str | None) -> None:
        self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        self._run_git(["worktree", "prune"], check=False)
        if branch is not None:
            self._run_git(["branch", "-D", branch], check=False)

    def _list_prefixed_worktrees(self) -> list[tuple[Path, str | None]]:
        output = self._run_git(["worktree", "list", "--porcelain"]).stdout
        entries: list[tuple[Path, str | None]] = []
        current_path: Path | None = None
        current_branch: str | None = None
        for line in [*output.splitlines(), ""]:
            if line.startswith("worktree "):
                current_path = Path(line.removeprefix("worktree ").strip())
                current_branch = None
            elif line.startswith("branch "):
                current_branch = line.removeprefix("branch ").strip().removeprefix("refs/heads/")
            elif not line.strip() and current_path is not None:
                in_root = current_path.parent.name == self.worktrees_root.name
                if in_root and current_path.name.startswith(f"{self.name_prefix}-"):
                    entries.append((current_path, current_branch))
                current_path = None
                current_branch = None
        return entries

    def _list_prefixed_branches(self) -> list[str]:
        output = self._run_git(
            ["branch", "--list", f"{self.name_prefix}/*", "--format=%(refname:short)"],
        ).stdout
        return [line.strip() for line in output.splitlines() if line.strip()]

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                ["git", "--no-pager", *args],  # noqa: S607
                cwd=cwd or self.repo_root,
                text=True,
                capture_output=True,
                check=False,
            )
        except OSError as error:
            raise IsolationError(f"Cannot run git {' '.join(args)}: {error}") from error
        if check and result.returncode != 0:
            raise IsolationError(
                f"git {' '.join(args)} failed ({result.returncode}): "
                f"{(result.stderr or result.stdout).strip()}",
            )
        return result


def _safe_name(task_id: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("-", task_id).strip("-.")
    if not cleaned:
        raise IsolationError(f"Task id cannot be used as a branch name: {task_id!r}")
    return cleaned
