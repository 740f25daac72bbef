"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import string
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

from taskfleet.orchestrator.backend.base import BackendRunRequest, BackendRunResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
TEMPLATE_PLACEHOLDERS = frozenset({"prompt", "prompt_file", "workdir", "agent"})
POLL_INTERVAL_SECONDS = 0.05
TERMINATE_WAIT_SECONDS = 2


class BackendRunError(RuntimeError):
    """Agent could not be launched; ``transient`` says whether a retry may help."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Launch one agent per task from a command template, inside the task's workspace.

    The prompt is also written to ``prompt.txt`` in the run directory, and the
    agent's stdout and stderr are captured next to it.
    """

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        request.run_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = request.run_dir / "prompt.txt"
        prompt_file.write_text(request.prompt, "utf-8")
        result = BackendRunResult(
            exit_code=0,
            timed_out=False,
            stdout_path=request.run_dir / "stdout.log",
            stderr_path=request.run_dir / "stderr.log",
        )

        run_args, command_head = _build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            prompt_file=prompt_file,
            workdir=request.workdir,
            agent=request.agent_type,
        )
        logger.debug("Launching %s for task %s", command_head, request.task_id)

        try:
            with (
                result.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                result.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    env=_agent_environment(request),
                    cwd=request.workdir,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
                result.exit_code, result.timed_out = _supervise(
                    process,
                    timeout_seconds=request.timeout_seconds,
                    shutdown_requested=request.shutdown_requested,
                    graceful_seconds=max(0, request.graceful_shutdown_seconds or 0),
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"CLI backend command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"CLI backend failed to start: {error}",
                transient=True,
            ) from error
        return result


def _agent_environment(request: BackendRunRequest) -> dict[str, str]:
    env = os.environ.copy()
    env["TASKFLEET_TASK_ID"] = request.task_id
    env["TASKFLEET_AGENT_TYPE"] = request.agent_type
    env["TASKFLEET_WORKDIR"] = str(request.workdir)
    return env


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    workdir: Path,
    agent: str,
) -> tuple[list[str], str]:
    """Render the template into argv, shell-quoting every substituted value."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI backend command template is empty.", transient=False)

    try:
        fields = {name for _, name, _, _ in string.Formatter().parse(stripped) if name is not None}
    except ValueError as error:
        raise BackendRunError(f"Malformed command template: {error}", transient=False) from error
    unknown = sorted(fields - TEMPLATE_PLACEHOLDERS)
    if unknown:
        raise BackendRunError(
            f"Unsupported command template placeholder: {', '.join(unknown)}",
            transient=False,
        )
    if not fields & {"prompt", "prompt_file"}:
        raise BackendRunError(
            "CLI backend command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    argv = shlex.split(
        stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            workdir=shlex.quote(str(workdir)),
            agent=shlex.quote(agent),
        ),
    )
    if not argv:
        raise BackendRunError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv, argv[0]


def _supervise(
    process: subprocess.Popen[str],
    *,
    timeout_seconds: float,
    shutdown_requested: Callable[[], bool] | None,
    graceful_seconds: int,
) -> tuple[int, bool]:
    """Wait for the agent; return ``(exit_code, timed_out)``.

    A shutdown request gives the agent ``graceful_seconds`` before it is
    terminated, and is reported the same way as a deadline.
    """

    deadline = time.monotonic() + timeout_seconds
    shutdown_deadline: float | None = None
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        now = time.monotonic()
        if shutdown_deadline is None and shutdown_requested is not None and shutdown_requested():
            shutdown_deadline = now + graceful_seconds
        if now >= deadline or (shutdown_deadline is not None and now >= shutdown_deadline):
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True
        time.sleep(POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=TERMINATE_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=TERMINATE_WAIT_SECONDS)
