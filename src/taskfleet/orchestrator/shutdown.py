"""Signal-driven exit state machine guarding in-flight work."""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum
from types import TracebackType
from typing import Protocol

logger = logging.getLogger(__name__)

FORCE_EXIT_CODE = 130
EMERGENCY_EXIT_CODE = 1

Hook = Callable[[], None]


class ExitState(str, Enum):
    NORMAL = "normal"
    CONFIRMATION_PENDING = "confirmation_pending"
    EXECUTING = "executing"
    FORCE_EXIT = "force_exit"


class SignalSource(Protocol):
    """Delivers interrupt, terminate and fatal-error events to the guard."""

    def install(
        self,
        *,
        on_interrupt: Hook,
        on_terminate: Hook,
        on_fatal: Callable[[BaseException], None],
    ) -> None: ...

    def uninstall(self) -> None: ...


class ProcessSignalSource:
    """Wire SIGINT/SIGTERM and uncaught exceptions of this process to the guard."""

    def __init__(self) -> None:
        self._original_sigint = None
        self._original_sigterm = None
        self._original_excepthook = None
        self._original_threading_excepthook = None
        self._installed = False

    def install(
        self,
        *,
        on_interrupt: Hook,
        on_terminate: Hook,
        on_fatal: Callable[[BaseException], None],
    ) -> None:
        if self._installed:
            return

        def _excepthook(
            exc_type: type[BaseException],
            exc: BaseException,
            traceback: TracebackType | None,
        ) -> None:
            on_fatal(exc)

        def _threading_excepthook(args: threading.ExceptHookArgs) -> None:
            if args.exc_value is not None and not isinstance(args.exc_value, SystemExit):
                on_fatal(args.exc_value)

        self._original_excepthook = sys.excepthook
        self._original_threading_excepthook = threading.excepthook
        sys.excepthook = _excepthook
        threading.excepthook = _threading_excepthook

        if hasattr(signal, "SIGINT"):
            try:
                self._original_sigint = signal.getsignal(signal.SIGINT)
                self._original_sigterm = signal.getsignal(signal.SIGTERM)
                signal.signal(signal.SIGINT, lambda _signum, _frame: on_interrupt())
                signal.signal(signal.SIGTERM, lambda _signum, _frame: on_terminate())
            except ValueError:
                # Signal handlers can only be installed in main thread.
                logger.debug("Not on the main thread; process signals stay unhandled.")
                self._original_sigint = None
                self._original_sigterm = None
        self._installed = True

    def uninstall(self) -> None:
        if not self._installed:
            return
        if self._original_excepthook is not None:
            sys.excepthook = self._original_excepthook
        if self._original_threading_excepthook is not None:
            threading.excepthook = self._original_threading_excepthook
        try:
            if self._original_sigint is not None:
                signal.signal(signal.SIGINT, self._original_sigint)
            if self._original_sigterm is not None:
                signal.signal(signal.SIGTERM, self._original_sigterm)
        except ValueError:
            pass
        self._installed = False


class ShutdownGuard:
    """Turn interrupts into a blocked, graceful or forced exit.

    - Interrupt while idle: exit right away.
    - First interrupt while work is in flight: warn and keep running.
    - Second interrupt within ``double_interrupt_window_seconds``: force exit.
    - Terminate: save state, stop executions, exit.
    - Uncaught error: quick save, then hard exit with a non-zero code.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        in_flight: Callable[[], int],
        save_state: Hook | None = None,
        stop_execution: Hook | None = None,
        quick_save: Hook | None = None,
        signal_source: SignalSource | None = None,
        clock: Callable[[], float] = time.monotonic,
        exit_process: Callable[[int], None] = sys.exit,
        hard_exit: Callable[[int], None] = os._exit,
        double_interrupt_window_seconds: float = 1.0,
    ) -> None:
        self._in_flight = in_flight
        self._save_state = save_state
        self._stop_execution = stop_execution
        self._quick_save = quick_save
        self._signal_source = signal_source or ProcessSignalSource()
        self._clock = clock
        self._exit_process = exit_process
        self._hard_exit = hard_exit
        self.double_interrupt_window_seconds = double_interrupt_window_seconds
        self._state = ExitState.NORMAL
        self._last_interrupt_at: float | None = None
        self._lock = threading.RLock()

    @property
    def state(self) -> ExitState:
        with self._lock:
            self._sync_state()
            return self._state

    def install(self) -> None:
        self._signal_source.install(
            on_interrupt=self.handle_interrupt,
            on_terminate=self.handle_terminate,
            on_fatal=self.handle_fatal,
        )

    def uninstall(self) -> None:
        self._signal_source.uninstall()

    @contextmanager
    def guarding(self) -> Iterator[ShutdownGuard]:
        self.install()
        try:
            yield self
        finally:
            self.uninstall()

    def is_busy(self) -> bool:
        return self._in_flight() > 0

    def handle_interrupt(self) -> bool:
        """React to an interrupt; returns True when the process was told to exit."""

        with self._lock:
            now = self._clock()
            previous = self._last_interrupt_at
            self._last_interrupt_at = now
            self._sync_state()

            if self._state is ExitState.FORCE_EXIT:
                return self._exit(FORCE_EXIT_CODE)
            if not self.is_busy():
                logger.info("Interrupt received while idle; exiting.")
                self._state = ExitState.NORMAL
                return self._exit(0)
            if previous is not None and now - previous <= self.double_interrupt_window_seconds:
                self._state = ExitState.FORCE_EXIT
                logger.warning("Second interrupt received; forcing exit with work in flight.")
                return self._exit(FORCE_EXIT_CODE)

            self._state = ExitState.EXECUTING
            logger.warning(
                "Tasks are still running (%d in flight). "
                "Interrupt again within %.1fs to force exit.",
                self._in_flight(),
                self.double_interrupt_window_seconds,
            )
            return False

    def handle_terminate(self) -> None:
        """Graceful sequence: save state, stop executions, exit."""

        logger.info("Terminate received; shutting down gracefully.")
        self._run_graceful_sequence()

    def handle_fatal(self, error: BaseException) -> None:
        """Emergency path: best-effort quick save, then immediate hard exit."""

        logger.critical("Uncaught error, emergency shutdown: %r", error)
        if self._quick_save is not None:
            try:
                self._quick_save()
            except Exception:  # noqa: BLE001
                logger.exception("Emergency state save failed")
        self._hard_exit(EMERGENCY_EXIT_CODE)

    def request_exit(self) -> bool:
        """Ask to leave; returns True when nothing is running and exit may proceed."""

        with self._lock:
            if not self.is_busy():
                self._state = ExitState.NORMAL
                return True
            self._state = ExitState.CONFIRMATION_PENDING
            return False

    def confirm_exit(self) -> None:
        with self._lock:
            if self._state is not ExitState.CONFIRMATION_PENDING:
                return
        self._run_graceful_sequence()

    def cancel_exit(self) -> None:
        with self._lock:
            if self._state is ExitState.CONFIRMATION_PENDING:
                self._state = ExitState.EXECUTING if self._in_flight() > 0 else ExitState.NORMAL

    def _run_graceful_sequence(self) -> None:
        for name, hook in (("save state", self._save_state), ("stop", self._stop_execution)):
            if hook is None:
                continue
            try:
                hook()
            except Exception:  # noqa: BLE001
                logger.exception("Shutdown hook %r failed", name)
        self._exit(0)

    def _sync_state(self) -> None:
        busy = self.is_busy()
        if self._state is ExitState.NORMAL and busy:
            self._state = ExitState.EXECUTING
        elif self._state is ExitState.EXECUTING and not busy:
            self._state = ExitState.NORMAL

    def _exit(self, code: int) -> bool:
        self._exit_process(code)
        return True
