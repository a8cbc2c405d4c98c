"""Shared supervision for external engine processes.

An engine instance walks through Idle -> Starting -> Active -> Exited/Killed:
- ``start()`` prepares arguments (and any files), spawns through the runner
  and, only if the spawn succeeded, becomes active and starts a monitor thread
- the monitor thread blocks on the process and records how it ended
- ``stop()`` kills an active process without waiting for a graceful exit
- callbacks registered with ``on_exit()`` run when the process ends on its
  own, never after ``stop()``

``start()`` on an active engine and ``stop()`` on an inactive one are no-ops.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from loguru import logger

from bulletproof.core.engine.process import ProcessHandle, ProcessRunner, SubprocessRunner
from bulletproof.core.exceptions import ProcessExit, SpawnFailed

ExitCallback = Callable[[BaseException], None]


class SupervisedEngine(ABC):
    """Base class for engines that supervise exactly one child process."""

    name = "engine"

    def __init__(self, binary: str, runner: ProcessRunner | None = None) -> None:
        self.binary = binary
        self._runner: ProcessRunner = runner or SubprocessRunner()
        self._lock = threading.Lock()
        self._process: ProcessHandle | None = None
        self._active = False
        self._killed = False
        self._last_error: BaseException | None = None
        self._exit_error: BaseException | None = None
        self._exit_callbacks: list[ExitCallback] = []
        self._monitor: threading.Thread | None = None

    @abstractmethod
    def build_args(self) -> list[str]:
        """Return the argument list for the next spawn."""

    def prepare(self) -> None:
        """Hook run under the lock before spawning (write config files, ...)."""

    @property
    def log_path(self) -> Path | None:
        return None

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def last_error(self) -> BaseException | None:
        with self._lock:
            return self._last_error

    @property
    def exit_error(self) -> BaseException | None:
        """Why the last run ended on its own; None while running or after ``stop()``."""
        with self._lock:
            return self._exit_error

    @property
    def pid(self) -> int | None:
        with self._lock:
            return self._process.pid if self._process is not None else None

    def start(self) -> None:
        """Spawn the process unless it is already running.

        Raises:
            SpawnFailed: If the binary could not be executed
            UnknownMode: If the configuration names an unsupported mode
        """
        with self._lock:
            if self._active:
                return
            args = self.build_args()
            try:
                self.prepare()
            except OSError as exc:
                self._last_error = exc
                raise
            try:
                process = self._runner.start(self.binary, args, log_path=self.log_path)
            except OSError as exc:
                error = SpawnFailed(self.binary, exc)
                self._last_error = error
                raise error from exc
            self._process = process
            self._active = True
            self._killed = False
            self._last_error = None
            self._exit_error = None
            self._exit_callbacks = []
            self._monitor = threading.Thread(
                target=self._watch,
                args=(process,),
                name=f"{self.name}-monitor-{process.pid}",
                daemon=True,
            )
            self._monitor.start()

    def stop(self) -> None:
        """Kill the running process; no-op when inactive."""
        with self._lock:
            if not self._active or self._process is None:
                return
            self._killed = True
            process = self._process
        logger.info(f"Stopping {self.name} (pid {process.pid})")
        process.kill()

    def on_exit(self, callback: ExitCallback) -> None:
        """Call ``callback`` with the error once the current run ends on its own.

        A run that already ended that way calls it right away. Nothing is
        called for a run ended by ``stop()``.
        """
        with self._lock:
            if self._active:
                self._exit_callbacks.append(callback)
                return
            error = self._exit_error
        if error is not None:
            callback(error)

    def join(self, timeout: float | None = None) -> None:
        """Wait for the monitor thread (mostly useful in tests)."""
        monitor = self._monitor
        if monitor is not None:
            monitor.join(timeout)

    def _watch(self, process: ProcessHandle) -> None:
        try:
            returncode = process.wait()
            error: BaseException | None = None
        except Exception as exc:  # noqa: BLE001 - recorded, never raised from a daemon thread
            returncode = -1
            error = exc
        with self._lock:
            if process is not self._process:
                return
            killed = self._killed
            if error is None and (returncode != 0 or killed):
                error = ProcessExit(self.name, returncode, killed=killed)
            self._last_error = error
            self._active = False
            self._process = None
            callbacks, self._exit_callbacks = self._exit_callbacks, []
            if not killed:
                self._exit_error = error or ProcessExit(self.name, returncode)
                exit_error = self._exit_error
        if killed:
            logger.debug(f"{self.name} stopped: {error}")
            return
        logger.warning(f"{self.name} terminated unexpectedly: {exit_error}")
        for callback in callbacks:
            try:
                callback(exit_error)
            except Exception:  # noqa: BLE001 - the monitor thread must finish
                logger.exception(f"{self.name} exit callback failed")
