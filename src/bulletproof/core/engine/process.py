"""Process spawning behind a minimal interface.

Engines never call :mod:`subprocess` directly. They go through a
:class:`ProcessRunner`, which returns a :class:`ProcessHandle` offering only
``wait`` and ``kill``. Tests substitute fakes for both so the supervision and
search logic runs without real binaries.
"""

from __future__ import annotations

import contextlib
import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import IO, Protocol

import psutil
from loguru import logger


class ProcessHandle(Protocol):
    """A started child process."""

    @property
    def pid(self) -> int: ...

    def wait(self) -> int:
        """Block until the process exits and return its exit code."""
        ...

    def kill(self) -> None:
        """Forcibly terminate the process."""
        ...


class ProcessRunner(Protocol):
    def start(self, binary: str, args: Sequence[str], *, log_path: Path | None = None) -> ProcessHandle:
        """Spawn ``binary`` with ``args``; raise ``OSError`` if it cannot be executed."""
        ...


def sanitize_env(environ: Mapping[str, str]) -> dict[str, str]:
    """Drop ``IDENTITY`` and ``*_IDENTITY`` variables.

    Some engine builds parse environment variables as flags and abort on an
    unexpected ``identity`` flag.
    """
    clean: dict[str, str] = {}
    for key, value in environ.items():
        upper = key.upper()
        if upper == "IDENTITY" or upper.endswith("_IDENTITY"):
            continue
        clean[key] = value
    return clean


class SubprocessHandle:
    """:class:`ProcessHandle` backed by :class:`subprocess.Popen`."""

    def __init__(self, popen: subprocess.Popen, log_file: IO[str] | None = None) -> None:
        self._popen = popen
        self._log_file = log_file

    @property
    def pid(self) -> int:
        return self._popen.pid

    def wait(self) -> int:
        try:
            return self._popen.wait()
        finally:
            if self._log_file is not None:
                with contextlib.suppress(OSError):
                    self._log_file.close()

    def kill(self) -> None:
        # Engines may fork helpers; take the whole tree down.
        try:
            children = psutil.Process(self._popen.pid).children(recursive=True)
        except psutil.Error:
            children = []
        for child in children:
            with contextlib.suppress(psutil.Error):
                child.kill()
        with contextlib.suppress(ProcessLookupError):
            self._popen.kill()


class SubprocessRunner:
    """Default :class:`ProcessRunner`.

    Without a log path the child inherits our stdout/stderr. With one, both
    streams are appended to the file after a one-line annotation of the
    command being started.
    """

    def start(self, binary: str, args: Sequence[str], *, log_path: Path | None = None) -> SubprocessHandle:
        command = [binary, *args]
        log_file: IO[str] | None = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = log_path.open("a", encoding="utf-8")
            log_file.write(f"bulletproof: starting {shlex.join(command)}\n")
            log_file.flush()

        logger.debug(f"Spawning {shlex.join(command)}")
        try:
            popen = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT if log_file is not None else None,
                env=sanitize_env(os.environ),
            )
        except OSError:
            if log_file is not None:
                log_file.close()
            raise
        logger.info(f"Started {Path(binary).name} (pid {popen.pid})")
        return SubprocessHandle(popen, log_file)
