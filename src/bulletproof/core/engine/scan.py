"""Endpoint scanning through the engine's ``--scan`` mode."""

from __future__ import annotations

import re
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Final

from loguru import logger

from bulletproof.core.engine.binaries import resolve_warpplus
from bulletproof.core.exceptions import SpawnFailed

SCAN_TIMEOUT: Final = 120.0  # seconds
SCAN_POLL_INTERVAL: Final = 0.25  # seconds between cancel checks

_ENDPOINT_LINE = re.compile(r"^\s*((?:\d{1,3}\.){3}\d{1,3}:\d+|\[[0-9a-fA-F:]+\]:\d+)(?:\s+(\d+))?\s*$")


@dataclass(frozen=True)
class Endpoint:
    address: str
    score: int = 0


def parse_scan_output(output: str) -> list[Endpoint]:
    """Extract ``ip:port [score]`` lines, keeping their order."""
    endpoints: list[Endpoint] = []
    seen: set[str] = set()
    for line in output.splitlines():
        match = _ENDPOINT_LINE.match(line)
        if not match or match.group(1) in seen:
            continue
        seen.add(match.group(1))
        endpoints.append(Endpoint(match.group(1), int(match.group(2) or 0)))
    return endpoints


def scan_endpoints(
    binary: str | None = None,
    cancel: threading.Event | None = None,
    timeout: float = SCAN_TIMEOUT,
) -> list[Endpoint]:
    """Run ``<engine> --scan`` and return the endpoints it printed.

    The scan is killed when ``cancel`` is set or ``timeout`` passes; whatever
    it printed up to then is still parsed.

    Raises:
        SpawnFailed: If the engine binary cannot be executed
    """
    resolved = resolve_warpplus(binary)
    logger.info(f"Scanning endpoints with {resolved}")
    try:
        process = subprocess.Popen(
            [resolved, "--scan"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
        )
    except OSError as exc:
        raise SpawnFailed(resolved, exc) from exc

    deadline = time.monotonic() + timeout
    while True:
        try:
            output, _ = process.communicate(timeout=SCAN_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                reason = "cancelled"
            elif time.monotonic() >= deadline:
                reason = "timed out"
            else:
                continue
        logger.info(f"Endpoint scan {reason}; stopping {resolved}")
        process.kill()
        output, _ = process.communicate()
        break
    endpoints = parse_scan_output(output or "")
    logger.info(f"Scan returned {len(endpoints)} endpoints")
    return endpoints
