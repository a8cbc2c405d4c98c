"""Local network helpers.

This module provides the small socket-level building blocks the rest of the
package is made of:
- ``host:port`` parsing and formatting (IPv6 literals in brackets)
- Fast TCP reachability probes
- Bounded, cancellable readiness waits for a port to start accepting
- Bind availability checks used by bind selection

Example:
    if probe_tcp("127.0.0.1:8086", timeout=0.5):
        print("engine SOCKS5 port is up")
"""

import os
import socket
import threading
import time
from collections.abc import Callable
from typing import Final

from bulletproof.core.exceptions import ReadinessTimeout

PROBE_TIMEOUT: Final = 0.5  # seconds per connect attempt
POLL_INTERVAL: Final = 0.25  # seconds between readiness attempts


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` / ``[v6]:port`` into its parts.

    Raises:
        ValueError: If the address has no valid port
    """
    address = address.strip()
    if address.startswith("["):
        host, sep, port = address[1:].partition("]:")
        if not sep:
            raise ValueError(f"invalid address: {address!r}")
    else:
        host, sep, port = address.rpartition(":")
        if not sep or not host:
            raise ValueError(f"invalid address: {address!r}")
    try:
        port_number = int(port)
    except ValueError as exc:
        raise ValueError(f"invalid port in address: {address!r}") from exc
    if not 0 <= port_number <= 65535:
        raise ValueError(f"port out of range in address: {address!r}")
    return host, port_number


def join_host_port(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def probe_tcp(address: str, timeout: float = PROBE_TIMEOUT) -> bool:
    """Return True if a TCP connect to ``address`` succeeds within ``timeout``."""
    try:
        host, port = split_host_port(address)
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except (OSError, ValueError):
        return False


def wait_port(
    address: str,
    timeout: float,
    cancel: threading.Event | None = None,
    *,
    interval: float = POLL_INTERVAL,
    alive: Callable[[], bool] | None = None,
) -> None:
    """Block until ``address`` accepts TCP connections.

    Args:
        address: ``host:port`` to poll
        timeout: Overall bound in seconds
        cancel: Optional event; when set the wait gives up early
        interval: Pause between attempts
        alive: Optional check run before each attempt; the wait gives up
            as soon as it returns False

    Raises:
        ReadinessTimeout: If the port never opened (or the wait was cancelled)
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cancel is not None and cancel.is_set():
            break
        if alive is not None and not alive():
            break
        if probe_tcp(address, timeout=min(PROBE_TIMEOUT, max(0.05, deadline - time.monotonic()))):
            return
        if cancel is not None:
            if cancel.wait(interval):
                break
        else:
            time.sleep(interval)
    raise ReadinessTimeout(address, timeout)


def try_listen(address: str) -> bool:
    """Return True if ``address`` can be bound right now."""
    try:
        host, port = split_host_port(address)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(1)
    except (OSError, ValueError):
        return False
    return True
