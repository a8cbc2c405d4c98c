"""Relay-first provider for the ``gool`` (WARP-in-WARP) engine mode.

The session shape is identical to :class:`FallbackSearchTunnel`. What differs
is how a candidate proves itself: in ``gool`` mode the engine often opens its
SOCKS5 port well before traffic actually flows, so a candidate is accepted
only once a plain HTTP request through that port gets a status line back.
"""

from __future__ import annotations

import threading
import time
from typing import Final
from urllib.parse import urlsplit

from loguru import logger

from bulletproof.core.engine.tunnel import TunnelEngine, TunnelMode
from bulletproof.core.exceptions import BulletproofError, ProtocolError, ReadinessTimeout
from bulletproof.core.lib.socks_client import http_get_via
from bulletproof.core.providers.fallback import FallbackSearchTunnel
from bulletproof.core.search import ReadinessCheck, raise_if_exited, wait_engine_port

FALLBACK_PROBE_URL: Final = "http://cp.cloudflare.com/"
HTTP_PROBE_TIMEOUT: Final = 10.0  # seconds per GET
HTTP_PROBE_INTERVAL: Final = 1.0  # seconds between GETs


def probe_target(test_url: str | None) -> tuple[str, str]:
    """Host and path for the HTTP probe; only plain ``http://`` URLs qualify."""
    url = test_url if test_url and test_url.lower().startswith("http://") else FALLBACK_PROBE_URL
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return parts.hostname or urlsplit(FALLBACK_PROBE_URL).hostname, path


def wait_tcp_and_http(engine: TunnelEngine, test_url: str | None, timeout: float, cancel: threading.Event) -> None:
    """Wait for the engine port, then for an HTTP answer through it.

    Raises:
        ProcessExit: If the engine exited while waiting
        ReadinessTimeout: If either probe did not pass within ``timeout``
    """
    deadline = time.monotonic() + timeout
    wait_engine_port(engine, test_url, timeout, cancel)

    host, path = probe_target(test_url)
    last_error: BaseException | None = None
    while not cancel.is_set() and engine.active:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        try:
            status_line, _ = http_get_via(engine.bind, host, path, timeout=min(HTTP_PROBE_TIMEOUT, remaining))
        except (BulletproofError, OSError) as e:
            last_error = e
        else:
            if status_line.startswith("HTTP/"):
                logger.debug(f"HTTP probe via {engine.bind} answered: {status_line}")
                return
            last_error = ProtocolError(f"unexpected probe reply: {status_line!r}")
        if cancel.wait(HTTP_PROBE_INTERVAL):
            break
    if last_error is not None:
        logger.debug(f"HTTP probe via {engine.bind} kept failing: {last_error}")
    if not cancel.is_set():
        raise_if_exited(engine)
    raise ReadinessTimeout(engine.bind, timeout)


class DualProbeTunnel(FallbackSearchTunnel):
    """``gool``: relay first; candidates must pass a TCP and an HTTP probe."""

    kind = "gool"
    mode = TunnelMode.GOOL

    def readiness_check(self) -> ReadinessCheck:
        return self._wait_ready or wait_tcp_and_http
