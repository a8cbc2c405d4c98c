"""Candidate search for a working tunnel engine configuration.

Restrictive networks break the engine in different ways, so the search tries
configurations strictly in order until one produces a SOCKS5 port:

- Phase 1: every connectivity probe URL, in priority order, with the
  endpoint the caller asked for (or the engine's own choice)
- Phase 2: only if phase 1 is exhausted, scan for endpoints and try the
  best ones combined with the first few probe URLs

Each attempt gets a fresh engine. A failed attempt stops its engine before
the next one starts, so at most one engine is alive at a time.

Example:
    search = CandidateSearch(base_config, candidate_test_urls(None, settings))
    result = search.run()  # blocks; call search.cancel() from another thread
    print(result.describe())
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Final

from loguru import logger

from bulletproof.core.config import DEFAULT_PROBE_TIMEOUT, DEFAULT_SCAN_PROBE_TIMEOUT, Settings
from bulletproof.core.engine.process import ProcessRunner
from bulletproof.core.engine.scan import Endpoint, scan_endpoints
from bulletproof.core.engine.tunnel import TunnelConfig, TunnelEngine
from bulletproof.core.exceptions import (
    BulletproofError,
    ProcessExit,
    ReadinessTimeout,
    SearchCancelled,
    SearchExhausted,
)
from bulletproof.core.network import wait_port

DEFAULT_TEST_URLS: Final = (
    "http://connectivity.cloudflareclient.com/cdn-cgi/trace",
    "http://connectivitycheck.gstatic.com/generate_204",
    "http://1.1.1.1/cdn-cgi/trace",
    "https://1.1.1.1/cdn-cgi/trace",
    "http://detectportal.firefox.com/success.txt",
    "http://neverssl.com/",
    "http://cp.cloudflare.com/",
    "http://example.com/",
)
MAX_SCAN_ENDPOINTS: Final = 15
SCAN_URL_LIMIT: Final = 3

EngineFactory = Callable[[TunnelConfig], TunnelEngine]
ReadinessCheck = Callable[[TunnelEngine, str | None, float, threading.Event], None]
ScanFunction = Callable[[str | None, threading.Event], Sequence[Endpoint]]


def candidate_test_urls(explicit: str | None, settings: Settings) -> tuple[str, ...]:
    """Order probe URLs: explicit, env single, env list, defaults (deduplicated)."""
    ordered: list[str] = []
    for url in (explicit, settings.test_url, *settings.test_urls, *DEFAULT_TEST_URLS):
        url = (url or "").strip()
        if url and url not in ordered:
            ordered.append(url)
    return tuple(ordered)


def wait_engine_port(engine: TunnelEngine, test_url: str | None, timeout: float, cancel: threading.Event) -> None:
    """Default readiness check: the engine's SOCKS5 port accepts TCP.

    The wait ends early when the engine exits, and a port that answers after
    the engine is gone belongs to someone else.

    Raises:
        ProcessExit: If the engine exited before its port opened
        ReadinessTimeout: If the port did not open within ``timeout``
    """
    try:
        wait_port(engine.bind, timeout, cancel, alive=lambda: engine.active)
    except ReadinessTimeout:
        raise_if_exited(engine)
        raise
    raise_if_exited(engine)


def raise_if_exited(engine: TunnelEngine) -> None:
    """Raise why ``engine`` is no longer running, if it ended on its own."""
    if engine.active:
        return
    raise engine.exit_error or engine.last_error or ProcessExit(engine.name, -1)


@dataclass(frozen=True)
class SearchResult:
    engine: TunnelEngine
    test_url: str
    endpoint: str | None
    attempts: int

    def describe(self) -> str:
        if self.endpoint:
            return f"probe={self.test_url}, ep={self.endpoint}"
        return f"probe={self.test_url}"


class CandidateSearch:
    """Try engine configurations in order until one becomes ready."""

    def __init__(
        self,
        base: TunnelConfig,
        test_urls: Sequence[str],
        *,
        runner: ProcessRunner | None = None,
        engine_factory: EngineFactory | None = None,
        wait_ready: ReadinessCheck = wait_engine_port,
        scan: ScanFunction = scan_endpoints,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        scan_probe_timeout: float = DEFAULT_SCAN_PROBE_TIMEOUT,
        max_endpoints: int = MAX_SCAN_ENDPOINTS,
        scan_url_limit: int = SCAN_URL_LIMIT,
    ) -> None:
        self.base = base
        self.test_urls = tuple(test_urls)
        self._engine_factory = engine_factory or (lambda config: TunnelEngine(config, runner))
        self._wait_ready = wait_ready
        self._scan = scan
        self.probe_timeout = probe_timeout
        self.scan_probe_timeout = scan_probe_timeout
        self.max_endpoints = max_endpoints
        self.scan_url_limit = scan_url_limit

        self.attempts = 0
        self._last_error: BaseException | None = None
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._current: TunnelEngine | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Abort the search and stop the engine currently under test."""
        with self._lock:
            self._cancel.set()
            engine = self._current
        if engine is not None:
            engine.stop()

    def _attempt(self, config: TunnelConfig, timeout: float) -> TunnelEngine | None:
        engine = self._engine_factory(config)
        with self._lock:
            if self._cancel.is_set():
                raise SearchCancelled("search cancelled")
            self._current = engine
        self.attempts += 1
        logger.info(
            f"Attempt {self.attempts}: probe={config.test_url} endpoint={config.endpoint or 'auto'} "
            f"(ready within {timeout:g}s)"
        )
        try:
            engine.start()
            self._wait_ready(engine, config.test_url, timeout, self._cancel)
        except (BulletproofError, OSError) as exc:
            engine.stop()
            with self._lock:
                self._current = None
            if self._cancel.is_set():
                raise SearchCancelled("search cancelled") from exc
            logger.info(f"Attempt {self.attempts} failed: {exc}")
            self._last_error = exc
            return None

        with self._lock:
            self._current = None
            cancelled = self._cancel.is_set()
        if cancelled:
            engine.stop()
            raise SearchCancelled("search cancelled")
        return engine

    def _scan_endpoints(self) -> list[Endpoint]:
        try:
            endpoints = list(self._scan(self.base.binary, self._cancel))
        except (BulletproofError, OSError) as exc:
            logger.warning(f"Endpoint scan failed: {exc}")
            if self._last_error is None:
                self._last_error = exc
            return []
        return endpoints[: self.max_endpoints]

    def run(self) -> SearchResult:
        """Run both phases and return the first engine that became ready.

        Raises:
            SearchExhausted: If no candidate worked
            SearchCancelled: If :meth:`cancel` was called
        """
        for url in self.test_urls:
            engine = self._attempt(replace(self.base, test_url=url), self.probe_timeout)
            if engine is not None:
                return SearchResult(engine, url, self.base.endpoint, self.attempts)

        if self._cancel.is_set():
            raise SearchCancelled("search cancelled")
        logger.info("Probe URLs exhausted; scanning for endpoints")

        scan_urls = self.test_urls[: self.scan_url_limit]
        for endpoint in self._scan_endpoints():
            for url in scan_urls:
                config = replace(self.base, endpoint=endpoint.address, test_url=url)
                engine = self._attempt(config, self.scan_probe_timeout)
                if engine is not None:
                    return SearchResult(engine, url, endpoint.address, self.attempts)

        if self._cancel.is_set():
            raise SearchCancelled("search cancelled")
        raise SearchExhausted(self._last_error)
