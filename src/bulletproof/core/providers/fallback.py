"""Relay-first WARP provider with candidate search.

Connect never waits for the tunnel. It binds the public relay immediately,
so client applications can be pointed at it right away, and then searches
for a working engine configuration in a background thread:

1. choose and persist the public bind, start the relay chained to the
   engine's reserved internal port
2. attach the integration (PAC or TUN) to the relay
3. run :class:`CandidateSearch` in the background; the status message moves
   from ``warming`` to ``tunnel active`` or ``tunnel pending``

Until the engine answers, the relay either fails requests or dials them
directly, depending on the direct-fallback option.
"""

from __future__ import annotations

import threading
from typing import Final

from loguru import logger

from bulletproof.core.config import Settings
from bulletproof.core.engine.process import ProcessRunner
from bulletproof.core.engine.scan import scan_endpoints
from bulletproof.core.engine.tunnel import INTERNAL_BIND, TunnelEngine, TunnelMode
from bulletproof.core.exceptions import BulletproofError, SearchCancelled, SearchExhausted
from bulletproof.core.lib.relay_server import Relay, RelayConfig
from bulletproof.core.providers.common import (
    ENGINE_LOG,
    BaseProvider,
    HandshakeWatcher,
    best_effort,
    direct_fallback_from,
    state_dir_from,
    tunnel_config_from,
)
from bulletproof.core.search import (
    CandidateSearch,
    ReadinessCheck,
    ScanFunction,
    SearchResult,
    candidate_test_urls,
    wait_engine_port,
)
from bulletproof.core.store import Store, choose_public_bind, persist_bind
from bulletproof.core.system.proxy import SystemProxy
from bulletproof.core.types import ConnectRequest, Status

MSG_WARMING: Final = "connected (relay; tunnel warming)"
MSG_HANDSHAKE: Final = "connected (handshake ok; warming)"
SEARCH_JOIN_TIMEOUT: Final = 5.0  # seconds


class FallbackSearchTunnel(BaseProvider):
    """``warp``: relay first, then search probe URLs and scanned endpoints."""

    kind = "warp"
    mode = TunnelMode.WARP

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        runner: ProcessRunner | None = None,
        system_proxy: SystemProxy | None = None,
        scan: ScanFunction = scan_endpoints,
        wait_ready: ReadinessCheck | None = None,
    ) -> None:
        super().__init__(settings, runner=runner, system_proxy=system_proxy)
        self._scan = scan
        self._wait_ready = wait_ready
        self._relay: Relay | None = None
        self._search: CandidateSearch | None = None
        self._search_thread: threading.Thread | None = None
        self._watcher: HandshakeWatcher | None = None
        self._engine: TunnelEngine | None = None

    @property
    def relay(self) -> Relay | None:
        return self._relay

    @property
    def engine(self) -> TunnelEngine | None:
        with self._lock:
            return self._engine

    def readiness_check(self) -> ReadinessCheck:
        """How a candidate engine proves it is usable."""
        return self._wait_ready or wait_engine_port

    def connect(self, request: ConnectRequest) -> None:
        """Start the relay and launch the background search.

        Raises:
            BindUnavailable: If no public bind is free
            SpawnFailed: If the TUN integration cannot be started
        """
        self.disconnect()
        state_dir = state_dir_from(request, self.settings)
        Store(state_dir).ensure()
        base = tunnel_config_from(request, self.settings, mode=self.mode.value, bind=INTERNAL_BIND, state_dir=state_dir)

        try:
            public_bind = choose_public_bind(state_dir, request.option("bind"))
            relay = Relay(
                RelayConfig(
                    public_bind,
                    upstream_socks=INTERNAL_BIND,
                    allow_direct_fallback=direct_fallback_from(request, self.settings),
                )
            )
            relay.start()
        except BulletproofError as e:
            self._fail(request, e)
            raise
        persist_bind(state_dir, relay.address)

        integration = self._integration(request, state_dir)
        try:
            integration.start(relay.address)
        except BulletproofError as e:
            integration.stop()
            relay.stop()
            self._fail(request, e)
            raise

        self._status.set(
            Status(
                connected=True,
                provider_kind=self.kind,
                exit_country=request.exit_country,
                message=MSG_WARMING,
                integration_mode=integration.mode,
                bind_address=relay.address,
                pac_enabled=integration.pac_enabled,
                virtualization_active=integration.virtualization_active,
            )
        )

        search = CandidateSearch(
            base,
            candidate_test_urls(request.option("test_url"), self.settings),
            runner=self._runner,
            wait_ready=self.readiness_check(),
            scan=self._scan,
            probe_timeout=self.settings.probe_timeout,
            scan_probe_timeout=self.settings.scan_probe_timeout,
        )
        watcher = HandshakeWatcher(state_dir / ENGINE_LOG, self._status, MSG_WARMING, MSG_HANDSHAKE)
        thread = threading.Thread(
            target=self._run_search, args=(search, watcher), name=f"{self.kind}-search", daemon=True
        )
        with self._lock:
            self._relay = relay
            self._integration_layer = integration
            self._search = search
            self._search_thread = thread
            self._watcher = watcher
        integration.on_exit(lambda error: self._integration_exited(integration, error))
        watcher.start()
        thread.start()
        logger.info(f"{self.kind}: relay ready on {relay.address}; searching for a working tunnel")

    def _run_search(self, search: CandidateSearch, watcher: HandshakeWatcher) -> None:
        try:
            result = search.run()
        except SearchCancelled:
            logger.debug(f"{self.kind}: search cancelled")
            return
        except SearchExhausted as e:
            logger.warning(f"{self.kind}: no working tunnel yet ({e}); relay keeps serving")
            self._publish_pending(search, e)
            return
        except Exception as e:
            logger.exception(f"{self.kind}: candidate search crashed")
            self._publish_pending(search, e)
            return
        finally:
            watcher.stop()
        self._adopt(search, result)

    def _publish_pending(self, search: CandidateSearch, error: BaseException) -> None:
        with self._lock:
            if search is not self._search:
                return
            self._status.update(message=f"relay active; tunnel pending: {error}")

    def _adopt(self, search: CandidateSearch, result: SearchResult) -> None:
        with self._lock:
            if search is not self._search:
                # Disconnected while the winner was coming up.
                result.engine.stop()
                return
            self._engine = result.engine
            self._status.update(message=f"connected (tunnel active, {result.describe()})")
        logger.success(f"{self.kind}: tunnel active after {result.attempts} attempt(s), {result.describe()}")
        result.engine.on_exit(lambda error: self._engine_exited(result.engine, error))

    def _engine_exited(self, engine: TunnelEngine, error: BaseException) -> None:
        with self._lock:
            if engine is not self._engine:
                return
            self._engine = None
            self._status.update(message=f"relay active; tunnel pending: {error}")
        logger.warning(f"{self.kind}: tunnel engine lost ({error}); relay keeps serving")

    def disconnect(self) -> None:
        with self._lock:
            search, thread, watcher = self._search, self._search_thread, self._watcher
            engine, relay, integration = self._engine, self._relay, self._integration_layer
            self._search = self._search_thread = self._watcher = None
            self._engine = self._relay = self._integration_layer = None
        if search is None and relay is None:
            self._status.set(Status.empty())
            return

        if watcher is not None:
            watcher.stop()
        if search is not None:
            best_effort("Cancelling candidate search", search.cancel)
        if thread is not None:
            thread.join(timeout=SEARCH_JOIN_TIMEOUT)
        if integration is not None:
            integration.stop()
        if engine is not None:
            best_effort("Stopping tunnel engine", engine.stop)
        if relay is not None:
            best_effort("Stopping relay", relay.stop)
        self._status.set(Status.empty())
        logger.info(f"{self.kind}: disconnected")
