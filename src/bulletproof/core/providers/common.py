"""Building blocks shared by the provider variants.

- request helpers (state dir, endpoint, engine configuration)
- :class:`Integration`, the optional PAC or TUN layer in front of a session
- :class:`HandshakeWatcher`, which watches the engine log while a search runs
- :func:`best_effort` for teardown paths that must not raise
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path
from typing import Final

from loguru import logger

from bulletproof.core.config import Settings, load_settings
from bulletproof.core.engine.base import ExitCallback
from bulletproof.core.engine.process import ProcessRunner
from bulletproof.core.engine.tunnel import TunnelConfig
from bulletproof.core.engine.virtualization import VirtualizationConfig, VirtualizationEngine
from bulletproof.core.exceptions import BulletproofError
from bulletproof.core.system.pac import PacServer
from bulletproof.core.system.proxy import SystemProxy, get_system_proxy
from bulletproof.core.types import ConnectRequest, Status, StatusHolder
from bulletproof.core.utils.utils import first_non_empty

ENGINE_LOG: Final = "warp-plus.log"
HANDSHAKE_MARKER: Final = "handshake complete"

INTEGRATION_DIRECT: Final = "direct"
INTEGRATION_PAC: Final = "pac"
INTEGRATION_TUN: Final = "tun"
INTEGRATION_MODES: Final = (INTEGRATION_DIRECT, INTEGRATION_PAC, INTEGRATION_TUN)

_FALSE_OPTIONS: Final = {"", "0", "false", "no", "off"}


def best_effort(action: str, func: Callable[[], object]) -> None:
    """Run a teardown step, logging instead of raising on failure."""
    try:
        func()
    except (BulletproofError, OSError) as e:
        logger.warning(f"{action} failed: {e}")


def state_dir_from(request: ConnectRequest, settings: Settings) -> Path:
    state_dir = request.option("state_dir")
    return Path(state_dir).expanduser() if state_dir else settings.state_dir


def endpoint_from(request: ConnectRequest) -> str | None:
    """``server[:port]`` or None when no server was requested."""
    if not request.server:
        return None
    if request.port and request.port > 0:
        return f"{request.server}:{request.port}"
    return request.server


def direct_fallback_from(request: ConnectRequest, settings: Settings) -> bool:
    value = request.option("direct_fallback")
    if value is None:
        return settings.direct_fallback
    return value.strip().lower() not in _FALSE_OPTIONS


def integration_from(request: ConnectRequest) -> str:
    mode = (request.option("integration") or INTEGRATION_DIRECT).strip().lower()
    if mode not in INTEGRATION_MODES:
        logger.warning(f"Unknown integration {mode!r}; using {INTEGRATION_DIRECT}")
        return INTEGRATION_DIRECT
    return mode


def tunnel_config_from(
    request: ConnectRequest,
    settings: Settings,
    *,
    mode: str,
    bind: str,
    state_dir: Path,
) -> TunnelConfig:
    """Engine configuration for ``request``; environment knobs come from ``settings``."""
    return TunnelConfig(
        binary=request.option("bin") or settings.warpplus_bin,
        key=request.option("key"),
        endpoint=endpoint_from(request),
        bind=bind,
        mode=mode,
        country=request.exit_country,
        cache_dir=state_dir,
        log_path=state_dir / ENGINE_LOG,
        dns=first_non_empty(request.option("dns"), settings.dns) or None,
        ipv4_only=settings.ipv4_only,
        ipv6_only=settings.ipv6_only,
        verbose=settings.verbose,
    )


class Integration:
    """System integration of one session: nothing, a PAC proxy, or a TUN device."""

    def __init__(
        self,
        mode: str,
        *,
        settings: Settings,
        state_dir: Path,
        system_proxy: SystemProxy | None = None,
        runner: ProcessRunner | None = None,
    ) -> None:
        self.mode = mode
        self.settings = settings
        self.state_dir = state_dir
        self._system_proxy = system_proxy
        self._runner = runner
        self._pac_server: PacServer | None = None
        self._system_proxy_enabled = False
        self._virtualization: VirtualizationEngine | None = None

    @property
    def pac_enabled(self) -> bool:
        return self._system_proxy_enabled

    @property
    def virtualization_active(self) -> bool:
        return self._virtualization is not None and self._virtualization.active

    def start(self, socks_address: str) -> None:
        """Attach the integration to ``socks_address``.

        PAC problems are logged and leave ``pac_enabled`` False. A TUN engine
        that cannot be spawned raises ``SpawnFailed``.
        """
        if self.mode == INTEGRATION_PAC:
            self._start_pac(socks_address)
        elif self.mode == INTEGRATION_TUN:
            engine = VirtualizationEngine(
                VirtualizationConfig(self.state_dir, socks_address, self.settings.singbox_bin),
                self._runner,
            )
            engine.start()
            self._virtualization = engine
            logger.info(f"TUN routing through {socks_address}")

    def on_exit(self, callback: ExitCallback) -> None:
        """Call ``callback`` if the TUN engine dies while attached."""
        if self._virtualization is not None:
            self._virtualization.on_exit(callback)

    def _start_pac(self, socks_address: str) -> None:
        server = PacServer(self.settings.pac_bind, socks_address)
        try:
            server.start()
        except BulletproofError as e:
            logger.warning(f"PAC integration unavailable: {e}")
            return
        self._pac_server = server
        system_proxy = self._system_proxy or get_system_proxy()
        try:
            system_proxy.enable_pac(server.url)
        except BulletproofError as e:
            logger.warning(f"Could not enable system PAC proxy: {e}")
            return
        self._system_proxy = system_proxy
        self._system_proxy_enabled = True

    def stop(self) -> None:
        if self._virtualization is not None:
            best_effort("Stopping TUN engine", self._virtualization.stop)
            self._virtualization = None
        if self._system_proxy_enabled and self._system_proxy is not None:
            best_effort("Disabling system PAC proxy", self._system_proxy.disable_pac)
            self._system_proxy_enabled = False
        if self._pac_server is not None:
            best_effort("Stopping PAC server", self._pac_server.stop)
            self._pac_server = None


class HandshakeWatcher:
    """Poll the engine log and flag an early handshake while warming up."""

    POLL_INTERVAL: Final = 1.5  # seconds
    DEADLINE: Final = 120.0  # seconds

    def __init__(self, log_path: Path, holder: StatusHolder, warming_message: str, message: str) -> None:
        self.log_path = log_path
        self._holder = holder
        self._warming_message = warming_message
        self._message = message
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        # The log is appended across sessions; only look at what comes next.
        try:
            self._offset = log_path.stat().st_size
        except OSError:
            self._offset = 0

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="handshake-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def _seen(self) -> bool:
        try:
            with self.log_path.open("rb") as log:
                log.seek(self._offset)
                return HANDSHAKE_MARKER.encode() in log.read()
        except OSError:
            return False

    def _still_warming(self, status: Status) -> bool:
        return status.connected and status.message == self._warming_message

    def _run(self) -> None:
        waited = 0.0
        while waited < self.DEADLINE and not self._stop.is_set():
            if self._seen():
                if self._holder.update_if(self._still_warming, message=self._message):
                    logger.info("Engine handshake complete; waiting for its SOCKS5 port")
                return
            if self._stop.wait(self.POLL_INTERVAL):
                return
            waited += self.POLL_INTERVAL


class BaseProvider:
    """State shared by every provider variant."""

    kind = "base"
    requires_identity = True

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        runner: ProcessRunner | None = None,
        system_proxy: SystemProxy | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self._runner = runner
        self._system_proxy = system_proxy
        self._status = StatusHolder()
        self._lock = threading.Lock()
        self._integration_layer: Integration | None = None

    def status(self) -> Status:
        return self._status.get()

    def _integration(self, request: ConnectRequest, state_dir: Path) -> Integration:
        return Integration(
            integration_from(request),
            settings=self.settings,
            state_dir=state_dir,
            system_proxy=self._system_proxy,
            runner=self._runner,
        )

    def _fail(self, request: ConnectRequest, error: BaseException) -> None:
        self._status.set(Status(provider_kind=self.kind, exit_country=request.exit_country, message=str(error)))

    def _integration_exited(self, integration: Integration, error: BaseException) -> None:
        with self._lock:
            if integration is not self._integration_layer:
                return
            self._status.update(virtualization_active=False)
        logger.warning(f"{self.kind}: TUN routing lost: {error}")
