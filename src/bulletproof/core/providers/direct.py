"""Psiphon provider: the engine's own SOCKS5 port is the session endpoint.

There is no relay here. The engine runs in probe-country mode, binds the
requested address directly and ``connect`` blocks until that port answers.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Final

from loguru import logger

from bulletproof.core.config import Settings
from bulletproof.core.engine.process import ProcessRunner
from bulletproof.core.engine.tunnel import INTERNAL_BIND, TunnelEngine, TunnelMode
from bulletproof.core.exceptions import BulletproofError
from bulletproof.core.network import wait_port
from bulletproof.core.providers.common import (
    BaseProvider,
    best_effort,
    state_dir_from,
    tunnel_config_from,
)
from bulletproof.core.store import Store
from bulletproof.core.system.proxy import SystemProxy
from bulletproof.core.types import ConnectRequest, Status

READY_TIMEOUT: Final = 60.0  # seconds

PortWaiter = Callable[[str, float, threading.Event], None]


class DirectTunnel(BaseProvider):
    """``psiphon``: start the engine and wait for its port."""

    kind = "psiphon"
    mode = TunnelMode.PSIPHON

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        runner: ProcessRunner | None = None,
        system_proxy: SystemProxy | None = None,
        wait_ready: PortWaiter = wait_port,
        ready_timeout: float = READY_TIMEOUT,
    ) -> None:
        super().__init__(settings, runner=runner, system_proxy=system_proxy)
        self._wait_ready = wait_ready
        self.ready_timeout = ready_timeout
        self._cancel = threading.Event()
        self._engine: TunnelEngine | None = None

    @property
    def engine(self) -> TunnelEngine | None:
        with self._lock:
            return self._engine

    def connect(self, request: ConnectRequest) -> None:
        """Start the engine and block until its SOCKS5 port is ready.

        Raises:
            SpawnFailed: If the engine (or TUN engine) cannot be started
            ReadinessTimeout: If the port did not open in time
        """
        self.disconnect()
        state_dir = state_dir_from(request, self.settings)
        Store(state_dir).ensure()
        bind = request.option("bind") or INTERNAL_BIND
        config = tunnel_config_from(request, self.settings, mode=self.mode.value, bind=bind, state_dir=state_dir)
        engine = TunnelEngine(config, self._runner)
        cancel = threading.Event()
        with self._lock:
            self._cancel = cancel
            self._engine = engine

        try:
            engine.start()
            engine.on_exit(lambda error: cancel.set())
            self._wait_ready(engine.bind, self.ready_timeout, cancel)
        except BulletproofError as e:
            engine.stop()
            with self._lock:
                self._engine = None
            self._fail(request, engine.exit_error or e)
            raise

        integration = self._integration(request, state_dir)
        try:
            integration.start(engine.bind)
        except BulletproofError as e:
            integration.stop()
            engine.stop()
            with self._lock:
                self._engine = None
            self._fail(request, e)
            raise

        with self._lock:
            self._integration_layer = integration
        self._status.set(
            Status(
                connected=True,
                provider_kind=self.kind,
                exit_country=request.exit_country,
                message="connected",
                integration_mode=integration.mode,
                bind_address=engine.bind,
                pac_enabled=integration.pac_enabled,
                virtualization_active=integration.virtualization_active,
            )
        )
        logger.info(f"{self.kind}: engine ready on {engine.bind}")
        engine.on_exit(lambda error: self._engine_exited(engine, error))
        integration.on_exit(lambda error: self._integration_exited(integration, error))

    def _engine_exited(self, engine: TunnelEngine, error: BaseException) -> None:
        with self._lock:
            if engine is not self._engine:
                return
            self._engine = None
            self._status.update(connected=False, message=str(error))
        logger.error(f"{self.kind}: engine lost: {error}")

    def disconnect(self) -> None:
        with self._lock:
            self._cancel.set()
            engine, integration = self._engine, self._integration_layer
            self._engine = self._integration_layer = None
        if integration is not None:
            integration.stop()
        if engine is not None:
            best_effort("Stopping tunnel engine", engine.stop)
            logger.info(f"{self.kind}: disconnected")
        self._status.set(Status.empty())
