"""Local SOCKS5 relay server.

The relay is the stable endpoint client applications point at. It binds
immediately, long before the tunnel engine is ready, and decides per
connection whether to chain through the engine or dial directly.

Example:
    relay = Relay(RelayConfig("127.0.0.1:8087", upstream_socks="127.0.0.1:8086"))
    relay.start()
    ...
    relay.stop()
"""

from __future__ import annotations

import contextlib
import os
import socket
import socketserver
import threading
from dataclasses import dataclass
from typing import Final

from loguru import logger

from bulletproof.core.exceptions import BindUnavailable
from bulletproof.core.lib.relay_stats import RelayStats
from bulletproof.core.lib.socks_handler import RelayHandler
from bulletproof.core.network import join_host_port, split_host_port

STOP_GRACE: Final = 2.0  # seconds to let in-flight connections drain
CLOSE_TIMEOUT: Final = 1.0  # seconds for handlers to finish after a forced shutdown
POLL_INTERVAL: Final = 0.2


class RelayServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Threaded SOCKS5 server carrying the relay's routing settings."""

    allow_reuse_address = os.name != "nt"
    daemon_threads = True
    block_on_close = False
    request_queue_size = 100

    def __init__(
        self,
        server_address: tuple[str, int],
        *,
        upstream: str | None = None,
        allow_direct_fallback: bool = False,
        stats: RelayStats | None = None,
    ) -> None:
        if ":" in server_address[0]:
            self.address_family = socket.AF_INET6
        self.upstream = upstream
        self.allow_direct_fallback = allow_direct_fallback
        self.stats = stats or RelayStats()
        self._inflight = 0
        self._sockets: set[socket.socket] = set()
        self._idle = threading.Condition()
        super().__init__(server_address, RelayHandler)

    def connection_opened(self, sock: socket.socket) -> None:
        self.stats.connection_started()
        with self._idle:
            self._inflight += 1
            self._sockets.add(sock)

    def connection_closed(self, sock: socket.socket) -> None:
        self.stats.connection_ended()
        with self._idle:
            self._inflight -= 1
            self._sockets.discard(sock)
            if self._inflight <= 0:
                self._idle.notify_all()

    def track(self, sock: socket.socket) -> None:
        """Register an outgoing socket so ``close_connections`` reaches it."""
        with self._idle:
            self._sockets.add(sock)

    def untrack(self, sock: socket.socket) -> None:
        with self._idle:
            self._sockets.discard(sock)

    def close_connections(self) -> int:
        """Shut down every client and upstream socket still open."""
        with self._idle:
            sockets = list(self._sockets)
        for sock in sockets:
            with contextlib.suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
        return len(sockets)

    def wait_idle(self, timeout: float) -> bool:
        """Wait until no connection is in flight; return False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._inflight <= 0, timeout=timeout)


@dataclass(frozen=True)
class RelayConfig:
    listen_address: str
    upstream_socks: str | None = None
    allow_direct_fallback: bool = False


class Relay:
    """Owns one :class:`RelayServer` and its serving thread."""

    def __init__(self, config: RelayConfig, stats: RelayStats | None = None) -> None:
        self.config = config
        self.stats = stats or RelayStats()
        self._server: RelayServer | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._server is not None

    @property
    def address(self) -> str:
        """The bound ``host:port`` (resolves port 0 once started)."""
        with self._lock:
            if self._server is None:
                return self.config.listen_address
            host, port = self._server.server_address[:2]
            return join_host_port(host, port)

    def start(self) -> None:
        """Bind the listener and start serving in the background.

        Raises:
            BindUnavailable: If the listen address cannot be bound
        """
        with self._lock:
            if self._server is not None:
                return
            try:
                host, port = split_host_port(self.config.listen_address)
                server = RelayServer(
                    (host, port),
                    upstream=self.config.upstream_socks,
                    allow_direct_fallback=self.config.allow_direct_fallback,
                    stats=self.stats,
                )
            except (OSError, ValueError) as exc:
                raise BindUnavailable(f"cannot listen on {self.config.listen_address}: {exc}") from exc
            self._server = server
            self._thread = threading.Thread(
                target=server.serve_forever,
                kwargs={"poll_interval": POLL_INTERVAL},
                name=f"relay-{port}",
                daemon=True,
            )
            self._thread.start()
        logger.info(
            f"Relay listening on {self.address} "
            f"(upstream={self.config.upstream_socks or '-'}, direct_fallback={self.config.allow_direct_fallback})"
        )

    def stop(self, grace: float = STOP_GRACE) -> None:
        """Close the listener and give in-flight connections ``grace`` seconds.

        Connections still open after that are shut down.
        """
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
        if server is None:
            return
        server.shutdown()
        with contextlib.suppress(OSError):
            server.server_close()
        if thread is not None:
            thread.join(timeout=grace)
        if not server.wait_idle(grace):
            closed = server.close_connections()
            logger.debug(f"Grace period over; shut down {closed} socket(s) still open")
            if not server.wait_idle(CLOSE_TIMEOUT):
                logger.warning("Relay connections did not finish after being shut down")
        logger.info("Relay stopped")
