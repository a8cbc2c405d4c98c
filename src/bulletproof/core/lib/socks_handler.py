"""SOCKS5 protocol handler for the local relay.

This module implements the server side of the SOCKS5 subset the relay speaks:
- Protocol negotiation (no-auth is always selected)
- CONNECT requests with IPv4, domain name and IPv6 addressing
- Upstream selection: chain through the tunnel engine's SOCKS5 port when it
  answers a quick probe, otherwise dial the target directly if allowed
- Bi-directional forwarding with one copy thread per direction; a
  half-closed connection is torn down once it stays idle
- Connection tracking

Malformed greetings are dropped without a reply. Unsupported commands and
address types get the matching SOCKS5 reply code before the connection is
closed.

Example:
    # The handler is automatically used by the RelayServer class
    server = RelayServer(("127.0.0.1", 8087), upstream="127.0.0.1:8086")
    server.serve_forever()
"""

from __future__ import annotations

import contextlib
import ipaddress
import socket
import socketserver
import struct
import threading
import time
from typing import TYPE_CHECKING, Final

from loguru import logger

from bulletproof.core.exceptions import BulletproofError, ProtocolError
from bulletproof.core.lib.dns_handler import dns_resolver
from bulletproof.core.lib.socks5 import (
    ADDR_TYPE_DOMAIN,
    ADDR_TYPE_IPV4,
    ADDR_TYPE_IPV6,
    CMD_CONNECT,
    METHOD_NO_AUTH,
    RESP_ADDR_NOT_SUPPORTED,
    RESP_CMD_NOT_SUPPORTED,
    RESP_GENERAL_FAILURE,
    RESP_SUCCESS,
    SOCKS_VERSION,
    build_reply,
    recv_exact,
)
from bulletproof.core.lib.socks_client import dial_via
from bulletproof.core.network import probe_tcp

if TYPE_CHECKING:
    from bulletproof.core.lib.relay_server import RelayServer

BUFFER_SIZE: Final = 64 * 1024
UPSTREAM_PROBE_TIMEOUT: Final = 0.5  # seconds
DIAL_TIMEOUT: Final = 4.0  # seconds
HALF_CLOSE_IDLE: Final = 1.0  # seconds a half-closed connection may stay silent
HALF_CLOSE_POLL: Final = 0.1  # seconds


class UpstreamNotReady(BulletproofError):
    """No upstream is reachable and direct dialing is disabled."""


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class RelayHandler(socketserver.BaseRequestHandler):
    """Handle one client connection to the relay."""

    server: RelayServer

    def setup(self) -> None:
        self._last_activity = time.monotonic()
        self.server.connection_opened(self.request)

    def finish(self) -> None:
        self.server.connection_closed(self.request)

    def _negotiate(self) -> bool:
        """Perform SOCKS5 method negotiation."""
        version, nmethods = recv_exact(self.request, 2)
        if version != SOCKS_VERSION:
            return False
        # Ignore the offered methods since we only support no-auth
        if nmethods:
            recv_exact(self.request, nmethods)
        self.request.sendall(bytes((SOCKS_VERSION, METHOD_NO_AUTH)))
        return True

    def _send_response(self, status: int) -> None:
        """Send a SOCKS5 reply; the bound address is a placeholder."""
        self.request.sendall(build_reply(status))

    def _read_request(self) -> tuple[str, int] | None:
        """Read a CONNECT request, replying with an error if unsupported."""
        version, cmd, _, addr_type = recv_exact(self.request, 4)
        if version != SOCKS_VERSION or cmd != CMD_CONNECT:
            self._send_response(RESP_CMD_NOT_SUPPORTED)
            return None

        if addr_type == ADDR_TYPE_IPV4:
            host = socket.inet_ntop(socket.AF_INET, recv_exact(self.request, 4))
        elif addr_type == ADDR_TYPE_DOMAIN:
            length = recv_exact(self.request, 1)[0]
            host = recv_exact(self.request, length).decode("utf-8", errors="replace")
        elif addr_type == ADDR_TYPE_IPV6:
            host = socket.inet_ntop(socket.AF_INET6, recv_exact(self.request, 16))
        else:
            self._send_response(RESP_ADDR_NOT_SUPPORTED)
            return None

        (port,) = struct.unpack("!H", recv_exact(self.request, 2))
        return host, port

    def _dial_direct(self, host: str, port: int) -> socket.socket:
        try:
            remote = socket.create_connection((host, port), timeout=DIAL_TIMEOUT)
        except socket.gaierror:
            if _is_ip_literal(host):
                raise
            remote = socket.create_connection((dns_resolver.resolve(host), port), timeout=DIAL_TIMEOUT)
        remote.settimeout(None)
        return remote

    def _open_upstream(self, host: str, port: int) -> socket.socket:
        """Pick the route for this connection and open it."""
        upstream = self.server.upstream
        if upstream and probe_tcp(upstream, UPSTREAM_PROBE_TIMEOUT):
            try:
                remote = dial_via(upstream, host, port, timeout=DIAL_TIMEOUT)
            except (OSError, BulletproofError) as exc:
                if not self.server.allow_direct_fallback:
                    raise
                logger.debug(f"Chaining to {host}:{port} via {upstream} failed ({exc}); dialing directly")
            else:
                self.server.stats.record_route(chained=True)
                return remote

        if self.server.allow_direct_fallback:
            remote = self._dial_direct(host, port)
            self.server.stats.record_route(chained=False)
            return remote

        raise UpstreamNotReady("upstream not ready")

    def handle(self) -> None:
        """Handle incoming SOCKS5 connection."""
        client_addr = self.client_address
        try:
            if not self._negotiate():
                logger.debug(f"Dropping non-SOCKS5 client {client_addr}")
                return

            target = self._read_request()
            if target is None:
                return
            host, port = target

            try:
                remote = self._open_upstream(host, port)
            except (OSError, BulletproofError) as exc:
                logger.debug(f"Connect to {host}:{port} failed: {exc}")
                self.server.stats.record_failure()
                self._send_response(RESP_GENERAL_FAILURE)
                return

            with remote:
                self.server.track(remote)
                try:
                    self._send_response(RESP_SUCCESS)
                    self.forward(self.request, remote)
                finally:
                    self.server.untrack(remote)
        except ProtocolError as exc:
            logger.debug(f"Malformed request from {client_addr}: {exc}")
        except OSError as exc:
            logger.debug(f"Connection error with {client_addr}: {exc}")

    def _pump(self, src: socket.socket, dst: socket.socket, done: threading.Event, *, outbound: bool) -> None:
        """Copy one direction until EOF, then half-close the destination."""
        stats = self.server.stats
        try:
            while True:
                data = src.recv(BUFFER_SIZE)
                if not data:
                    break
                self._last_activity = time.monotonic()
                dst.sendall(data)
                if outbound:
                    stats.update_bytes(len(data), 0)
                else:
                    stats.update_bytes(0, len(data))
        except OSError:
            # Either side failed: unblock the opposite copy as well.
            _close_both(src, dst)
        else:
            with contextlib.suppress(OSError):
                dst.shutdown(socket.SHUT_WR)
        finally:
            done.set()

    def forward(self, local: socket.socket, remote: socket.socket) -> None:
        """Forward data between local and remote sockets.

        Once one direction has ended, the other one only lives while data
        moves: after ``HALF_CLOSE_IDLE`` seconds of silence both sockets are
        shut down.
        """
        self._last_activity = time.monotonic()
        done = threading.Event()
        copies = [
            threading.Thread(target=self._pump, args=(local, remote, done), kwargs={"outbound": True}, daemon=True),
            threading.Thread(target=self._pump, args=(remote, local, done), kwargs={"outbound": False}, daemon=True),
        ]
        for copy in copies:
            copy.start()
        done.wait()
        self._last_activity = time.monotonic()
        while True:
            alive = [copy for copy in copies if copy.is_alive()]
            if not alive:
                break
            alive[0].join(HALF_CLOSE_POLL)
            if alive[0].is_alive() and time.monotonic() - self._last_activity >= HALF_CLOSE_IDLE:
                logger.debug(f"Closing half-closed connection from {self.client_address} after idling")
                _close_both(local, remote)
                break
        for copy in copies:
            copy.join()


def _close_both(*socks: socket.socket) -> None:
    for sock in socks:
        with contextlib.suppress(OSError):
            sock.shutdown(socket.SHUT_RDWR)
