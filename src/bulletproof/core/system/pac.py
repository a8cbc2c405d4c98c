"""Proxy auto-config (PAC) file server.

Serves a single PAC script that routes every request through the relay and
falls back to a direct connection when the relay is gone.
"""

from __future__ import annotations

import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Final

from loguru import logger

from bulletproof.core.exceptions import BindUnavailable
from bulletproof.core.network import join_host_port, split_host_port

PAC_PATH: Final = "/proxy.pac"
PAC_CONTENT_TYPE: Final = "application/x-ns-proxy-autoconfig"


def pac_script(socks_address: str) -> str:
    return f'function FindProxyForURL(url, host) {{ return "SOCKS5 {socks_address}; DIRECT"; }}\n'


class _PacHandler(BaseHTTPRequestHandler):
    server: _PacHTTPServer

    def do_GET(self) -> None:  # noqa: N802 - http.server naming
        if self.path.split("?", 1)[0] != PAC_PATH:
            self.send_error(404)
            return
        body = pac_script(self.server.socks_address).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", PAC_CONTENT_TYPE)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        logger.debug(f"PAC {self.address_string()} - {format % args}")


class _PacHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], socks_address: str) -> None:
        self.socks_address = socks_address
        super().__init__(address, _PacHandler)


class PacServer:
    """Background HTTP server publishing the PAC script."""

    def __init__(self, bind_address: str, socks_address: str) -> None:
        self.bind_address = bind_address
        self.socks_address = socks_address
        self._server: _PacHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def url(self) -> str:
        if self._server is not None:
            host, port = self._server.server_address[:2]
            return f"http://{join_host_port(host, port)}{PAC_PATH}"
        return f"http://{self.bind_address}{PAC_PATH}"

    def start(self) -> None:
        """Raises BindUnavailable if the PAC address is taken."""
        if self._server is not None:
            return
        try:
            self._server = _PacHTTPServer(split_host_port(self.bind_address), self.socks_address)
        except (OSError, ValueError) as e:
            raise BindUnavailable(f"cannot serve PAC on {self.bind_address}: {e}") from e
        self._thread = threading.Thread(target=self._server.serve_forever, name="pac-server", daemon=True)
        self._thread.start()
        logger.info(f"Serving PAC at {self.url}")

    def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
