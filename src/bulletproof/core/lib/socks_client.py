"""Minimal SOCKS5 client.

Used by the relay to chain client connections into the tunnel engine's
SOCKS5 port, and by diagnostics to fetch a page through any SOCKS5 proxy.
Only the no-auth method and CONNECT with domain-name addressing are spoken.

Example:
    sock = dial_via("127.0.0.1:8086", "example.com", 443)
    sock.sendall(client_hello)
"""

from __future__ import annotations

import contextlib
import socket
from typing import Final

from bulletproof.core.exceptions import AuthNotAccepted, ProtocolError, UpstreamConnectFailed
from bulletproof.core.lib.socks5 import (
    ADDR_TYPE_DOMAIN,
    ADDR_TYPE_IPV4,
    ADDR_TYPE_IPV6,
    METHOD_NO_AUTH,
    RESP_SUCCESS,
    SOCKS_VERSION,
    build_connect_request,
    recv_exact,
)
from bulletproof.core.network import split_host_port

DEFAULT_DIAL_TIMEOUT: Final = 4.0  # seconds
DEFAULT_MAX_BODY: Final = 4096
USER_AGENT: Final = "bulletproof/1"


def _handshake(sock: socket.socket, target_host: str, target_port: int) -> None:
    sock.sendall(bytes((SOCKS_VERSION, 1, METHOD_NO_AUTH)))
    version, method = recv_exact(sock, 2)
    if version != SOCKS_VERSION or method != METHOD_NO_AUTH:
        raise AuthNotAccepted(f"socks5 no-auth not accepted (version={version}, method={method})")

    sock.sendall(build_connect_request(target_host, target_port))

    _, status, _, addr_type = recv_exact(sock, 4)
    if status != RESP_SUCCESS:
        raise UpstreamConnectFailed(status)
    if addr_type == ADDR_TYPE_IPV4:
        skip = 4
    elif addr_type == ADDR_TYPE_DOMAIN:
        skip = recv_exact(sock, 1)[0]
    elif addr_type == ADDR_TYPE_IPV6:
        skip = 16
    else:
        raise ProtocolError(f"socks5: unknown address type {addr_type}")
    # Bound address and port are meaningless to us.
    recv_exact(sock, skip + 2)


def dial_via(
    socks_address: str,
    target_host: str,
    target_port: int,
    timeout: float = DEFAULT_DIAL_TIMEOUT,
) -> socket.socket:
    """Open a tunneled TCP connection to ``target_host:target_port``.

    Args:
        socks_address: ``host:port`` of the SOCKS5 server
        target_host: Destination host name or IP literal (sent as a domain)
        target_port: Destination port
        timeout: Bound for connecting and negotiating

    Returns:
        socket.socket: Blocking socket positioned at the tunneled byte stream

    Raises:
        OSError: If the SOCKS5 server cannot be reached
        AuthNotAccepted: If the server refuses no-auth
        UpstreamConnectFailed: If the server rejects the CONNECT
        ProtocolError: If the server reply is malformed or truncated
    """
    host, port = split_host_port(socks_address)
    sock = socket.create_connection((host, port), timeout=timeout)
    try:
        _handshake(sock, target_host, target_port)
    except BaseException:
        sock.close()
        raise
    sock.settimeout(None)
    return sock


def http_get_via(
    socks_address: str,
    host: str,
    path: str = "/",
    max_bytes: int = DEFAULT_MAX_BODY,
    timeout: float = 10.0,
) -> tuple[str, str]:
    """Perform one plain HTTP GET on port 80 through a SOCKS5 proxy.

    Returns:
        tuple[str, str]: The status line and up to ``max_bytes`` of body
    """
    if not path.startswith("/"):
        path = "/" + path
    if max_bytes <= 0:
        max_bytes = DEFAULT_MAX_BODY

    sock = dial_via(socks_address, host, 80, timeout=timeout)
    with contextlib.closing(sock):
        sock.settimeout(timeout)
        request = (
            f"GET {path} HTTP/1.1\r\n"
            f"Host: {host}\r\n"
            f"User-Agent: {USER_AGENT}\r\n"
            "Connection: close\r\n\r\n"
        )
        sock.sendall(request.encode("ascii"))
        with sock.makefile("rb") as stream:
            status = stream.readline()
            if not status:
                raise ProtocolError("empty HTTP response")
            while True:
                line = stream.readline()
                if not line:
                    return status.decode("latin-1").strip(), ""
                if line in (b"\r\n", b"\n"):
                    break
            body = stream.read(max_bytes)
    return status.decode("latin-1").strip(), body.decode("utf-8", errors="replace")
