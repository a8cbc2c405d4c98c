"""SOCKS5 wire constants and framing helpers (RFC 1928 subset)."""

import socket
import struct
from typing import Final

from bulletproof.core.exceptions import ProtocolError

SOCKS_VERSION: Final = 5
METHOD_NO_AUTH: Final = 0
METHOD_NO_ACCEPTABLE: Final = 0xFF
CMD_CONNECT: Final = 1

ADDR_TYPE_IPV4: Final = 1
ADDR_TYPE_DOMAIN: Final = 3
ADDR_TYPE_IPV6: Final = 4

# Reply codes
RESP_SUCCESS: Final = 0x00
RESP_GENERAL_FAILURE: Final = 0x01
RESP_HOST_UNREACHABLE: Final = 0x04
RESP_CMD_NOT_SUPPORTED: Final = 0x07
RESP_ADDR_NOT_SUPPORTED: Final = 0x08

MAX_DOMAIN_LENGTH: Final = 255


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Read exactly ``size`` bytes or raise :class:`ProtocolError` on EOF."""
    chunks = bytearray()
    while len(chunks) < size:
        chunk = sock.recv(size - len(chunks))
        if not chunk:
            raise ProtocolError(f"connection closed after {len(chunks)} of {size} bytes")
        chunks.extend(chunk)
    return bytes(chunks)


def build_reply(status: int, bind_addr: str = "0.0.0.0", bind_port: int = 0) -> bytes:
    """Build a CONNECT reply with an IPv4 bound address."""
    return struct.pack("!BBBB", SOCKS_VERSION, status, 0, ADDR_TYPE_IPV4) + socket.inet_aton(bind_addr) + struct.pack(
        "!H", bind_port
    )


def build_connect_request(host: str, port: int) -> bytes:
    """Build a CONNECT request using domain-name addressing."""
    name = host.encode("utf-8")[:MAX_DOMAIN_LENGTH]
    return struct.pack("!BBBBB", SOCKS_VERSION, CMD_CONNECT, 0, ADDR_TYPE_DOMAIN, len(name)) + name + struct.pack(
        "!H", port
    )
