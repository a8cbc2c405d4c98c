import socket
import struct
import threading
from collections.abc import Iterator

import pytest
from conftest import FakeSocksServer, LoopbackServer, free_address, recv_exact, socks_connect, wait_for

from bulletproof.core.exceptions import BindUnavailable
from bulletproof.core.lib.relay_server import Relay, RelayConfig

SUCCESS = b"\x05\x00\x00\x01\x00\x00\x00\x00\x00\x00"


def _start(upstream: str | None, *, direct: bool = False) -> Relay:
    relay = Relay(RelayConfig("127.0.0.1:0", upstream_socks=upstream, allow_direct_fallback=direct))
    relay.start()
    return relay


@pytest.fixture
def chained_relay(socks_upstream: FakeSocksServer) -> Iterator[Relay]:
    relay = _start(socks_upstream.address)
    try:
        yield relay
    finally:
        relay.stop()


def test_chains_through_reachable_upstream(
    chained_relay: Relay, socks_upstream: FakeSocksServer, echo_server: LoopbackServer
) -> None:
    sock, reply = socks_connect(chained_relay.address, "127.0.0.1", echo_server.port)
    with sock:
        assert reply == SUCCESS
        sock.sendall(b"hello relay")
        assert recv_exact(sock, 11) == b"hello relay"

    assert socks_upstream.targets == [("127.0.0.1", echo_server.port)]
    assert chained_relay.stats.snapshot().chained_connections == 1


def test_no_upstream_and_no_fallback_fails(echo_server: LoopbackServer) -> None:
    relay = _start(free_address())
    try:
        sock, reply = socks_connect(relay.address, "127.0.0.1", echo_server.port)
        sock.close()
    finally:
        relay.stop()

    assert reply[:2] == b"\x05\x01"
    assert relay.stats.snapshot().failed_connections == 1


def test_direct_fallback_when_upstream_down(echo_server: LoopbackServer) -> None:
    relay = _start(free_address(), direct=True)
    try:
        sock, reply = socks_connect(relay.address, "127.0.0.1", echo_server.port)
        with sock:
            assert reply == SUCCESS
            sock.sendall(b"direct")
            assert recv_exact(sock, 6) == b"direct"
    finally:
        relay.stop()

    assert relay.stats.snapshot().direct_connections == 1


def test_rejected_chain_falls_back_to_direct_dial(echo_server: LoopbackServer) -> None:
    upstream = FakeSocksServer(reply_code=0x05)
    relay = _start(upstream.address, direct=True)
    try:
        sock, reply = socks_connect(relay.address, "127.0.0.1", echo_server.port)
        with sock:
            assert reply == SUCCESS
            sock.sendall(b"x")
            assert recv_exact(sock, 1) == b"x"
    finally:
        relay.stop()
        upstream.close()


def test_rejected_chain_without_fallback_fails(echo_server: LoopbackServer) -> None:
    upstream = FakeSocksServer(reply_code=0x05)
    relay = _start(upstream.address)
    try:
        sock, reply = socks_connect(relay.address, "127.0.0.1", echo_server.port)
        sock.close()
    finally:
        relay.stop()
        upstream.close()

    assert reply[:2] == b"\x05\x01"


def test_domain_requests_reach_upstream_as_names(chained_relay: Relay, socks_upstream: FakeSocksServer) -> None:
    socks_upstream.reply_code = 0x04
    host, port = chained_relay.address.rsplit(":", 1)
    with socket.create_connection((host, int(port)), timeout=5.0) as sock:
        sock.sendall(b"\x05\x01\x00")
        assert recv_exact(sock, 2) == b"\x05\x00"
        name = b"example.org"
        sock.sendall(b"\x05\x01\x00\x03" + bytes((len(name),)) + name + struct.pack("!H", 443))
        reply = recv_exact(sock, 10)

    assert reply[1] == 0x01
    assert socks_upstream.targets == [("example.org", 443)]


def test_wrong_greeting_version_closes_silently(chained_relay: Relay) -> None:
    host, port = chained_relay.address.rsplit(":", 1)
    with socket.create_connection((host, int(port)), timeout=5.0) as sock:
        sock.sendall(b"\x04\x01")
        assert sock.recv(16) == b""


def test_unsupported_command_gets_0x07(chained_relay: Relay) -> None:
    host, port = chained_relay.address.rsplit(":", 1)
    with socket.create_connection((host, int(port)), timeout=5.0) as sock:
        sock.sendall(b"\x05\x02\x00\x01")
        assert recv_exact(sock, 2) == b"\x05\x00"
        sock.sendall(b"\x05\x02\x00\x01")
        assert recv_exact(sock, 10)[:2] == b"\x05\x07"


def test_unsupported_address_type_gets_0x08(chained_relay: Relay) -> None:
    host, port = chained_relay.address.rsplit(":", 1)
    with socket.create_connection((host, int(port)), timeout=5.0) as sock:
        sock.sendall(b"\x05\x01\x00")
        assert recv_exact(sock, 2) == b"\x05\x00"
        sock.sendall(b"\x05\x01\x00\x09")
        assert recv_exact(sock, 10)[:2] == b"\x05\x08"


def test_half_close_delivers_remaining_reply(chained_relay: Relay, echo_server: LoopbackServer) -> None:
    sock, reply = socks_connect(chained_relay.address, "127.0.0.1", echo_server.port)
    with sock:
        assert reply == SUCCESS
        sock.sendall(b"last words")
        sock.shutdown(socket.SHUT_WR)
        received = bytearray()
        while chunk := sock.recv(64):
            received.extend(chunk)

    assert bytes(received) == b"last words"
    assert wait_for(lambda: chained_relay.stats.snapshot().active_connections == 0)
    snapshot = chained_relay.stats.snapshot()
    assert snapshot.bytes_sent == 10
    assert snapshot.bytes_received == 10


def test_bind_conflict_raises_bind_unavailable() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
        taken.bind(("127.0.0.1", 0))
        taken.listen(1)
        address = f"127.0.0.1:{taken.getsockname()[1]}"

        with pytest.raises(BindUnavailable):
            Relay(RelayConfig(address)).start()


def test_stop_releases_the_port() -> None:
    relay = _start(None)
    address = relay.address
    assert relay.running

    relay.stop()
    relay.stop()

    assert not relay.running
    host, port = address.rsplit(":", 1)
    with pytest.raises(OSError):
        socket.create_connection((host, int(port)), timeout=0.5).close()


@pytest.fixture
def silent_server() -> Iterator[LoopbackServer]:
    """Accepts connections and then neither sends nor closes."""
    release = threading.Event()
    server = LoopbackServer(lambda conn: release.wait(10.0))
    try:
        yield server
    finally:
        release.set()
        server.close()


def test_client_close_tears_down_a_silent_connection(silent_server: LoopbackServer) -> None:
    relay = _start(None, direct=True)
    try:
        sock, reply = socks_connect(relay.address, "127.0.0.1", silent_server.port)
        assert reply == SUCCESS
        assert wait_for(lambda: relay.stats.snapshot().active_connections == 1)

        sock.close()

        assert wait_for(lambda: relay.stats.snapshot().active_connections == 0)
    finally:
        relay.stop()


def test_stop_shuts_down_connections_after_the_grace_period(silent_server: LoopbackServer) -> None:
    relay = _start(None, direct=True)
    sock, reply = socks_connect(relay.address, "127.0.0.1", silent_server.port)
    with sock:
        assert reply == SUCCESS

        relay.stop(grace=0.2)

        sock.settimeout(3.0)
        try:
            data = sock.recv(16)
        except ConnectionResetError:
            data = b""
        assert data == b""
    assert wait_for(lambda: relay.stats.snapshot().active_connections == 0)
