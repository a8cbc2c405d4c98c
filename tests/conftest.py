import socket
import struct
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from bulletproof.core.config import Settings

_ENV_VARS = [
    "BP_STATE_DIR",
    "BP_LOG_LEVEL",
    "BP_SOCKS_DIRECT_FALLBACK",
    "BP_PAC_BIND",
    "BP_PROBE_TIMEOUT",
    "BP_SCAN_PROBE_TIMEOUT",
    "WARPPLUS_BIN",
    "SINGBOX_BIN",
    "WARPPLUS_TEST_URL",
    "WARPPLUS_TEST_URLS",
    "WARPPLUS_IPV4",
    "WARPPLUS_IPV6",
    "WARPPLUS_VERBOSE",
    "WARPPLUS_DNS",
]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(state_dir=tmp_path / "state", pac_bind="127.0.0.1:0")


def free_address() -> str:
    """A loopback address nothing listens on (bound once, then released)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return f"127.0.0.1:{sock.getsockname()[1]}"


def recv_exact(sock: socket.socket, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionError("peer closed")
        data.extend(chunk)
    return bytes(data)


def _pipe(src: socket.socket, dst: socket.socket) -> None:
    try:
        while True:
            data = src.recv(4096)
            if not data:
                break
            dst.sendall(data)
    except OSError:
        pass
    try:
        dst.shutdown(socket.SHUT_WR)
    except OSError:
        pass


class FakeProcess:
    """In-memory process: ``wait`` blocks until ``exit`` or ``kill``."""

    _next_pid = 1000

    def __init__(self) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.killed = False
        self.returncode: int | None = None
        self._done = threading.Event()

    def exit(self, returncode: int) -> None:
        self.returncode = returncode
        self._done.set()

    def wait(self) -> int:
        self._done.wait()
        assert self.returncode is not None
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeRunner:
    """Records spawns instead of executing anything."""

    def __init__(self, error: OSError | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, list[str], Path | None]] = []
        self.processes: list[FakeProcess] = []

    def start(self, binary: str, args, *, log_path: Path | None = None) -> FakeProcess:
        self.calls.append((binary, list(args), log_path))
        if self.error is not None:
            raise self.error
        process = FakeProcess()
        self.processes.append(process)
        return process


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


class LoopbackServer:
    """Threaded TCP server on 127.0.0.1 with a per-connection handler."""

    def __init__(self, handler: Callable[[socket.socket], None]) -> None:
        self._handler = handler
        self._stop = threading.Event()
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(16)
        self._listener.settimeout(0.2)
        self.host, self.port = self._listener.getsockname()
        self.address = f"{self.host}:{self.port}"
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(None)
            threading.Thread(target=self._run, args=(conn,), daemon=True).start()

    def _run(self, conn: socket.socket) -> None:
        with conn:
            try:
                self._handler(conn)
            except (OSError, ConnectionError):
                pass

    def close(self) -> None:
        self._stop.set()
        self._thread.join(timeout=1.0)
        self._listener.close()


def _echo(conn: socket.socket) -> None:
    while True:
        data = conn.recv(4096)
        if not data:
            return
        conn.sendall(data)


@pytest.fixture
def echo_server() -> Iterator[LoopbackServer]:
    server = LoopbackServer(_echo)
    try:
        yield server
    finally:
        server.close()


class FakeSocksServer(LoopbackServer):
    """Minimal SOCKS5 (no-auth, CONNECT) server used as the engine upstream.

    ``reply_code`` forces a CONNECT failure; ``redirect`` maps requested
    ``(host, port)`` targets to real loopback addresses.
    """

    def __init__(self, reply_code: int = 0, redirect: dict[tuple[str, int], tuple[str, int]] | None = None) -> None:
        self.reply_code = reply_code
        self.redirect = redirect or {}
        self.targets: list[tuple[str, int]] = []
        super().__init__(self._handle)

    def _handle(self, conn: socket.socket) -> None:
        _, nmethods = recv_exact(conn, 2)
        recv_exact(conn, nmethods)
        conn.sendall(b"\x05\x00")
        _, _, _, addr_type = recv_exact(conn, 4)
        if addr_type == 3:
            host = recv_exact(conn, recv_exact(conn, 1)[0]).decode()
        elif addr_type == 1:
            host = socket.inet_ntoa(recv_exact(conn, 4))
        else:
            host = socket.inet_ntop(socket.AF_INET6, recv_exact(conn, 16))
        (port,) = struct.unpack("!H", recv_exact(conn, 2))
        self.targets.append((host, port))

        if self.reply_code:
            conn.sendall(bytes((5, self.reply_code, 0, 1, 0, 0, 0, 0, 0, 0)))
            return
        target = self.redirect.get((host, port), (host, port))
        with socket.create_connection(target, timeout=2.0) as upstream:
            upstream.settimeout(None)
            conn.sendall(bytes((5, 0, 0, 1, 127, 0, 0, 1, 0x1F, 0x90)))
            back = threading.Thread(target=_pipe, args=(upstream, conn), daemon=True)
            back.start()
            _pipe(conn, upstream)
            back.join(timeout=2.0)


@pytest.fixture
def socks_upstream() -> Iterator[FakeSocksServer]:
    server = FakeSocksServer()
    try:
        yield server
    finally:
        server.close()


@pytest.fixture
def http_backend() -> Iterator[LoopbackServer]:
    body = b"hello world"
    response = b"HTTP/1.1 200 OK\r\nContent-Length: 11\r\nConnection: close\r\nX-Test: 1\r\n\r\n" + body

    def serve(conn: socket.socket) -> None:
        data = bytearray()
        while b"\r\n\r\n" not in data:
            chunk = conn.recv(4096)
            if not chunk:
                return
            data.extend(chunk)
        conn.sendall(response)

    server = LoopbackServer(serve)
    try:
        yield server
    finally:
        server.close()


def socks_connect(relay_address: str, host: str, port: int, timeout: float = 5.0) -> tuple[socket.socket, bytes]:
    """Open a client connection through ``relay_address``; return it with the reply."""
    relay_host, relay_port = relay_address.rsplit(":", 1)
    sock = socket.create_connection((relay_host, int(relay_port)), timeout=timeout)
    sock.sendall(b"\x05\x01\x00")
    assert recv_exact(sock, 2) == b"\x05\x00"
    sock.sendall(b"\x05\x01\x00\x01" + socket.inet_aton(host) + struct.pack("!H", port))
    return sock, recv_exact(sock, 10)


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()
