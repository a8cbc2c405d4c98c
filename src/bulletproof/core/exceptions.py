"""Custom exceptions for the connection orchestrator.

This module defines the error taxonomy used throughout the package:
- Caller errors (unknown provider kind, unknown engine mode)
- Session prerequisites (identity registration, local bind availability)
- Engine supervision (spawn failures, readiness timeouts, unexpected exits)
- SOCKS5 chaining and wire-level protocol errors
- Candidate search outcomes (exhausted, cancelled)

Caller errors fail immediately. Engine and chaining errors are usually caught
by the component one level up, which either moves on to the next candidate or
degrades to a weaker mode of service.

Example:
    try:
        manager.connect(request)
    except RegistrationFailed as e:
        console.print(f"[red]Identity registration failed: {e}")
"""


class BulletproofError(Exception):
    """Base exception for orchestrator errors."""


class UnknownProvider(BulletproofError):
    """Raised when a connect request names a provider kind nobody registered."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"unknown provider: {kind!r}")
        self.kind = kind


class UnknownMode(BulletproofError):
    """Raised when a tunnel engine is configured with an unsupported mode."""

    def __init__(self, mode: str) -> None:
        super().__init__(f"unknown mode: {mode!r}")
        self.mode = mode


class RegistrationFailed(BulletproofError):
    """Raised when the device identity prerequisite cannot be satisfied."""


class BindUnavailable(BulletproofError):
    """Raised when no local address can be bound for the relay."""


class SpawnFailed(BulletproofError):
    """Raised when an external engine binary cannot be started."""

    def __init__(self, binary: str, reason: object) -> None:
        super().__init__(f"failed to start {binary}: {reason}")
        self.binary = binary


class ReadinessTimeout(BulletproofError):
    """Raised when a started engine never opened its SOCKS5 port in time."""

    def __init__(self, address: str, timeout: float) -> None:
        super().__init__(f"timeout waiting for {address} after {timeout:g}s")
        self.address = address
        self.timeout = timeout


class ProtocolError(BulletproofError):
    """Raised on malformed or truncated SOCKS5 traffic."""


class AuthNotAccepted(BulletproofError):
    """Raised when an upstream SOCKS5 server refuses the no-auth method."""


class UpstreamConnectFailed(BulletproofError):
    """Raised when an upstream SOCKS5 server answers CONNECT with a failure code."""

    def __init__(self, code: int) -> None:
        super().__init__(f"socks5 connect failed: 0x{code:02x}")
        self.code = code


class ProcessExit(BulletproofError):
    """Recorded when a supervised process terminates."""

    def __init__(self, name: str, returncode: int, *, killed: bool = False) -> None:
        how = "killed" if killed else "exited"
        super().__init__(f"{name} {how} with code {returncode}")
        self.name = name
        self.returncode = returncode
        self.killed = killed


class SearchExhausted(BulletproofError):
    """Raised when every candidate of a search failed."""

    def __init__(self, last_error: BaseException | None) -> None:
        detail = str(last_error) if last_error is not None else "no candidates"
        super().__init__(detail)
        self.last_error = last_error


class SearchCancelled(BulletproofError):
    """Raised when a running search was cancelled by a disconnect."""


class DNSResolutionError(BulletproofError):
    """Raised when DNS resolution fails."""


class SystemProxyError(BulletproofError):
    """Raised when the OS system proxy cannot be configured."""
