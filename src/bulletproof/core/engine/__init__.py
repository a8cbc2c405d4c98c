"""External engine supervision.

This package wraps the two external programs the orchestrator depends on:
- the tunnel engine, which exposes an upstream SOCKS5 port
- the TUN virtualization engine, which routes system traffic into the relay

Both are started through the :class:`ProcessRunner` abstraction so that the
supervision and search logic can be exercised against fake processes.
"""

from .base import SupervisedEngine
from .process import ProcessHandle, ProcessRunner, SubprocessRunner
from .scan import Endpoint, scan_endpoints
from .tunnel import INTERNAL_BIND, RESERVED_PORT, TunnelConfig, TunnelEngine, TunnelMode
from .virtualization import VirtualizationConfig, VirtualizationEngine

__all__ = [
    "INTERNAL_BIND",
    "RESERVED_PORT",
    "Endpoint",
    "ProcessHandle",
    "ProcessRunner",
    "SubprocessRunner",
    "SupervisedEngine",
    "TunnelConfig",
    "TunnelEngine",
    "TunnelMode",
    "VirtualizationConfig",
    "VirtualizationEngine",
    "scan_endpoints",
]
