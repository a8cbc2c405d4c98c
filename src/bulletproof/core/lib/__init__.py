"""SOCKS5 wire components: the local relay and the upstream dialer."""

from .relay_server import Relay, RelayConfig, RelayServer
from .relay_stats import RelayStats, StatsSnapshot
from .socks_client import dial_via, http_get_via
from .socks_handler import RelayHandler

__all__ = [
    "Relay",
    "RelayConfig",
    "RelayHandler",
    "RelayServer",
    "RelayStats",
    "StatsSnapshot",
    "dial_via",
    "http_get_via",
]
