"""Statistics tracking for the local relay.

This module provides per-relay statistics, including:
- Active connection counting
- Chained, direct and failed connection counters
- Data transfer tracking in both directions
- A per-second bandwidth history covering the averaging window

All operations are thread-safe: the relay updates the counters from its
connection and copy threads while the status panel reads them.

Example:
    stats = RelayStats()
    stats.connection_started()
    stats.update_bytes(sent=1024, received=2048)
    print(stats.snapshot().bandwidth)
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final

BANDWIDTH_WINDOW: Final = 5  # seconds


@dataclass(frozen=True)
class StatsSnapshot:
    active_connections: int
    chained_connections: int
    direct_connections: int
    failed_connections: int
    bytes_sent: int
    bytes_received: int
    bandwidth: float
    uptime: float


class RelayStats:
    """Thread-safe statistics tracker for one relay."""

    def __init__(self) -> None:
        """Initialize the tracker with zeroed counters and an empty history."""
        self.active_connections = 0
        self.chained_connections = 0
        self.direct_connections = 0
        self.failed_connections = 0
        self.total_bytes_sent = 0
        self.total_bytes_received = 0
        # [second, bytes] buckets, newest last
        self.bandwidth_history: deque[list[int]] = deque(maxlen=BANDWIDTH_WINDOW + 1)
        self.start_time = datetime.now(tz=UTC)
        self._started = time.monotonic()
        self._lock = threading.Lock()

    def update_bytes(self, sent: int, received: int) -> None:
        """Update byte transfer statistics.

        Args:
            sent: Bytes forwarded from clients to upstream
            received: Bytes forwarded from upstream back to clients
        """
        with self._lock:
            self.total_bytes_sent += sent
            self.total_bytes_received += received
            second = int(time.monotonic())
            if self.bandwidth_history and self.bandwidth_history[-1][0] == second:
                self.bandwidth_history[-1][1] += sent + received
            else:
                self.bandwidth_history.append([second, sent + received])

    def _bandwidth_locked(self) -> float:
        cutoff = int(time.monotonic()) - BANDWIDTH_WINDOW
        recent = sum(bytes_ for second, bytes_ in self.bandwidth_history if second > cutoff)
        return recent / BANDWIDTH_WINDOW

    def get_bandwidth(self) -> float:
        """Average bandwidth over the last few seconds in bytes/second."""
        with self._lock:
            return self._bandwidth_locked()

    def connection_started(self) -> None:
        with self._lock:
            self.active_connections += 1

    def connection_ended(self) -> None:
        with self._lock:
            self.active_connections -= 1

    def record_route(self, *, chained: bool) -> None:
        with self._lock:
            if chained:
                self.chained_connections += 1
            else:
                self.direct_connections += 1

    def record_failure(self) -> None:
        with self._lock:
            self.failed_connections += 1

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                active_connections=self.active_connections,
                chained_connections=self.chained_connections,
                direct_connections=self.direct_connections,
                failed_connections=self.failed_connections,
                bytes_sent=self.total_bytes_sent,
                bytes_received=self.total_bytes_received,
                bandwidth=self._bandwidth_locked(),
                uptime=time.monotonic() - self._started,
            )
