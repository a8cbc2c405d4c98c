"""Live session panel shown by ``bulletproof connect``."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Final

from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from bulletproof.core.lib.relay_stats import StatsSnapshot
from bulletproof.core.types import Status
from bulletproof.core.utils.utils import format_bytes, format_duration

from .prompt import PromptHandler, console

BANDWIDTH_THRESHOLD: Final = 100  # bytes


class SessionUI(PromptHandler):
    """Render the manager status and relay statistics until stopped."""

    def __init__(
        self,
        status: Callable[[], Status],
        stats: Callable[[], StatsSnapshot | None] | None = None,
    ) -> None:
        """Initialize the session panel.

        Args:
            status: Returns the current session status
            stats: Returns relay statistics, or None when there is no relay
        """
        super().__init__(refresh_rate=0.5)
        self._status = status
        self._stats = stats or (lambda: None)
        self._last_bandwidth = 0.0
        self._start_time = time.monotonic()
        self._spinner = Spinner("dots", text="")
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    def _generate_table(self) -> Table:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Property", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        status = self._status()
        elapsed = time.monotonic() - self._start_time
        state = "[green]connected" if status.connected else "[red]disconnected"
        table.add_row("State", state)
        table.add_row("Message", status.message or "-")
        table.add_row("Provider", status.provider_kind or "-")
        table.add_row("SOCKS5", status.bind_address or "-")
        table.add_row("Integration", status.integration_mode or "direct")
        if status.exit_country:
            table.add_row("Exit country", status.exit_country)
        if status.pac_enabled:
            table.add_row("System proxy", "PAC enabled")
        if status.virtualization_active:
            table.add_row("TUN", "active")

        stats = self._stats()
        if stats is not None:
            if abs(stats.bandwidth - self._last_bandwidth) > BANDWIDTH_THRESHOLD:
                self._last_bandwidth = stats.bandwidth
            spinner_text = self._spinner.render(elapsed)
            table.add_row("Bandwidth", Text.assemble(spinner_text, f" {format_bytes(self._last_bandwidth)}/s"))
            table.add_row("Active Connections", str(stats.active_connections))
            table.add_row("Chained / Direct", f"{stats.chained_connections} / {stats.direct_connections}")
            table.add_row("Failed", str(stats.failed_connections))
            table.add_row("Total Data Transferred", format_bytes(stats.bytes_sent + stats.bytes_received))
        table.add_row("Uptime", format_duration(elapsed))
        return table

    def _generate_display(self) -> Panel:
        status = self._status()
        title = Text(f"bulletproof: {status.bind_address or 'not connected'}", style="bold cyan")
        return Panel(
            self._generate_table(),
            title=title,
            subtitle="Press Ctrl+C to disconnect",
            border_style="blue" if status.connected else "red",
            padding=(1, 2),
        )

    def run(self) -> None:
        """Refresh the panel until :meth:`stop` is called or Ctrl+C is pressed."""
        with self.create_live_display(self._generate_display()) as live:
            while not self._stop.is_set():
                live.update(self._generate_display(), refresh=True)
                self._stop.wait(self._refresh_rate)


def create_session_ui(
    status: Callable[[], Status],
    stats: Callable[[], StatsSnapshot | None] | None = None,
) -> SessionUI:
    console.clear()
    return SessionUI(status, stats)
