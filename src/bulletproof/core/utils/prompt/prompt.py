"""Base prompt handling and UI components."""

from rich.console import Console
from rich.live import Live
from rich.spinner import Spinner

console = Console()


class PromptHandler:
    """Base class for live terminal displays."""

    def __init__(self, refresh_rate: float = 1.0) -> None:
        """Set up the refresh rate and spinner style for terminal displays."""
        self._refresh_rate = refresh_rate
        self._spinner = Spinner("dots")

    def create_live_display(self, content, refresh_per_second: int = 4) -> Live:
        """Create a live updating display."""
        return Live(
            content,
            console=console,
            refresh_per_second=refresh_per_second,
            transient=False,
            auto_refresh=False,
        )
