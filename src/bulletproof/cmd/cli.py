"""Command-line interface for the bulletproof tunnel orchestrator.

This module wires settings, providers and the session manager together:
- ``connect``: bring up a session and show a live status panel until Ctrl+C
- ``scan``: list candidate engine endpoints
- ``test-socks``: fetch a page through a local SOCKS5 address
- ``identity show`` / ``identity reset``: inspect or drop the device identity

Example:
    # Relay on the first free port in 8087-8090, PAC system proxy enabled:
    $ bulletproof connect warp --integration pac

    # Same request, direct-dial while the tunnel warms up:
    $ bulletproof connect warp -o direct_fallback=1
"""

from __future__ import annotations

from pathlib import Path

import pyperclip
import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from bulletproof import __version__
from bulletproof.core.config import load_settings
from bulletproof.core.engine.scan import scan_endpoints
from bulletproof.core.exceptions import BulletproofError
from bulletproof.core.lib.relay_stats import StatsSnapshot
from bulletproof.core.lib.socks_client import http_get_via
from bulletproof.core.manager import Manager
from bulletproof.core.providers import default_providers
from bulletproof.core.store import load_bind
from bulletproof.core.system.identity import IdentityStore
from bulletproof.core.types import ConnectRequest
from bulletproof.core.utils.log_config import setup_logging
from bulletproof.core.utils.prompt import create_session_ui

console = Console()
app = typer.Typer(help="Always-on local SOCKS5 relay in front of interchangeable tunnel engines")
identity_app = typer.Typer(help="Inspect or reset the device identity")
app.add_typer(identity_app, name="identity")

DEFAULT_TEST_BIND = "127.0.0.1:8087"


def parse_options(pairs: list[str] | None) -> dict[str, str]:
    """Turn repeated ``key=value`` flags into a dict."""
    options: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected key=value, got {pair!r}", param_hint="--option")
        options[key.strip()] = value.strip()
    return options


def _state_dir(state_dir: Path | None) -> Path:
    return (state_dir or load_settings().state_dir).expanduser()


@app.callback(invoke_without_command=True)
def version_callback(ctx: typer.Context):
    """Show version information."""
    if ctx.invoked_subcommand is None:
        console.print(f"[cyan]bulletproof v{__version__}[/cyan]")


@app.command(name="connect")
def connect(
    provider: str = typer.Argument(..., help="Provider kind: warp, gool or psiphon"),
    country: str | None = typer.Option(None, "--country", "-c", help="Exit country code"),
    server: str | None = typer.Option(None, "--server", help="Remote endpoint host"),
    port: int = typer.Option(0, "--port", help="Remote endpoint port"),
    bind: str | None = typer.Option(None, "--bind", help="Local SOCKS5 listen address"),
    key: str | None = typer.Option(None, "--key", help="WARP+ license key"),
    integration: str | None = typer.Option(None, "--integration", help="direct, pac or tun"),
    option: list[str] | None = typer.Option(None, "--option", "-o", help="Extra provider option key=value"),
    state_dir: Path | None = typer.Option(None, "--state-dir", help="State directory"),
    identity: bool = typer.Option(False, "--identity/--no-identity", help="Require a device identity"),
    copy: bool = typer.Option(True, "--copy/--no-copy", help="Copy the SOCKS5 address to the clipboard"),
    debug: bool = typer.Option(default=False, help="Enable debug logging"),
):
    """Connect and keep the session up until Ctrl+C."""
    settings = load_settings()
    setup_logging("DEBUG" if debug else settings.log_level)

    options = parse_options(option)
    for name, value in (("bind", bind), ("key", key), ("integration", integration)):
        if value:
            options[name] = value

    manager = Manager(
        _state_dir(state_dir),
        default_providers(settings),
        identity=IdentityStore() if identity else None,
    )
    request = ConnectRequest(provider, exit_country=country, server=server, port=port, options=options)
    try:
        status = manager.connect(request)
    except (BulletproofError, ValueError) as e:
        logger.error(f"Connect failed: {e}")
        console.print(f"[red]Connect failed: {e}")
        raise typer.Exit(1) from e

    console.print(f"[bold green]{status.message} on {status.bind_address}")
    if copy and status.bind_address:
        try:
            pyperclip.copy(status.bind_address)
            console.print("[bold green]SOCKS5 address copied to clipboard")
        except pyperclip.PyperclipException as e:
            console.print(f"[yellow]Could not copy to clipboard: {e}")

    active = manager.providers[provider]

    def relay_stats() -> StatsSnapshot | None:
        relay = getattr(active, "relay", None)
        return relay.stats.snapshot() if relay is not None else None

    ui = create_session_ui(manager.status, relay_stats)
    try:
        ui.run()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        manager.disconnect()
        console.print("[yellow]Disconnected")


@app.command(name="scan")
def scan(
    binary: str | None = typer.Option(None, "--bin", help="Engine binary"),
    debug: bool = typer.Option(default=False, help="Enable debug logging"),
):
    """Scan for candidate engine endpoints."""
    settings = load_settings()
    setup_logging("DEBUG" if debug else settings.log_level)
    with console.status("[cyan]Scanning endpoints..."):
        try:
            endpoints = scan_endpoints(binary or settings.warpplus_bin)
        except BulletproofError as e:
            console.print(f"[red]Scan failed: {e}")
            raise typer.Exit(1) from e

    if not endpoints:
        console.print("[yellow]No endpoints found")
        return
    table = Table(title="Endpoints")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Address", style="cyan")
    table.add_column("Score", style="green", justify="right")
    for index, endpoint in enumerate(endpoints, start=1):
        table.add_row(str(index), endpoint.address, str(endpoint.score))
    console.print(table)


@app.command(name="test-socks")
def test_socks(
    bind: str | None = typer.Option(None, "--bind", help="SOCKS5 address (default: last relay bind)"),
    host: str = typer.Option("cp.cloudflare.com", "--host", help="Host to fetch over plain HTTP"),
    path: str = typer.Option("/", "--path", help="Request path"),
    max_bytes: int = typer.Option(4096, "--max-bytes", help="Body bytes to show"),
    state_dir: Path | None = typer.Option(None, "--state-dir", help="State directory"),
):
    """Fetch one page through a SOCKS5 address."""
    address = bind or load_bind(_state_dir(state_dir)) or DEFAULT_TEST_BIND
    try:
        status_line, body = http_get_via(address, host, path, max_bytes=max_bytes)
    except (BulletproofError, OSError) as e:
        console.print(f"[red]Request via {address} failed: {e}")
        raise typer.Exit(1) from e
    console.print(f"[green]{status_line}[/green] via {address}")
    if body:
        console.print(body, markup=False)


@identity_app.command(name="show")
def identity_show(state_dir: Path | None = typer.Option(None, "--state-dir", help="State directory")):
    """Show the saved device identity."""
    directory = _state_dir(state_dir)
    identity = IdentityStore().load(directory)
    if identity is None:
        console.print(f"[yellow]No identity in {directory}")
        raise typer.Exit(1)
    table = Table(show_header=False, box=None)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("File", str(IdentityStore.path(directory)))
    table.add_row("Device ID", identity.device_id)
    table.add_row("Account ID", identity.account_id or "-")
    table.add_row("Public key", identity.public_key or "-")
    table.add_row("License", "set" if identity.license else "-")
    console.print(table)


@identity_app.command(name="reset")
def identity_reset(state_dir: Path | None = typer.Option(None, "--state-dir", help="State directory")):
    """Delete the saved device identity."""
    directory = _state_dir(state_dir)
    try:
        IdentityStore().reset(directory)
    except OSError as e:
        console.print(f"[red]Could not reset identity: {e}")
        raise typer.Exit(1) from e
    console.print(f"[green]Identity removed from {directory}")


if __name__ == "__main__":
    app()
