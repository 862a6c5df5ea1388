"""CLI commands for chatbridge."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from chatbridge import __version__
from chatbridge.api.app import create_app, serve as serve_api
from chatbridge.client.providers import create_library
from chatbridge.config import ChatBridgeConfig, get_config, reload_config
from chatbridge.core.credentials import CredentialStore
from chatbridge.core.health import HealthMonitor, HealthMonitorConfig
from chatbridge.core.session_manager import LifecycleConfig, SessionLifecycleManager
from chatbridge.crm.forwarder import WebhookForwarder
from chatbridge.errors import BridgeError
from chatbridge.sink.sqlite import SinkRow, SqliteSinkConfig, SqliteStatusSink

logger = logging.getLogger(__name__)

# Rich help formatting
MAIN_HELP = """
[bold cyan]chatbridge[/] - Bridge messaging sessions to your CRM

chatbridge keeps many per-customer messaging sessions alive: it pairs them,
reconnects them when they drop, mirrors their status to a database, and
forwards inbound messages to the CRM.

[bold yellow]Quick Start:[/]
  chatbridge config init
  chatbridge serve

[bold yellow]Common Workflows:[/]
  [dim]Run the bridge:[/]            chatbridge serve --port 8080
  [dim]Check session status:[/]      chatbridge sessions
  [dim]Inspect stored logins:[/]     chatbridge credentials list

Run [bold]chatbridge <command> --help[/] for detailed help on any command.
"""

app = typer.Typer(
    name="chatbridge",
    help=MAIN_HELP,
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)
console = Console()

# Set by --config; None means the default location
_config_path: Path | None = None


def _config_file() -> Path:
    from chatbridge.config import DEFAULT_CONFIG_PATH

    return _config_path or DEFAULT_CONFIG_PATH


@app.callback()
def main(
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Config file to use instead of ~/.chatbridge/config.toml",
        metavar="PATH",
    ),
) -> None:
    """Load configuration before any command runs."""
    global _config_path
    _config_path = config_path
    if config_path is not None:
        reload_config(config_path)


def _setup_logging(level: str, verbose: bool = False) -> None:
    """Route log records through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def _format_status(status: str) -> str:
    """Format a sink status with color."""
    match status:
        case "qr":
            return "[yellow]Awaiting scan[/yellow]"
        case "connected":
            return "[cyan]Connected[/cyan]"
        case "ready":
            return "[green]Ready[/green]"
        case "disconnected":
            return "[dim]Disconnected[/dim]"
        case "logged_out":
            return "[dim]Logged out[/dim]"
        case "error":
            return "[red]Error[/red]"
        case _:
            return status


def build_manager(
    config: ChatBridgeConfig,
    sink: SqliteStatusSink | None = None,
    forwarder: WebhookForwarder | None = None,
) -> SessionLifecycleManager:
    """Wire a lifecycle manager from configuration."""
    return SessionLifecycleManager(
        library=create_library(config.provider),
        credential_store=CredentialStore(config.storage.credentials_path),
        sink=sink,
        config=LifecycleConfig.from_config(config),
        forwarder=forwarder,
    )


async def _run_server(config: ChatBridgeConfig, host: str, port: int) -> None:
    sink = SqliteStatusSink(SqliteSinkConfig(db_path=config.storage.db_path))
    await sink.initialize()
    forwarder = WebhookForwarder.from_config(config.forwarding) if config.forwarding.enabled else None
    manager = build_manager(config, sink=sink, forwarder=forwarder)
    monitor = HealthMonitor(manager.registry, HealthMonitorConfig.from_config(config))

    try:
        await manager.restore_existing()
        await monitor.start()
        await serve_api(create_app(manager), host, port, log_level=config.logging.level)
    finally:
        await monitor.stop()
        await manager.shutdown()
        if forwarder is not None:
            await forwarder.close()
        await sink.close()


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", "-h", help="Interface to bind"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Run the bridge: restore sessions, monitor them, and serve the HTTP API.

    [bold yellow]Examples:[/]

      [dim]# Serve with settings from config.toml[/]
      chatbridge serve

      [dim]# Serve on all interfaces with debug logs[/]
      chatbridge serve --host 0.0.0.0 --port 9000 -v
    """
    config = get_config()
    _setup_logging(config.logging.level, verbose)

    host = host or config.api.host
    port = port or config.api.port
    console.print(
        Panel(
            Text.from_markup(
                f"[bold]Provider:[/bold] {config.provider.name}\n"
                f"[bold]Data dir:[/bold] {config.storage.data_path}\n"
                f"[bold]Forwarding:[/bold] "
                f"{config.forwarding.webhook_url or '[dim]disabled[/dim]'}\n"
                f"[bold]API:[/bold] http://{host}:{port}"
            ),
            title=f"[bold cyan]chatbridge v{__version__}[/bold cyan]",
            border_style="cyan",
        )
    )

    try:
        asyncio.run(_run_server(config, host, port))
    except BridgeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


async def _load_rows(config: ChatBridgeConfig, status: str | None) -> list[SinkRow]:
    sink = SqliteStatusSink(SqliteSinkConfig(db_path=config.storage.db_path))
    await sink.initialize()
    try:
        return await sink.list_rows(status=status)
    finally:
        await sink.close()


@app.command()
def sessions(
    status: str | None = typer.Option(
        None,
        "--status",
        "-s",
        help="Filter: qr, connected, ready, disconnected, logged_out, error",
        metavar="STATUS",
    ),
) -> None:
    """
    Show the last known status of every session.

    Reads the status database written by a running bridge.

    [bold yellow]Examples:[/]

      chatbridge sessions
      chatbridge sessions -s error
    """
    config = get_config()
    if not config.storage.db_path.exists():
        console.print("[dim]No status database yet. Run 'chatbridge serve' first.[/dim]")
        return

    rows = asyncio.run(_load_rows(config, status))
    if not rows:
        console.print("[dim]No sessions found.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Phone")
    table.add_column("Updated", style="dim")

    for row in rows:
        table.add_row(
            row.id,
            _format_status(row.status),
            row.phone_number or "-",
            row.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)


# Credentials subcommand group
credentials_app = typer.Typer(
    name="credentials",
    help="Inspect and remove stored session credentials",
    no_args_is_help=True,
)
app.add_typer(credentials_app, name="credentials")


@credentials_app.command(name="list")
def credentials_list() -> None:
    """List sessions with stored credential material."""
    config = get_config()
    store = CredentialStore(config.storage.credentials_path)
    session_ids = store.list_sessions()

    if not session_ids:
        console.print("[dim]No stored credentials.[/dim]")
        return

    table = Table(title=f"Credentials in {store.root}")
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Files", justify="right")

    for session_id in session_ids:
        files = sum(1 for _ in (store.root / session_id).glob("*.json"))
        table.add_row(session_id, str(files))

    console.print(table)


@credentials_app.command(name="purge")
def credentials_purge(
    session_id: str = typer.Argument(..., help="Session whose credentials to delete"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
) -> None:
    """
    Delete a session's stored credentials.

    The session will need to be paired again. Do not run this against a
    session a running bridge is using.
    """
    config = get_config()
    store = CredentialStore(config.storage.credentials_path)

    if not store.has_existing(session_id):
        console.print(f"[red]Error:[/red] No credentials for session: {session_id}")
        raise typer.Exit(1)

    if not force:
        confirm = typer.confirm(f"Delete credentials for {session_id}?")
        if not confirm:
            console.print("[dim]Cancelled.[/dim]")
            return

    store.delete(session_id)
    console.print(f"[green]Deleted credentials:[/green] {session_id}")


# Config subcommand group
config_app = typer.Typer(
    name="config",
    help="Manage chatbridge configuration",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")


@config_app.command(name="show")
def config_show() -> None:
    """
    Show current configuration.

    Displays all settings from ~/.chatbridge/config.toml, or the defaults if
    no config file exists.
    """
    config = get_config()
    config_file = _config_file()
    config_exists = config_file.exists()

    lines = [
        f"[bold]Config file:[/bold] {config_file}",
        f"[bold]Status:[/bold] {'[green]exists[/green]' if config_exists else '[yellow]using defaults[/yellow]'}",
        "",
        "[bold cyan]Sessions[/bold cyan]",
        f"  Max attempts: {config.sessions.max_attempts}",
        f"  Settle delay: {config.sessions.settle_delay_seconds}s",
        "",
        "[bold cyan]Reconnect[/bold cyan]",
        f"  Base delay: {config.reconnect.base_delay_ms}ms",
        f"  Max delay: {config.reconnect.max_delay_ms}ms",
        "",
        "[bold cyan]Connection[/bold cyan]",
        f"  Connect timeout: {config.connection.connect_timeout_seconds}s",
        f"  Keep-alive: {config.connection.keep_alive_seconds}s",
        "",
        "[bold cyan]Health[/bold cyan]",
        f"  Interval: {config.health.interval_seconds}s",
        f"  Stale threshold: {config.health.stale_threshold_seconds}s",
        "",
        "[bold cyan]Storage[/bold cyan]",
        f"  Data dir: {config.storage.data_path}",
        "",
        "[bold cyan]Provider[/bold cyan]",
        f"  Name: {config.provider.name}",
        "",
        "[bold cyan]Forwarding[/bold cyan]",
        f"  Webhook: {config.forwarding.webhook_url or '[dim]disabled[/dim]'}",
        f"  Token: {'[green]set[/green]' if config.forwarding.get_token() else '[yellow]not set[/yellow]'}",
        "",
        "[bold cyan]API[/bold cyan]",
        f"  Listen: {config.api.host}:{config.api.port}",
        "",
        "[bold cyan]Logging[/bold cyan]",
        f"  Level: {config.logging.level}",
    ]

    console.print(
        Panel(
            Text.from_markup("\n".join(lines)),
            title="[bold cyan]chatbridge Configuration[/bold cyan]",
            border_style="cyan",
        )
    )


@config_app.command(name="init")
def config_init(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite existing config file",
    ),
) -> None:
    """
    Create a default configuration file.

    Creates ~/.chatbridge/config.toml (or the --config path) with default settings.
    """
    from chatbridge.config import generate_default_config

    config_file = _config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)

    if config_file.exists() and not force:
        console.print(f"[yellow]Config file already exists:[/yellow] {config_file}")
        console.print("Use --force to overwrite.")
        return

    config_file.write_text(generate_default_config())

    console.print(f"[green]Created config file:[/green] {config_file}")
    console.print()
    console.print("[bold]Next steps:[/bold]")
    console.print("  1. Set [cyan]forwarding.webhook_url[/cyan] to your CRM webhook")
    console.print("  2. Pick a [cyan]provider.name[/cyan] (loopback runs without a network)")
    console.print("  3. Run [cyan]chatbridge serve[/cyan]")


@app.command()
def version() -> None:
    """Show version number."""
    console.print(f"chatbridge v{__version__}")


if __name__ == "__main__":
    app()
