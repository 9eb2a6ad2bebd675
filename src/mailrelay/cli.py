"""Command-line interface for mailrelay.

Provides commands for configuration validation, database setup, API key
management, thread maintenance and the HTTP server.

Usage:
    python -m mailrelay validate-config
    python -m mailrelay init-db
    python -m mailrelay create-api-key --user-id acct_1 --name "mail parser"
    python -m mailrelay backfill-threads
    python -m mailrelay participants THREAD_ID --user-id acct_1
    python -m mailrelay serve
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from mailrelay.config import validate_config_file
from mailrelay.core.logging import configure_logging

if TYPE_CHECKING:
    from mailrelay.config_schema import AppConfig
    from mailrelay.db.store import DatabaseStore

console = Console()


def _load_config_or_exit() -> AppConfig:
    """Load config, printing an actionable message and exiting on failure."""
    from mailrelay.config import load_config
    from mailrelay.core.errors import ConfigLoadError, ConfigValidationError

    try:
        return load_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and adjust it."
        )
        sys.exit(1)


async def _open_store(config: AppConfig) -> DatabaseStore:
    from mailrelay.db.store import DatabaseStore

    store = DatabaseStore(config.database.path)
    await store.initialize()
    return store


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailrelay - inbound email threading, routing and delivery."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the SQLite database and its tables if missing."""
    config = _load_config_or_exit()
    asyncio.run(_open_store(config))
    console.print(f"[green]✓[/green] Database ready at [cyan]{config.database.path}[/cyan]")


@cli.command("create-api-key")
@click.option("--user-id", required=True, help="Account the key authenticates as")
@click.option("--name", default=None, help="Label to recognise the key by")
def create_api_key(user_id: str, name: str | None) -> None:
    """Create an API key. The raw key is printed once and never stored."""
    from mailrelay.auth.api_keys import generate_api_key
    from mailrelay.db.store import ApiKey, new_id

    config = _load_config_or_exit()
    raw_key, key_hash = generate_api_key()

    async def _create() -> None:
        store = await _open_store(config)
        await store.create_api_key(
            ApiKey(id=new_id(), user_id=user_id, key_hash=key_hash, name=name)
        )

    asyncio.run(_create())
    console.print(f"[green]✓[/green] API key created for [cyan]{user_id}[/cyan]\n")
    console.print(f"  {raw_key}\n")
    console.print("[yellow]Store it now, it cannot be shown again.[/yellow]")


@cli.command("backfill-threads")
@click.option("--user-id", default=None, help="Only thread this account's emails")
@click.option("--limit", default=500, type=int, help="Maximum emails to process")
def backfill_threads(user_id: str | None, limit: int) -> None:
    """Assign threads to stored emails that have none, oldest first."""
    from mailrelay.engine.threader import EmailThreader

    config = _load_config_or_exit()

    async def _run():
        store = await _open_store(config)
        return await EmailThreader(store, config.threading).backfill(user_id=user_id, limit=limit)

    try:
        stats = asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)

    console.print("\n[bold]Thread Backfill Summary[/bold]")
    console.print(f"  Processed:   {stats.processed}")
    console.print(f"  New threads: {stats.new_threads}")
    console.print(f"  Joined:      {stats.joined_threads}")
    console.print(f"  Failed:      {stats.failed}")
    if stats.failed:
        sys.exit(1)


@cli.command("participants")
@click.argument("thread_id")
@click.option("--user-id", required=True, help="Account owning the thread")
def participants(thread_id: str, user_id: str) -> None:
    """List the participants of a thread."""
    from mailrelay.engine.participants import ParticipantExtractor

    config = _load_config_or_exit()

    async def _run():
        store = await _open_store(config)
        if await store.get_thread(thread_id, user_id) is None:
            return None
        return await ParticipantExtractor(store).get_thread_participants(thread_id, user_id)

    result = asyncio.run(_run())
    if result is None:
        console.print(f"[red]Error:[/red] Thread {thread_id} not found")
        sys.exit(1)

    table = Table(title=f"Participants of {thread_id}")
    table.add_column("#", justify="right")
    table.add_column("Participant")
    for i, participant in enumerate(result.participants, start=1):
        table.add_row(str(i), participant)
    console.print(table)

    if result.is_partial:
        console.print(
            f"\n[yellow]Warning:[/yellow] {len(result.issues)} stored address value(s) "
            "could not be parsed; the list may be incomplete"
        )
        for issue in result.issues:
            console.print(f"  {issue.email_id} {issue.source}: {issue.error}")


@cli.command("serve")
@click.option(
    "--host",
    default=None,
    help="Host to bind to (default: server.host from config)",
)
@click.option(
    "--port",
    default=None,
    type=int,
    help="Port to bind to (default: server.port from config)",
)
def serve(host: str | None, port: int | None) -> None:
    """Start the HTTP API server."""
    import uvicorn

    from mailrelay.web.app import create_app

    config = _load_config_or_exit()
    host = host or config.server.host
    port = port or config.server.port

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "Put it behind TLS; API keys travel as bearer tokens."
        )

    configure_logging(log_level=config.logging.level, json_output=True)

    app = create_app(config)
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
