"""
notifybot CLI entry point.

Commands:
    notifybot version — Print the version
    notifybot serve   — Run the bot until interrupted or fatally failed
    notifybot purge   — Sweep expired ephemeral bindings once
    notifybot stats   — Show registration and binding counts
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="notifybot",
    help="notifybot — push notification relay for ephemeral-ID networks.",
    add_completion=False,
)

console = Console()


def _load_config(config_path: Path | None, overrides: dict | None = None):
    from notifybot.core.config import NotifyBotConfig
    from notifybot.core.errors import ConfigError

    if config_path is not None and not config_path.exists():
        console.print(f"[red]Config file not found: {config_path}[/red]")
        raise typer.Exit(2)
    try:
        return NotifyBotConfig.load(overrides=overrides, project_path=config_path)
    except ConfigError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(2)


def _require_sqlite(config, command: str) -> None:
    # A memory store only lives inside a running serve process
    if config.storage.backend != "sqlite":
        console.print(
            f"[red]notifybot {command} needs storage.backend = \"sqlite\" "
            f"(configured: {config.storage.backend})[/red]"
        )
        raise typer.Exit(2)


@app.command()
def version() -> None:
    """Print the version."""
    from notifybot import __version__

    console.print(f"notifybot v{__version__}")


@app.command()
def serve(
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to notifybot.toml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
) -> None:
    """Run the notification bot."""
    config = _load_config(config_path)
    from notifybot.middleware.logging import setup_logging

    level = logging.DEBUG if verbose else config.logging.console_level.upper()
    setup_logging(log_dir=Path(config.logging.dir), console_level=level)

    error = asyncio.run(_serve(config))
    if error is not None:
        console.print(f"[red]Polling stopped: {error.message}[/red]")
        raise typer.Exit(1)


async def _serve(config):
    from notifybot.bot import NotificationBot
    from notifybot.middleware.logging import EventLogger

    bot = await NotificationBot.from_config(config)
    bot.bus.use(EventLogger(Path(config.logging.dir), log_events=config.logging.log_events).middleware)
    await bot.start()
    console.print("[green]notifybot running[/green] [dim](Ctrl+C to stop)[/dim]")
    try:
        return await bot.wait_fatal()
    finally:
        await bot.stop()


@app.command()
def purge(
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to notifybot.toml"),
) -> None:
    """Delete ephemeral bindings below the retention floor."""
    config = _load_config(config_path)
    _require_sqlite(config, "purge")
    floor, deleted = asyncio.run(_purge(config))
    console.print(f"Purged {deleted} bindings below epoch {floor}")


async def _purge(config) -> tuple[int, int]:
    from notifybot.bot import build_scheme
    from notifybot.store.sqlite import sqlite_stores

    scheme = build_scheme(config)
    registrations, ephemerals = await sqlite_stores(config.storage.path, scheme)
    try:
        floor = scheme.retention_floor(time.time_ns(), config.rotation.retained_epochs)
        return floor, await ephemerals.purge_epochs_below(floor)
    finally:
        await ephemerals.close()


@app.command()
def stats(
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to notifybot.toml"),
) -> None:
    """Show how many devices are registered and bound."""
    config = _load_config(config_path)
    _require_sqlite(config, "stats")
    registered, bound, latest = asyncio.run(_stats(config))

    table = Table(title="notifybot")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Registrations", str(registered))
    table.add_row("Ephemeral bindings", str(bound))
    table.add_row("Latest epoch", "—" if latest is None else str(latest))
    console.print(table)


async def _stats(config) -> tuple[int, int, int | None]:
    from notifybot.bot import build_scheme
    from notifybot.store.sqlite import sqlite_stores

    registrations, ephemerals = await sqlite_stores(config.storage.path, build_scheme(config))
    try:
        return (
            await registrations.count_registrations(),
            await ephemerals.count_bindings(),
            await ephemerals.latest_epoch(),
        )
    finally:
        await registrations.close()


if __name__ == "__main__":
    app()
