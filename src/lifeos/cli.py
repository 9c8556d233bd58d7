"""CLI for the LifeOS background engine."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click

from lifeos import __version__
from lifeos.config import ConfigError, EngineConfig, load_config
from lifeos.core.logging import configure_logging

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """LifeOS engine: reminder scanning and Google Calendar sync."""


def _load(config_path: Path | None) -> EngineConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)


@cli.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to lifeos.toml (defaults to $LIFEOS_CONFIG, then environment only)",
)
def run(config_path: Path | None) -> None:
    """Run both periodic jobs until SIGINT/SIGTERM."""
    config = _load(config_path)
    click.echo(f"Starting engine {config.name}")
    asyncio.run(_run_engine(config))


@cli.command("init-db")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to lifeos.toml",
)
def init_db(config_path: Path | None) -> None:
    """Create the tables the engine reads and writes (idempotent)."""
    config = _load(config_path)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        engine_name=config.name,
    )
    asyncio.run(_init_db(config))
    click.echo(f"Schema ready in database {config.database.name}")


async def _run_engine(config: EngineConfig) -> None:
    from lifeos.daemon import Engine

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    engine = Engine(config)
    await engine.start()
    try:
        await shutdown_event.wait()
    finally:
        await engine.shutdown()


async def _init_db(config: EngineConfig) -> None:
    from lifeos.db import Database
    from lifeos.store import PostgresStore

    db = Database.from_config(config.database)
    await db.provision()
    pool = await db.connect()
    try:
        await PostgresStore(pool).ensure_schema()
    finally:
        await db.close()


if __name__ == "__main__":
    cli()
