"""CLI for concierge: run the daemon, run one reminder cycle, scaffold a config."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click

from concierge.config import CONFIG_FILENAME

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_ROOT = Path("config")


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Concierge: appointment scheduling and reminder daemon."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Path to the concierge config directory",
)
def run(config_path: Path) -> None:
    """Start the daemon and serve MCP tools until SIGINT/SIGTERM."""
    click.echo(f"Starting concierge from {config_path}")
    asyncio.run(_run_daemon(config_path))


@cli.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Path to the concierge config directory",
)
def remind(config_path: Path) -> None:
    """Run one reminder cycle and print its report (for an external timer)."""
    report = asyncio.run(_run_reminders_once(config_path))
    click.echo(json.dumps(report, indent=2))


@cli.command()
@click.argument("name")
@click.option("--port", type=int, required=True, help="Port for the MCP server")
@click.option(
    "--dir",
    "config_root",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_ROOT,
    help="Parent directory for config directories",
)
def init(name: str, port: int, config_root: Path) -> None:
    """Scaffold a new concierge configuration directory."""
    config_dir = config_root / name
    if config_dir.exists():
        click.echo(f"Directory already exists: {config_dir}")
        sys.exit(1)

    config_dir.mkdir(parents=True)
    toml_content = f"""[concierge]
name = "{name}"
port = {port}
description = ""

[concierge.db]
name = "concierge_{name}"

[concierge.logging]
level = "INFO"
format = "text"

[modules.calendar]
provider = "google"
calendar_id = "primary"

[modules.email]
transport = "smtp"

[modules.appointments]

[modules.appointments.reminders]
enabled = true
"""
    (config_dir / CONFIG_FILENAME).write_text(toml_content)
    click.echo(f"Created concierge scaffold: {config_dir}/")


async def _run_daemon(config_path: Path) -> None:
    from concierge.daemon import ConciergeDaemon

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = ConciergeDaemon(config_path)
    await daemon.start()
    click.echo(f"Concierge {daemon.config.name} running on port {daemon.config.port}")

    await shutdown_event.wait()
    await daemon.shutdown()


async def _run_reminders_once(config_path: Path) -> dict:
    from concierge.daemon import ConciergeDaemon

    daemon = ConciergeDaemon(config_path)
    await daemon.start(serve=False)
    try:
        appointments = daemon.get_module("appointments")
        scheduler = getattr(appointments, "scheduler", None)
        if scheduler is None:
            raise click.ClickException("The appointments module is not enabled in this config")
        report = await scheduler.run_cycle()
        return report.model_dump(mode="json")
    finally:
        await daemon.shutdown()
