"""CLI commands for insightsbot."""

import asyncio
import importlib
import signal
import sys
from pathlib import Path
from typing import Callable

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from insightsbot import __logo__, __version__

app = typer.Typer(
    name="insightsbot",
    help=f"{__logo__} insightsbot - Telegram event dispatch",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} insightsbot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """insightsbot - Telegram event dispatch."""
    pass


def resolve_installer(target: str) -> Callable:
    """Import ``package.module:function``."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise typer.BadParameter(f"Expected 'module:function', got '{target}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"Cannot import {module_name}: {e}") from e
    installer = getattr(module, attr, None)
    if not callable(installer):
        raise typer.BadParameter(f"{target} is not callable")
    return installer


def _mask(value: str) -> str:
    if not value:
        return "[dim]not set[/dim]"
    return value[:4] + "…" + value[-2:] if len(value) > 8 else "…"


@app.command()
def run(
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
    install: list[str] = typer.Option(
        None, "--install", "-i", help="Handler installer 'module:function', called with the dispatcher"
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging"),
):
    """Run the bot until interrupted."""
    from insightsbot.bot.dispatcher import Dispatcher
    from insightsbot.bot.errors import BotError, ConfigError
    from insightsbot.bot.service import BotService
    from insightsbot.config.loader import load_config

    if verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")

    try:
        config = load_config(config_path)
        dispatcher = Dispatcher(handler_timeout=config.dispatch.handler_timeout)
        install = install or []
        for target in install:
            resolve_installer(target)(dispatcher)
        bot = BotService(config, dispatcher)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if not dispatcher.commands and not install:
        console.print("[yellow]Warning: no handlers installed, events will be dropped[/yellow]")

    console.print(f"{__logo__} Starting insightsbot ({config.telegram.mode} mode)...")

    async def _run():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(bot.stop()))
        try:
            await bot.run_forever()
        except BotError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)

    asyncio.run(_run())
    console.print("Stopped.")


@app.command("config")
def show_config(
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
):
    """Show the effective configuration."""
    from insightsbot.bot.errors import ConfigError
    from insightsbot.config.loader import load_config

    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title="insightsbot configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    tg = config.telegram
    table.add_row("telegram.token", _mask(tg.token))
    table.add_row("telegram.mode", tg.mode)
    if tg.mode == "webhook":
        table.add_row("telegram.webhook_url", tg.webhook_url or "[dim]not set[/dim]")
        table.add_row("telegram.webhook_listen", f"{tg.webhook_host}:{tg.webhook_port}")
    table.add_row("dispatch.max_in_flight", str(config.dispatch.max_in_flight))
    table.add_row("dispatch.handler_timeout", str(config.dispatch.handler_timeout))
    table.add_row(
        "rate_limit",
        f"{config.rate_limit.capacity} burst, {config.rate_limit.refill_rate}/s",
    )
    table.add_row("delivery.max_message_length", str(config.delivery.max_message_length))

    console.print(table)

    try:
        config.validate_for_start()
    except ConfigError as e:
        console.print(f"[yellow]Not ready to run: {e}[/yellow]")
    else:
        console.print("[green]✓[/green] Ready to run")
