"""
Polymarket Copy Trading System - Main Entry Point

Usage:
    polycopy run             # Start the copy trading bot
    polycopy run --dry-run   # Simulate trades without submitting orders
    polycopy diff            # Show the trades needed to mirror the target
    polycopy history         # Show journaled trades
    polycopy trigger         # Run the 15m price trigger bot
"""

import asyncio
import signal
import sys
from typing import Tuple

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from loguru import logger

from .api_client import PolymarketAPIClient
from .bot import BotConfig, create_bot_from_settings
from .config import Settings, get_settings
from .exceptions import AuthenticationError, ConfigurationError, PolycopyError
from .models import TradeJournal, TradeSide
from .position_monitor import PositionMonitor
from .price_trigger import create_price_trigger_bot
from .scheduler import PeriodicTask

console = Console()

LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)
STATUS_INTERVAL = 60.0
STARTUP_ERRORS = (ConfigurationError, ValidationError, AuthenticationError)


def configure_logging(level: str = "INFO", log_file: str = ""):
    """Coloured stderr sink, plus a rotating file sink when log_file is set"""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level.upper())
    if log_file:
        logger.add(log_file, level=level.upper(), rotation="10 MB", retention=5)


def _load_settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)


def _exit_on_startup_error(e: Exception):
    logger.error(f"Startup failed: {e}")
    sys.exit(1)


async def _run_bot(settings: Settings, dry_run: bool, blacklist: Tuple[str, ...]):
    bot = await create_bot_from_settings(settings, dry_run=dry_run)

    for market in blacklist:
        bot.executor.add_to_blacklist(market)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    async def log_status():
        status = bot.get_status()
        logger.info(
            f"Status: running={status.is_running} "
            f"own={status.current_positions} markets, target={status.target_positions} markets"
        )

    mode = "DRY RUN" if dry_run else "LIVE"
    console.print(Panel(
        f"[bold]Copy Trading Bot Started[/bold]\n"
        f"Mode: [yellow]{mode}[/yellow]\n"
        f"Target: {settings.target_user_address}\n"
        f"Polling: every {settings.polling_interval_seconds:.1f}s\n"
        f"Press Ctrl+C to stop",
        title="Status"
    ))

    status_task = PeriodicTask("status-log", STATUS_INTERVAL, log_status)
    try:
        await bot.start()
        status_task.start()
        await stop_event.wait()
        console.print("\n[yellow]Shutting down...[/yellow]")
    finally:
        status_task.stop()
        await bot.close()

    console.print("[green]Bot stopped successfully[/green]")


# CLI Commands
@click.group()
@click.pass_context
def cli(ctx: click.Context):
    """Polymarket Copy Trading System"""
    settings = _load_settings()
    configure_logging(settings.log_level, settings.log_file)
    ctx.obj = settings


@cli.command()
@click.option('--dry-run', is_flag=True, help='Run in simulation mode')
@click.option('--blacklist', '-b', multiple=True, help='Market to never trade (repeatable)')
@click.pass_obj
def run(settings: Settings, dry_run: bool, blacklist: Tuple[str, ...]):
    """Start the copy trading bot"""
    try:
        asyncio.run(_run_bot(settings, dry_run, blacklist))
    except STARTUP_ERRORS as e:
        _exit_on_startup_error(e)
    except PolycopyError as e:
        logger.error(f"Bot failed to start: {e}")
        sys.exit(1)


@cli.command()
@click.pass_obj
def diff(settings: Settings):
    """Show the trades needed to mirror the target account"""
    async def _diff():
        config = BotConfig.from_settings(settings, require_key=False)
        client = PolymarketAPIClient(config.clob_http_url)
        monitor = PositionMonitor(client, config.target_user_address, config.my_user_address)

        try:
            await monitor.update_positions()
        finally:
            await client.close()

        diffs = monitor.calculate_position_diffs()
        if not diffs:
            console.print("[green]Positions in sync[/green]")
            return

        table = Table(title="Position Differences")
        table.add_column("Market")
        table.add_column("Outcome")
        table.add_column("Action")
        table.add_column("Target", justify="right")
        table.add_column("Current", justify="right")
        table.add_column("Difference", justify="right")
        table.add_column("Notional", justify="right")

        for d in diffs:
            color = "green" if d.action == TradeSide.BUY else "red"
            table.add_row(
                d.market[:30],
                d.outcome,
                f"[{color}]{d.action.value}[/{color}]",
                f"{d.target_shares:.2f}",
                f"{d.current_shares:.2f}",
                f"{d.difference:.2f}",
                f"${d.notional:,.2f}"
            )

        console.print(table)

    try:
        asyncio.run(_diff())
    except STARTUP_ERRORS as e:
        _exit_on_startup_error(e)
    except PolycopyError as e:
        console.print(f"[red]✗ Failed to fetch positions:[/red] {e}")
        sys.exit(1)


@cli.command()
@click.option('--limit', '-n', default=20, show_default=True, help='Number of trades to show')
@click.pass_obj
def history(settings: Settings, limit: int):
    """Show recently journaled trades"""
    if not settings.database_url:
        console.print("[yellow]DATABASE_URL not set, no trade journal[/yellow]")
        return

    async def _history():
        journal = TradeJournal(settings.database_url)
        try:
            trades = await journal.recent(limit)
        finally:
            await journal.close()

        if not trades:
            console.print("[yellow]No journaled trades[/yellow]")
            return

        table = Table(title="Executed Trades")
        table.add_column("Cycle", justify="right")
        table.add_column("Time")
        table.add_column("Market")
        table.add_column("Outcome")
        table.add_column("Side")
        table.add_column("Size", justify="right")
        table.add_column("Price", justify="right")
        table.add_column("Result")

        for trade in trades:
            result = (
                f"[green]{trade.order_id}[/green]" if trade.success
                else f"[red]{(trade.error_message or '')[:40]}[/red]"
            )
            table.add_row(
                str(trade.cycle),
                trade.created_at.strftime("%Y-%m-%d %H:%M:%S") if trade.created_at else "",
                trade.market[:30],
                trade.outcome,
                trade.side.value,
                f"{trade.size:.2f}",
                f"${trade.price:.4f}",
                result
            )

        console.print(table)

    asyncio.run(_history())


@cli.command()
@click.option('--dry-run', is_flag=True, help='Log triggers without placing orders (or set BOT_DRY_RUN)')
@click.pass_obj
def trigger(settings: Settings, dry_run: bool):
    """Buy the 15m up/down token that reaches the target price"""
    async def _trigger():
        bot = await create_price_trigger_bot(settings, dry_run=dry_run or settings.bot_dry_run)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(bot.stop()))

        try:
            await bot.run()
        finally:
            await bot.close()

    try:
        asyncio.run(_trigger())
    except STARTUP_ERRORS as e:
        _exit_on_startup_error(e)


if __name__ == "__main__":
    cli()
