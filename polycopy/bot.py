"""
Copy Trading Bot

Wires the position monitor to the trade executor on a fixed cadence and
optionally sweeps redeemable positions on resolved markets.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .api_client import PolymarketAPIClient, Position
from .auth import create_request_signer
from .config import Settings, get_settings
from .models import TradeJournal
from .position_monitor import PositionMonitor
from .scheduler import PeriodicTask
from .trade_executor import DryRunExecutor, TradeExecutor, TradeResult


@dataclass
class BotConfig:
    """Copy trading bot configuration (intervals in seconds)"""
    target_user_address: str
    my_user_address: str
    private_key: str = ""
    clob_http_url: str = "https://clob.polymarket.com"
    polling_interval: float = 4.0
    max_position_limit: float = 0.2
    min_trade_size: float = 1.0
    auto_redeem: bool = False
    redeem_interval: float = 7200.0
    database_url: str = ""

    @classmethod
    def from_settings(cls, settings: Settings, require_key: bool = True) -> "BotConfig":
        required = ["target_user_address", "my_user_address"]
        if require_key:
            required.append("private_key")
        settings.require(*required)

        return cls(
            target_user_address=settings.target_user_address,
            my_user_address=settings.my_user_address,
            private_key=settings.private_key,
            clob_http_url=settings.clob_http_url,
            polling_interval=settings.polling_interval_seconds,
            max_position_limit=settings.max_position_limit,
            min_trade_size=settings.min_trade_size,
            auto_redeem=settings.auto_redeem,
            redeem_interval=settings.redeem_interval_seconds,
            database_url=settings.database_url
        )


@dataclass(frozen=True)
class BotStatus:
    """Snapshot of bot state; position counts are market counts"""
    is_running: bool
    target_user: str
    my_user: str
    current_positions: int
    target_positions: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "targetUser": self.target_user,
            "myUser": self.my_user,
            "currentPositions": self.current_positions,
            "targetPositions": self.target_positions
        }


class CopyTradingBot:
    """
    Main copy trading bot that orchestrates all components
    """

    def __init__(
        self,
        config: BotConfig,
        api_client: Optional[PolymarketAPIClient] = None,
        monitor: Optional[PositionMonitor] = None,
        executor: Optional[TradeExecutor] = None,
        journal: Optional[TradeJournal] = None,
        redeemer: Optional[Callable[[List[Position]], Any]] = None,
        dry_run: bool = False
    ):
        self.config = config
        self.dry_run = dry_run
        self.api_client = api_client or PolymarketAPIClient(config.clob_http_url)
        self.monitor = monitor or PositionMonitor(
            self.api_client,
            config.target_user_address,
            config.my_user_address,
            config.polling_interval
        )

        if executor is None:
            executor_cls = DryRunExecutor if dry_run else TradeExecutor
            executor = executor_cls(
                self.api_client,
                config.private_key,
                max_position_limit=config.max_position_limit,
                min_trade_size=config.min_trade_size
            )
        self.executor = executor

        if journal is None and config.database_url:
            journal = TradeJournal(config.database_url)
        self.journal = journal
        self.redeemer = redeemer

        self._running = False
        self._cycle = 0
        self._trade_task: Optional[PeriodicTask] = None
        self._redeem_task: Optional[PeriodicTask] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start monitoring, the trade cycle and the optional redemption sweep"""
        if self._running:
            logger.warning("Bot is already running")
            return

        self._running = True
        mode = "DRY RUN" if self.dry_run else "LIVE"
        logger.info(
            f"Starting copy trading bot ({mode}): mirroring {self.config.target_user_address} "
            f"into {self.config.my_user_address}"
        )

        if self.journal is not None:
            try:
                await self.journal.initialize()
            except Exception as e:
                logger.error(f"Trade journal unavailable, continuing without it: {e}")
                self.journal = None

        try:
            await self.monitor.start_monitoring()
        except Exception:
            self._running = False
            raise

        self._trade_task = PeriodicTask(
            "trade-cycle", self.config.polling_interval, self._run_cycle, run_immediately=True
        )
        self._trade_task.start()

        if self.config.auto_redeem:
            self._redeem_task = PeriodicTask(
                "redeem-sweep", self.config.redeem_interval, self._run_redeem_sweep,
                run_immediately=True
            )
            self._redeem_task.start()
            logger.info(f"Auto-redeem enabled every {self.config.redeem_interval / 60:.0f} min")

        logger.info("Copy trading bot started")

    async def stop(self):
        """Stop scheduling new cycles; an in-flight cycle may still finish"""
        if not self._running:
            logger.warning("Bot is not running")
            return

        self._running = False

        for task in (self._trade_task, self._redeem_task):
            if task is not None:
                task.stop()
        self._trade_task = None
        self._redeem_task = None

        await self.monitor.stop_monitoring()
        logger.info("Copy trading bot stopped")

    async def close(self):
        """Stop and release network and database resources"""
        if self._running:
            await self.stop()
        await self.api_client.close()
        if self.journal is not None:
            await self.journal.close()

    async def _run_cycle(self):
        await self.execute_cycle()

    async def _run_redeem_sweep(self):
        await self.redeem_sweep()

    async def execute_cycle(self) -> List[TradeResult]:
        """Diff the latest snapshots and trade the differences"""
        diffs = self.monitor.calculate_position_diffs()

        if not diffs:
            logger.debug("Positions in sync, nothing to trade")
            return []

        logger.info(f"Found {len(diffs)} position differences")
        results = await self.executor.execute_trades(diffs)
        self._cycle += 1

        succeeded = sum(1 for r in results if r.success)
        failed = len(results) - succeeded
        logger.info(f"Cycle {self._cycle}: {succeeded} trades succeeded, {failed} failed")

        if self.journal is not None and results:
            try:
                await self.journal.record(self._cycle, results)
            except Exception as e:
                logger.error(f"Failed to journal cycle {self._cycle}: {e}")

        return results

    async def redeem_sweep(self) -> List[Position]:
        """Find redeemable positions and hand them to the redeemer"""
        positions = await self.api_client.get_redeemable_positions(self.config.my_user_address)

        if not positions:
            logger.debug("No redeemable positions")
            return []

        logger.info(f"Found {len(positions)} redeemable positions")
        for position in positions:
            logger.info(f"  {position.market}/{position.outcome}: {position.shares:.2f} shares")

        if self.redeemer is None:
            logger.info("No redeemer configured, leaving positions unclaimed")
        elif asyncio.iscoroutinefunction(self.redeemer):
            await self.redeemer(positions)
        else:
            self.redeemer(positions)

        return positions

    def get_status(self) -> BotStatus:
        return BotStatus(
            is_running=self._running,
            target_user=self.config.target_user_address,
            my_user=self.config.my_user_address,
            current_positions=len(self.monitor.get_current_positions()),
            target_positions=len(self.monitor.get_target_positions())
        )


async def create_bot_from_settings(
    settings: Optional[Settings] = None,
    dry_run: bool = False
) -> CopyTradingBot:
    """
    Build a bot from environment settings

    Live mode authenticates order submission; dry run needs no key.
    """
    settings = settings or get_settings()
    config = BotConfig.from_settings(settings, require_key=not dry_run)

    signer = None
    if not dry_run:
        signer = await create_request_signer(settings)

    api_client = PolymarketAPIClient(settings.clob_http_url, signer=signer)
    return CopyTradingBot(config, api_client=api_client, dry_run=dry_run)
