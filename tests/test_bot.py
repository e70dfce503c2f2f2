"""
Tests for the copy trading orchestrator
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from polycopy.api_client import Position
from polycopy.bot import BotConfig, CopyTradingBot
from polycopy.config import Settings
from polycopy.exceptions import ConfigurationError, TransportError
from polycopy.models import TradeSide
from polycopy.position_monitor import PositionDiff, PositionMonitor
from polycopy.trade_executor import DryRunExecutor, TradeResult


CONFIG = BotConfig(
    target_user_address="0xtarget",
    my_user_address="0xme",
    private_key="",
    polling_interval=10.0,
)

DIFF = PositionDiff("M1", "Yes", TradeSide.BUY, 10, 0, 10, 0.5)


def result(success=True):
    return TradeResult(
        success=success, market="M1", outcome="Yes", side=TradeSide.BUY, size=10, price=0.5,
        order_id="o-1" if success else None, error=None if success else "rejected"
    )


@pytest.fixture
def monitor():
    monitor = MagicMock()
    monitor.start_monitoring = AsyncMock()
    monitor.stop_monitoring = AsyncMock()
    monitor.calculate_position_diffs.return_value = [DIFF]
    monitor.get_current_positions.return_value = {"M1": {"Yes": None, "No": None}}
    monitor.get_target_positions.return_value = {"M1": {}, "M2": {}, "M3": {}}
    return monitor


@pytest.fixture
def executor():
    executor = MagicMock()
    executor.execute_trades = AsyncMock(return_value=[result(True), result(False)])
    return executor


@pytest.fixture
def bot(monitor, executor):
    return CopyTradingBot(CONFIG, api_client=AsyncMock(), monitor=monitor, executor=executor)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, bot, monitor):
        await bot.start()
        assert bot.is_running
        monitor.start_monitoring.assert_awaited_once()

        await bot.stop()
        assert not bot.is_running
        monitor.stop_monitoring.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_redundant_start_and_stop_warn(self, bot, monitor, log_messages):
        await bot.stop()
        await bot.start()
        await bot.start()
        await bot.stop()

        warnings = [msg for level, msg in log_messages if level == "WARNING"]
        assert "Bot is not running" in warnings
        assert "Bot is already running" in warnings
        monitor.start_monitoring.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_start_leaves_bot_stopped(self, bot, monitor):
        monitor.start_monitoring.side_effect = TransportError("down")

        with pytest.raises(TransportError):
            await bot.start()

        assert not bot.is_running

    @pytest.mark.asyncio
    async def test_start_runs_first_cycle_immediately(self, bot, executor):
        await bot.start()
        await asyncio.sleep(0.01)
        await bot.stop()

        executor.execute_trades.assert_awaited_once_with([DIFF])

    @pytest.mark.asyncio
    async def test_close_releases_client(self, bot):
        await bot.start()
        await bot.close()

        assert not bot.is_running
        bot.api_client.close.assert_awaited_once()


class TestExecutionCycle:

    @pytest.mark.asyncio
    async def test_cycle_returns_results_and_logs_counts(self, bot, log_messages):
        results = await bot.execute_cycle()

        assert [r.success for r in results] == [True, False]
        assert ("INFO", "Cycle 1: 1 trades succeeded, 1 failed") in log_messages

    @pytest.mark.asyncio
    async def test_no_diffs_skips_executor(self, bot, monitor, executor):
        monitor.calculate_position_diffs.return_value = []

        assert await bot.execute_cycle() == []
        executor.execute_trades.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cycle_is_journaled(self, monitor, executor):
        journal = AsyncMock()
        bot = CopyTradingBot(CONFIG, api_client=AsyncMock(), monitor=monitor, executor=executor, journal=journal)

        await bot.execute_cycle()
        await bot.execute_cycle()

        assert [call.args[0] for call in journal.record.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_journal_failure_is_logged(self, monitor, executor, log_messages):
        journal = AsyncMock()
        journal.record.side_effect = RuntimeError("disk full")
        bot = CopyTradingBot(CONFIG, api_client=AsyncMock(), monitor=monitor, executor=executor, journal=journal)

        results = await bot.execute_cycle()

        assert len(results) == 2
        assert any(level == "ERROR" and "disk full" in msg for level, msg in log_messages)

    @pytest.mark.asyncio
    async def test_cycle_errors_do_not_stop_the_timer(self, monitor, executor):
        calls = []

        async def flaky(diffs):
            calls.append(diffs)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return [result()]

        executor.execute_trades.side_effect = flaky
        config = BotConfig("0xtarget", "0xme", polling_interval=0.01)
        bot = CopyTradingBot(config, api_client=AsyncMock(), monitor=monitor, executor=executor)

        await bot.start()
        await asyncio.sleep(0.05)
        await bot.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_dry_run_end_to_end(self, snapshot):
        api_client = AsyncMock()
        api_client.get_market_price.return_value = None

        async def get_user_positions(address):
            if address == "0xtarget":
                return snapshot({"M1": {"Yes": (10, 0.6)}})
            return snapshot({"M2": {"No": (5, 0.4)}})

        api_client.get_user_positions.side_effect = get_user_positions
        config = BotConfig("0xtarget", "0xme", max_position_limit=100)
        executor = DryRunExecutor(api_client, max_position_limit=100, trade_delay=0)
        bot = CopyTradingBot(config, api_client=api_client, executor=executor)

        await bot.monitor.update_positions()
        results = await bot.execute_cycle()

        assert isinstance(bot.monitor, PositionMonitor)
        assert [(r.market, r.side, r.size) for r in results] == [
            ("M1", TradeSide.BUY, 10), ("M2", TradeSide.SELL, 5)
        ]
        assert all(r.order_id.startswith("SIM-") for r in results)


class TestRedemption:

    @pytest.mark.asyncio
    async def test_sweep_hands_positions_to_async_redeemer(self, monitor, executor):
        redeemable = [Position("M1", "Yes", 5, 1.0, 5.0, redeemable=True)]
        api_client = AsyncMock()
        api_client.get_redeemable_positions.return_value = redeemable
        redeemer = AsyncMock()
        bot = CopyTradingBot(CONFIG, api_client=api_client, monitor=monitor, executor=executor, redeemer=redeemer)

        assert await bot.redeem_sweep() == redeemable
        redeemer.assert_awaited_once_with(redeemable)
        api_client.get_redeemable_positions.assert_awaited_once_with("0xme")

    @pytest.mark.asyncio
    async def test_sweep_with_sync_redeemer(self, monitor, executor):
        redeemable = [Position("M1", "Yes", 5, 1.0, 5.0, redeemable=True)]
        api_client = AsyncMock()
        api_client.get_redeemable_positions.return_value = redeemable
        claimed = []
        bot = CopyTradingBot(
            CONFIG, api_client=api_client, monitor=monitor, executor=executor, redeemer=claimed.extend
        )

        await bot.redeem_sweep()

        assert claimed == redeemable

    @pytest.mark.asyncio
    async def test_auto_redeem_sweeps_on_start(self, monitor, executor):
        api_client = AsyncMock()
        api_client.get_redeemable_positions.return_value = []
        config = BotConfig("0xtarget", "0xme", polling_interval=10.0, auto_redeem=True, redeem_interval=3600.0)
        bot = CopyTradingBot(config, api_client=api_client, monitor=monitor, executor=executor)

        await bot.start()
        await asyncio.sleep(0.01)
        await bot.stop()

        api_client.get_redeemable_positions.assert_awaited_once_with("0xme")

    @pytest.mark.asyncio
    async def test_nothing_to_redeem(self, monitor, executor):
        api_client = AsyncMock()
        api_client.get_redeemable_positions.return_value = []
        redeemer = AsyncMock()
        bot = CopyTradingBot(CONFIG, api_client=api_client, monitor=monitor, executor=executor, redeemer=redeemer)

        assert await bot.redeem_sweep() == []
        redeemer.assert_not_awaited()


class TestStatusAndConfig:

    def test_status_counts_markets(self, bot):
        status = bot.get_status()

        assert status.to_dict() == {
            "isRunning": False,
            "targetUser": "0xtarget",
            "myUser": "0xme",
            "currentPositions": 1,
            "targetPositions": 3,
        }

    def test_from_settings_converts_intervals(self):
        settings = Settings(
            _env_file=None,
            target_user_address="0xtarget",
            my_user_address="0xme",
            private_key="0xkey",
            polling_interval=2500,
            redeem_interval=60000,
            auto_redeem=True,
        )

        config = BotConfig.from_settings(settings)

        assert config.polling_interval == 2.5
        assert config.redeem_interval == 60.0
        assert config.auto_redeem

    def test_from_settings_names_missing_variables(self):
        settings = Settings(_env_file=None, target_user_address="0xtarget")

        with pytest.raises(ConfigurationError, match="MY_USER_ADDRESS, PRIVATE_KEY"):
            BotConfig.from_settings(settings)

    def test_dry_run_config_needs_no_key(self):
        settings = Settings(_env_file=None, target_user_address="0xtarget", my_user_address="0xme")

        assert BotConfig.from_settings(settings, require_key=False).private_key == ""

    def test_journal_created_from_database_url(self, monitor, executor):
        config = BotConfig("0xtarget", "0xme", database_url="sqlite+aiosqlite:///:memory:")
        bot = CopyTradingBot(config, api_client=AsyncMock(), monitor=monitor, executor=executor)

        assert bot.journal is not None
