"""
Polymarket Copy Trading System

Mirrors a target account's positions on the Polymarket CLOB, and runs a
price trigger bot on the recurring 15-minute up/down markets.

Modules:
- config: Configuration management
- api_client: Exchange gateway (positions, order books, orders)
- auth: L1/L2 and builder request signing
- order_builder: Order signing
- position_monitor: Position snapshots and diffs
- trade_executor: Trade execution
- bot: Copy trading orchestrator
- price_feed / price_trigger: Price trigger mode
- models: Trade journal
- main: CLI entry point
"""

__version__ = "0.2.0"
__author__ = "Polymarket Copy Trading"

from .config import get_settings, Settings
from .api_client import PolymarketAPIClient, Position, OrderBook, OrderResponse
from .position_monitor import PositionMonitor, PositionDiff, calculate_position_diffs
from .trade_executor import TradeExecutor, DryRunExecutor, TradeResult
from .bot import CopyTradingBot, BotConfig, BotStatus, create_bot_from_settings
from .models import TradeSide, TradeJournal

__all__ = [
    # Config
    "get_settings",
    "Settings",
    # API
    "PolymarketAPIClient",
    "Position",
    "OrderBook",
    "OrderResponse",
    # Monitor
    "PositionMonitor",
    "PositionDiff",
    "calculate_position_diffs",
    # Executor
    "TradeExecutor",
    "DryRunExecutor",
    "TradeResult",
    # Bot
    "CopyTradingBot",
    "BotConfig",
    "BotStatus",
    "create_bot_from_settings",
    # Models
    "TradeSide",
    "TradeJournal",
]
