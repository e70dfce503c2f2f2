"""
Trade Execution Module

Turns position diffs into signed orders, applying the blacklist and size
policy first. Trades run one at a time with a fixed delay between them.
"""

import asyncio
from datetime import datetime
from typing import Optional, Dict, List, Set
from dataclasses import dataclass
from enum import Enum

from eth_account import Account
from eth_account.signers.local import LocalAccount
from loguru import logger

from .api_client import PolymarketAPIClient
from .auth import normalize_private_key
from .config import TradingConstants
from .exceptions import AuthenticationError
from .models import TradeSide
from .order_builder import sign_order_message
from .position_monitor import PositionDiff


class SkipReason(Enum):
    """Why a diff was not traded"""
    BLACKLISTED = "BLACKLISTED"
    ABOVE_POSITION_LIMIT = "ABOVE_POSITION_LIMIT"
    BELOW_MIN_TRADE_SIZE = "BELOW_MIN_TRADE_SIZE"


@dataclass(frozen=True)
class TradeResult:
    """Result of attempting one diff"""
    success: bool
    market: str
    outcome: str
    side: TradeSide
    size: float
    price: float
    order_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "market": self.market,
            "outcome": self.outcome,
            "side": self.side.value,
            "size": self.size,
            "price": self.price,
            "order_id": self.order_id,
            "error": self.error
        }


class TradeExecutor:
    """
    Executes position diffs through the exchange gateway

    Policy changes (blacklist, position limit) apply from the next
    execute_trades call.
    """

    def __init__(
        self,
        api_client: PolymarketAPIClient,
        private_key: Optional[str],
        max_position_limit: float = 0.2,
        min_trade_size: float = 1.0,
        trade_delay: float = TradingConstants.TRADE_DELAY
    ):
        self.api_client = api_client
        self.max_position_limit = max_position_limit
        self.min_trade_size = min_trade_size
        self.trade_delay = trade_delay
        self._blacklist: Set[str] = set()

        self._account: Optional[LocalAccount] = None
        self._key_error: Optional[str] = None

        if not private_key:
            self._key_error = "No private key configured"
        else:
            try:
                self._account = Account.from_key(normalize_private_key(private_key))
            except Exception as e:
                self._key_error = f"Invalid private key: {e}"
                logger.error(self._key_error)

    # ==================== Policy ====================

    def add_to_blacklist(self, market: str):
        self._blacklist.add(market)
        logger.info(f"Blacklisted market {market}")

    def remove_from_blacklist(self, market: str):
        self._blacklist.discard(market)
        logger.info(f"Removed market {market} from blacklist")

    def get_blacklist(self) -> List[str]:
        return sorted(self._blacklist)

    def set_max_position_limit(self, limit: float):
        self.max_position_limit = limit
        logger.info(f"Max position limit set to ${limit:.2f}")

    def _skip_reason(
        self,
        diff: PositionDiff,
        blacklist: Set[str],
        max_position_limit: float,
        min_trade_size: float
    ) -> Optional[SkipReason]:
        if diff.market in blacklist:
            logger.debug(f"Skipping blacklisted market {diff.market}")
            return SkipReason.BLACKLISTED

        if diff.notional > max_position_limit:
            logger.warning(
                f"Skipping {diff.action.value} {diff.market}/{diff.outcome}: "
                f"notional ${diff.notional:.2f} exceeds limit ${max_position_limit:.2f}"
            )
            return SkipReason.ABOVE_POSITION_LIMIT

        if diff.difference < min_trade_size:
            logger.debug(
                f"Skipping {diff.market}/{diff.outcome}: "
                f"{diff.difference:.4f} shares below minimum {min_trade_size}"
            )
            return SkipReason.BELOW_MIN_TRADE_SIZE

        return None

    # ==================== Execution ====================

    async def execute_trades(self, diffs: List[PositionDiff]) -> List[TradeResult]:
        """
        Execute diffs sequentially in input order

        Returns one TradeResult per diff that passed policy. A failed trade
        does not stop the batch.
        """
        blacklist = set(self._blacklist)
        max_position_limit = self.max_position_limit
        min_trade_size = self.min_trade_size

        results: List[TradeResult] = []

        for diff in diffs:
            if self._skip_reason(diff, blacklist, max_position_limit, min_trade_size):
                continue

            results.append(await self._execute_diff(diff))
            await asyncio.sleep(self.trade_delay)

        return results

    async def _execute_diff(self, diff: PositionDiff) -> TradeResult:
        price = diff.price

        try:
            market_price = await self.api_client.get_market_price(diff.market, diff.outcome)
            if market_price is not None and market_price > 0:
                price = market_price

            signature = self._sign(diff, price)
            order_id = await self._place_order(diff, price, signature)

            logger.info(
                f"Executed {diff.action.value} {diff.difference:.2f} "
                f"{diff.market}/{diff.outcome} @ {price:.4f} (order {order_id})"
            )
            return TradeResult(
                success=True,
                market=diff.market,
                outcome=diff.outcome,
                side=diff.action,
                size=diff.difference,
                price=price,
                order_id=order_id
            )

        except Exception as e:
            logger.error(f"Trade failed for {diff.market}/{diff.outcome}: {e}")
            return TradeResult(
                success=False,
                market=diff.market,
                outcome=diff.outcome,
                side=diff.action,
                size=diff.difference,
                price=price,
                error=str(e)
            )

    def _sign(self, diff: PositionDiff, price: float) -> str:
        if self._account is None:
            raise AuthenticationError(self._key_error or "No private key configured")

        return sign_order_message(
            self._account, diff.market, diff.outcome, diff.action, price, diff.difference
        )

    async def _place_order(self, diff: PositionDiff, price: float, signature: str) -> str:
        if diff.action == TradeSide.BUY:
            response = await self.api_client.place_buy_order(
                diff.market, diff.outcome, price, diff.difference, signature
            )
        else:
            response = await self.api_client.place_sell_order(
                diff.market, diff.outcome, price, diff.difference, signature
            )
        return response.order_id


class DryRunExecutor(TradeExecutor):
    """
    Executor that only simulates trades without real execution

    Policy and signing run as usual; orders are recorded instead of sent.
    """

    def __init__(
        self,
        api_client: PolymarketAPIClient,
        private_key: Optional[str] = None,
        max_position_limit: float = 0.2,
        min_trade_size: float = 1.0,
        trade_delay: float = TradingConstants.TRADE_DELAY
    ):
        super().__init__(api_client, private_key, max_position_limit, min_trade_size, trade_delay)
        self._trade_history: List[Dict] = []

    def _sign(self, diff: PositionDiff, price: float) -> str:
        if self._account is None:
            return ""
        return super()._sign(diff, price)

    async def _place_order(self, diff: PositionDiff, price: float, signature: str) -> str:
        order_id = f"SIM-{len(self._trade_history) + 1}-{int(datetime.utcnow().timestamp())}"

        self._trade_history.append({
            "timestamp": datetime.utcnow().isoformat(),
            "order_id": order_id,
            "market": diff.market,
            "outcome": diff.outcome,
            "side": diff.action.value,
            "size": diff.difference,
            "price": price,
            "signed": bool(signature)
        })

        logger.info(
            f"[SIMULATION] {diff.action.value} {diff.difference:.2f} "
            f"{diff.market}/{diff.outcome} @ {price:.4f}"
        )
        return order_id

    def get_trade_history(self) -> List[Dict]:
        """Get history of simulated trades"""
        return self._trade_history.copy()
