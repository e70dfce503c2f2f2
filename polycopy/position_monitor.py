"""
Position Monitor Module

Polls the target account's and the operator's own positions and computes
the corrective trades needed to mirror the target.
"""

import asyncio
import copy
from dataclasses import dataclass
from typing import Dict, List, Optional

from loguru import logger

from .api_client import PolymarketAPIClient, PositionSnapshot
from .config import TradingConstants
from .models import TradeSide
from .scheduler import PeriodicTask


@dataclass(frozen=True)
class PositionDiff:
    """Corrective action for one market outcome"""
    market: str
    outcome: str
    action: TradeSide
    target_shares: float
    current_shares: float
    difference: float
    price: float

    @property
    def notional(self) -> float:
        return self.difference * self.price

    def to_dict(self) -> Dict:
        return {
            "market": self.market,
            "outcome": self.outcome,
            "action": self.action.value,
            "target_shares": self.target_shares,
            "current_shares": self.current_shares,
            "difference": self.difference,
            "price": self.price
        }


def calculate_position_diffs(
    target: PositionSnapshot,
    own: PositionSnapshot,
    epsilon: float = TradingConstants.POSITION_EPSILON
) -> List[PositionDiff]:
    """
    Diffs that move `own` toward `target`

    Target entries come first (buys and partial sells), then outcomes the
    operator holds with no target exposure (full sells). Target holdings
    below epsilon count as absent.
    """
    diffs: List[PositionDiff] = []

    for market, outcomes in target.items():
        for outcome, target_pos in outcomes.items():
            if target_pos.shares < epsilon:
                continue

            own_pos = own.get(market, {}).get(outcome)
            current_shares = own_pos.shares if own_pos else 0.0
            delta = target_pos.shares - current_shares

            if abs(delta) <= epsilon:
                continue

            diffs.append(PositionDiff(
                market=market,
                outcome=outcome,
                action=TradeSide.BUY if delta > 0 else TradeSide.SELL,
                target_shares=target_pos.shares,
                current_shares=current_shares,
                difference=abs(delta),
                price=target_pos.price
            ))

    for market, outcomes in own.items():
        for outcome, own_pos in outcomes.items():
            if own_pos.shares <= epsilon:
                continue

            target_pos = target.get(market, {}).get(outcome)
            if target_pos is not None and target_pos.shares >= epsilon:
                continue

            diffs.append(PositionDiff(
                market=market,
                outcome=outcome,
                action=TradeSide.SELL,
                target_shares=0.0,
                current_shares=own_pos.shares,
                difference=own_pos.shares,
                price=own_pos.price
            ))

    return diffs


class PositionMonitor:
    """
    Keeps the latest target and own snapshots

    Both snapshots always come from the same update call.
    """

    def __init__(
        self,
        api_client: PolymarketAPIClient,
        target_address: str,
        my_address: str,
        polling_interval: float = 4.0
    ):
        self.api_client = api_client
        self.target_address = target_address
        self.my_address = my_address
        self.polling_interval = polling_interval

        self._target_positions: PositionSnapshot = {}
        self._current_positions: PositionSnapshot = {}
        self._task: Optional[PeriodicTask] = None
        self._running = False

    @property
    def is_active(self) -> bool:
        return self._running

    async def start_monitoring(self):
        """Fetch once, then poll every interval"""
        if self._running:
            logger.warning("Position monitoring already active")
            return

        self._running = True
        logger.info(
            f"Monitoring {self.target_address[:10]}... every {self.polling_interval:.1f}s"
        )

        try:
            await self.update_positions()
        except Exception:
            self._running = False
            raise

        self._task = PeriodicTask(
            "position-poll", self.polling_interval, self.update_positions
        )
        self._task.start()

    async def stop_monitoring(self):
        """Stop polling; an in-flight update may still complete"""
        if not self._running:
            return

        self._running = False
        if self._task is not None:
            self._task.stop()
            self._task = None
        logger.info("Position monitoring stopped")

    async def update_positions(self):
        """
        Fetch both accounts concurrently and commit the pair

        On failure the previous pair is kept and the error is raised.
        """
        target_result, own_result = await asyncio.gather(
            self.api_client.get_user_positions(self.target_address),
            self.api_client.get_user_positions(self.my_address),
            return_exceptions=True
        )

        for result in (target_result, own_result):
            if isinstance(result, BaseException):
                logger.error(f"Position update failed, keeping previous snapshots: {result}")
                raise result

        self._target_positions = target_result
        self._current_positions = own_result

        logger.debug(
            f"Positions updated: target={len(target_result)} markets, "
            f"own={len(own_result)} markets"
        )

    def calculate_position_diffs(self) -> List[PositionDiff]:
        return calculate_position_diffs(self._target_positions, self._current_positions)

    def get_current_positions(self) -> PositionSnapshot:
        return copy.deepcopy(self._current_positions)

    def get_target_positions(self) -> PositionSnapshot:
        return copy.deepcopy(self._target_positions)
