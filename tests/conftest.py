"""
Shared fixtures for the polycopy test suite
"""

from typing import Dict, List, Tuple

import pytest
from loguru import logger

from polycopy.api_client import Position, PositionSnapshot


# Well-known throwaway key (eth-account docs), never funded
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


@pytest.fixture
def private_key() -> str:
    return TEST_PRIVATE_KEY


@pytest.fixture
def log_messages() -> List[Tuple[str, str]]:
    """Capture loguru output as (level, message) pairs"""
    messages: List[Tuple[str, str]] = []
    handler_id = logger.add(
        lambda m: messages.append((m.record["level"].name, m.record["message"])),
        level="DEBUG"
    )
    yield messages
    logger.remove(handler_id)


def build_snapshot(holdings: Dict[str, Dict[str, Tuple[float, float]]]) -> PositionSnapshot:
    """{"M1": {"Yes": (shares, price)}} -> PositionSnapshot"""
    return {
        market: {
            outcome: Position(
                market=market,
                outcome=outcome,
                shares=shares,
                price=price,
                value=shares * price
            )
            for outcome, (shares, price) in outcomes.items()
        }
        for market, outcomes in holdings.items()
    }


@pytest.fixture
def snapshot():
    return build_snapshot
