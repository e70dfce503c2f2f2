"""
Order Construction Module

Message-level order attestation the copy trader attaches to each
submission, and EIP712 exchange orders built with py-clob-client.
"""

import json
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from py_clob_client.clob_types import CreateOrderOptions, OrderArgs
from py_clob_client.order_builder.builder import OrderBuilder as ClobOrderBuilder
from py_clob_client.order_builder.constants import BUY, SELL
from py_clob_client.signer import Signer
from py_order_utils.model import SignedOrder
from web3 import Web3

from .auth import normalize_private_key, signature_hex
from .config import TradingConstants
from .models import TradeSide


CLOB_SIDES = {TradeSide.BUY: BUY, TradeSide.SELL: SELL}


def canonical_order_message(
    market: str,
    outcome: str,
    side: TradeSide,
    price: float,
    size: float,
    timestamp: int
) -> str:
    """Deterministic JSON for {market, outcome, side, price, size, timestamp}"""
    return json.dumps(
        {
            "market": market,
            "outcome": outcome,
            "side": side.value,
            "price": str(price),
            "size": str(size),
            "timestamp": timestamp,
        },
        sort_keys=True,
        separators=(",", ":"),
    )


def sign_order_message(
    account: LocalAccount,
    market: str,
    outcome: str,
    side: TradeSide,
    price: float,
    size: float,
    timestamp: Optional[int] = None
) -> str:
    """Personal-sign the canonical order message, returns 0x-hex signature"""
    ts = timestamp if timestamp is not None else int(time.time() * 1000)
    message = canonical_order_message(market, outcome, side, price, size, ts)
    signed = account.sign_message(encode_defunct(text=message))
    return signature_hex(signed.signature)


def round_to_tick(price: float, tick_size: str) -> float:
    decimals = TradingConstants.TICK_SIZES[tick_size]
    quantum = Decimal(1).scaleb(-decimals)
    return float(Decimal(str(price)).quantize(quantum, rounding=ROUND_HALF_UP))


class OrderBuilder:
    """
    Creates signed limit orders for the CTF exchange

    Wraps py-clob-client's order builder with the account, funder wallet,
    tick size and exchange (regular or neg-risk) fixed at construction.
    """

    def __init__(
        self,
        private_key: str,
        chain_id: int = 137,
        funder: Optional[str] = None,
        signature_type: int = 0,
        tick_size: str = "0.01",
        neg_risk: bool = False
    ):
        self._signer = Signer(normalize_private_key(private_key), chain_id)
        self.funder = Web3.to_checksum_address(funder) if funder else self._signer.address()
        self.signature_type = signature_type
        self.options = CreateOrderOptions(tick_size=tick_size, neg_risk=neg_risk)
        self._builder = ClobOrderBuilder(self._signer, sig_type=signature_type, funder=self.funder)

    @property
    def signer_address(self) -> str:
        return self._signer.address()

    def build_order(
        self,
        token_id: str,
        side: TradeSide,
        price: float,
        size: float,
        fee_rate_bps: int = 0,
        expiration: int = 0
    ) -> SignedOrder:
        """
        Build and sign a limit order

        Args:
            token_id: Outcome token id (uint256 as decimal string)
            side: BUY or SELL
            price: Limit price, rounded to the tick size
            size: Shares
        """
        args = OrderArgs(
            token_id=token_id,
            price=price,
            size=size,
            side=CLOB_SIDES[side],
            fee_rate_bps=fee_rate_bps,
            expiration=expiration,
        )
        return self._builder.create_order(args, self.options)
