"""
Polymarket API Client Module

Exchange gateway for the copy trader: position snapshots, order books and
order submission against the CLOB API
"""

import asyncio
import json
import aiohttp
from typing import Optional, Dict, List, Any
from dataclasses import dataclass
from loguru import logger
from ratelimit import RateLimitException, limits
from py_clob_client.utilities import order_to_json
from py_order_utils.model import SignedOrder

from .auth import RequestSigner
from .config import get_settings, APIEndpoints
from .exceptions import (
    AuthenticationError, ExchangeRejectionError, PolycopyError, TransportError
)
from .models import TradeSide


@dataclass(frozen=True)
class Position:
    """Outcome share balance held by one account"""
    market: str
    outcome: str
    shares: float
    price: float = 0.0
    value: float = 0.0
    redeemable: bool = False

    @classmethod
    def from_dict(cls, data: Dict) -> "Position":
        """Create Position from API response"""
        shares = float(data.get("shares") or data.get("balance") or data.get("size") or 0)
        price = float(data.get("price") or data.get("curPrice") or 0)
        value = data.get("value") or data.get("usdValue") or data.get("currentValue")

        return cls(
            market=data.get("market") or data.get("conditionId") or "",
            outcome=data.get("outcome") or data.get("outcomeName") or "",
            shares=shares,
            price=price,
            value=float(value) if value is not None else shares * price,
            redeemable=bool(data.get("redeemable", False))
        )


# market -> outcome -> Position
PositionSnapshot = Dict[str, Dict[str, Position]]


def parse_positions(data: Any) -> PositionSnapshot:
    """Group a positions payload by market and outcome"""
    positions: PositionSnapshot = {}

    if not isinstance(data, list):
        return positions

    for item in data:
        if not isinstance(item, dict):
            continue
        position = Position.from_dict(item)
        if not position.market or not position.outcome:
            continue
        positions.setdefault(position.market, {})[position.outcome] = position

    return positions


@dataclass
class OrderBook:
    """Order book data structure"""
    token_id: str
    bids: List[Dict[str, float]]  # [{"price": 0.5, "size": 100}, ...]
    asks: List[Dict[str, float]]

    @property
    def best_bid(self) -> Optional[float]:
        return max((b["price"] for b in self.bids), default=None)

    @property
    def best_ask(self) -> Optional[float]:
        return min((a["price"] for a in self.asks), default=None)

    @classmethod
    def from_dict(cls, data: Dict, token_id: str) -> "OrderBook":
        """Create OrderBook from API response"""
        bids = [{"price": float(b["price"]), "size": float(b.get("size", 0))}
                for b in data.get("bids") or []]
        asks = [{"price": float(a["price"]), "size": float(a.get("size", 0))}
                for a in data.get("asks") or []]

        return cls(token_id=token_id, bids=bids, asks=asks)


@dataclass(frozen=True)
class OrderResponse:
    """Accepted order"""
    order_id: str
    status: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Any) -> "OrderResponse":
        """Parse an order submission response, raising if the exchange refused it"""
        if not isinstance(data, dict):
            raise ExchangeRejectionError(f"Unexpected order response: {data!r}", payload=data)

        error = data.get("error") or data.get("errorMsg")
        order_id = data.get("orderID") or data.get("orderId") or data.get("id")

        if error or not order_id:
            raise ExchangeRejectionError(error or "No order ID in response", payload=data)

        return cls(order_id=str(order_id), status=data.get("status"))


class PolymarketAPIClient:
    """
    CLOB API client

    Read paths raise TransportError. Write paths retry once on transient
    failures and raise ExchangeRejectionError when the exchange refuses.
    """

    RETRY_DELAY = 0.03

    def __init__(
        self,
        clob_host: Optional[str] = None,
        signer: Optional[RequestSigner] = None,
        timeout: float = 30.0
    ):
        self.clob_host = (clob_host or get_settings().clob_http_url).rstrip("/")
        self.signer = signer
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self):
        """Close the HTTP session"""
        if self._session and not self._session.closed:
            await self._session.close()

    @staticmethod
    def token_id_for(market: str, outcome: str) -> str:
        return f"{market}-{outcome}"

    @limits(calls=10, period=1)  # Rate limit: 10 calls per second
    def _count_request(self):
        """Count one request against the client-side limit"""

    async def _throttle(self):
        """Wait, without blocking the event loop, until a request slot is free"""
        while True:
            try:
                self._count_request()
                return
            except RateLimitException as e:
                await asyncio.sleep(e.period_remaining)

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict] = None,
        body: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        """Make one HTTP request with rate limiting"""
        await self._throttle()
        session = await self._get_session()

        try:
            async with session.request(
                method, url, params=params, data=body, headers=headers
            ) as response:
                text = await response.text()
                payload = _decode(text)
                if response.status >= 400:
                    raise TransportError(
                        f"{method} {url} returned {response.status}",
                        status=response.status,
                        payload=payload
                    )
                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"API request failed: {e}")
            raise TransportError(f"{method} {url} failed: {e}") from e

    async def _auth_headers(self, method: str, path: str, body: str) -> Dict[str, str]:
        if self.signer is None:
            return {}
        return await self.signer.sign(method, path, body)

    async def _write(self, method: str, path: str, payload: Dict) -> Any:
        """Signed write request, retried once after a transient failure"""
        body = json.dumps(payload, separators=(",", ":"))

        for attempt in (1, 2):
            headers = await self._auth_headers(method, path, body)
            try:
                return await self._request(method, f"{self.clob_host}{path}", body=body, headers=headers)
            except TransportError as e:
                if attempt == 1 and e.transient:
                    logger.warning(f"Transient error on {method} {path}, retrying once: {e}")
                    await asyncio.sleep(self.RETRY_DELAY)
                    continue
                if e.status is not None and 400 <= e.status < 500:
                    raise ExchangeRejectionError(
                        f"{method} {path} rejected ({e.status}): {e.payload}", payload=e.payload
                    ) from e
                raise

    # ==================== Position APIs ====================

    async def get_user_positions(self, address: str) -> PositionSnapshot:
        """
        Get positions for a wallet address

        Args:
            address: Wallet address

        Returns:
            Mapping of market -> outcome -> Position
        """
        path = APIEndpoints.USER_POSITIONS.format(address=address)

        try:
            data = await self._request("GET", f"{self.clob_host}{path}")
        except TransportError as e:
            logger.error(f"Failed to fetch positions for {address}: {e}")
            raise

        try:
            return parse_positions(data)
        except (ValueError, TypeError) as e:
            logger.error(f"Malformed positions for {address}: {e}")
            raise TransportError(f"Malformed positions payload: {e}", payload=data) from e

    async def get_redeemable_positions(self, address: str) -> List[Position]:
        """Positions on resolved markets that can be redeemed"""
        snapshot = await self.get_user_positions(address)
        return [
            position
            for outcomes in snapshot.values()
            for position in outcomes.values()
            if position.redeemable
        ]

    # ==================== Order Book APIs ====================

    async def get_order_book(self, market: str, outcome: str) -> OrderBook:
        """Get order book for one market outcome"""
        token_id = self.token_id_for(market, outcome)
        data = await self._request(
            "GET", f"{self.clob_host}{APIEndpoints.ORDER_BOOK}", params={"token_id": token_id}
        )
        try:
            return OrderBook.from_dict(data if isinstance(data, dict) else {}, token_id)
        except (KeyError, ValueError, TypeError) as e:
            raise TransportError(f"Malformed order book for {token_id}: {e}", payload=data) from e

    async def get_market_price(self, market: str, outcome: str) -> Optional[float]:
        """
        Current price for a market outcome

        Best bid, else best ask. None when the book is empty or the lookup
        failed, so callers can fall back to a cached price.
        """
        try:
            book = await self.get_order_book(market, outcome)
        except PolycopyError as e:
            logger.error(f"Failed to get market price for {market}/{outcome}: {e}")
            return None

        if book.best_bid is not None:
            return book.best_bid
        return book.best_ask

    # ==================== Order APIs ====================

    async def _submit_order(
        self,
        market: str,
        outcome: str,
        side: TradeSide,
        price: float,
        size: float,
        signature: str
    ) -> OrderResponse:
        payload = {
            "token_id": self.token_id_for(market, outcome),
            "side": side.value,
            "price": str(price),
            "size": str(size),
            "signature": signature
        }

        try:
            data = await self._write("POST", APIEndpoints.ORDERS, payload)
            return OrderResponse.from_payload(data)
        except PolycopyError as e:
            logger.error(f"Failed to place {side.value} order for {market}/{outcome}: {e}")
            raise

    async def place_buy_order(
        self,
        market: str,
        outcome: str,
        price: float,
        size: float,
        signature: str
    ) -> OrderResponse:
        """Place a buy order"""
        return await self._submit_order(market, outcome, TradeSide.BUY, price, size, signature)

    async def place_sell_order(
        self,
        market: str,
        outcome: str,
        price: float,
        size: float,
        signature: str
    ) -> OrderResponse:
        """Place a sell order"""
        return await self._submit_order(market, outcome, TradeSide.SELL, price, size, signature)

    async def post_signed_order(self, order: SignedOrder, order_type: str = "GTC") -> OrderResponse:
        """
        Submit an EIP712-signed exchange order

        Requires an API-key signer; the key is the order owner.
        """
        owner = getattr(self.signer, "api_key", None)
        if not owner:
            raise AuthenticationError("Signed orders need API credentials")

        payload = order_to_json(order, owner, order_type)

        try:
            data = await self._write("POST", APIEndpoints.ORDER, payload)
            return OrderResponse.from_payload(data)
        except PolycopyError as e:
            logger.error(f"Failed to post signed {order_type} order: {e}")
            raise

    async def cancel_order(self, order_id: str, signature: str) -> Any:
        """
        Cancel an open order

        Raises ExchangeRejectionError when the exchange refuses the cancel.
        """
        path = APIEndpoints.CANCEL_ORDER.format(order_id=order_id)

        try:
            data = await self._write("DELETE", path, {"signature": signature})
        except PolycopyError as e:
            logger.error(f"Failed to cancel order {order_id}: {e}")
            raise

        if isinstance(data, dict) and (data.get("error") or data.get("errorMsg")):
            raise ExchangeRejectionError(data.get("error") or data.get("errorMsg"), payload=data)

        return data

    async def get_open_orders(self, address: str) -> List[Dict[str, Any]]:
        """Open orders for a wallet address, empty on failure"""
        path = APIEndpoints.USER_ORDERS.format(address=address)

        try:
            data = await self._request("GET", f"{self.clob_host}{path}")
        except TransportError as e:
            logger.error(f"Failed to fetch open orders for {address}: {e}")
            return []

        return data if isinstance(data, list) else []


def _decode(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text
