"""
Market price feed

Streams best bid/ask per outcome token from the CLOB market WebSocket
channel.
"""

import asyncio
import json
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import aiohttp
from loguru import logger


PING_INTERVAL = 10.0


@dataclass(frozen=True)
class BestPriceUpdate:
    """Best ask/bid for one asset after a market event (bid 0 when unknown)"""
    asset_id: str
    best_ask: float
    best_bid: float
    event_type: str


def _parse_price(value: Any) -> float:
    if value is None or value == "":
        return math.nan
    try:
        price = float(value)
    except (TypeError, ValueError):
        return math.nan
    return price if math.isfinite(price) else math.nan


def _best_level(levels: Any, pick: Callable[[Iterable[float]], float]) -> float:
    if not isinstance(levels, list):
        return math.nan
    prices = [_parse_price(level.get("price")) for level in levels if isinstance(level, dict)]
    prices = [p for p in prices if not math.isnan(p)]
    return pick(prices) if prices else math.nan


def _update(asset_id: Any, best_ask: float, best_bid: float, event_type: str) -> Optional[BestPriceUpdate]:
    if not asset_id or math.isnan(best_ask):
        return None
    return BestPriceUpdate(
        asset_id=str(asset_id),
        best_ask=best_ask,
        best_bid=0.0 if math.isnan(best_bid) else best_bid,
        event_type=event_type
    )


def _parse_event(event: Dict) -> List[BestPriceUpdate]:
    event_type = event.get("event_type")
    updates: List[Optional[BestPriceUpdate]] = []

    if event_type == "book":
        updates.append(_update(
            event.get("asset_id"),
            _best_level(event.get("asks"), min),
            _best_level(event.get("bids"), max),
            "book"
        ))
    elif event_type == "best_bid_ask":
        updates.append(_update(
            event.get("asset_id"),
            _parse_price(event.get("best_ask")),
            _parse_price(event.get("best_bid")),
            "best_bid_ask"
        ))
    elif event_type == "price_change" and isinstance(event.get("price_changes"), list):
        for change in event["price_changes"]:
            if not isinstance(change, dict):
                continue
            updates.append(_update(
                change.get("asset_id"),
                _parse_price(change.get("best_ask")),
                _parse_price(change.get("best_bid")),
                "price_change"
            ))

    return [u for u in updates if u is not None]


def parse_market_message(raw: str) -> List[BestPriceUpdate]:
    """Best price updates carried by one WebSocket frame"""
    if raw == "PONG":
        return []

    try:
        data = json.loads(raw)
    except ValueError:
        return []

    events = data if isinstance(data, list) else [data]
    updates: List[BestPriceUpdate] = []
    for event in events:
        if isinstance(event, dict):
            updates.extend(_parse_event(event))
    return updates


class MarketPriceFeed:
    """
    Subscribes to the market channel for a set of asset ids

    run() returns when the connection drops or close() is called; the caller
    decides whether to reconnect.
    """

    def __init__(
        self,
        url: str,
        asset_ids: List[str],
        on_update: Callable[[BestPriceUpdate], Any],
        ping_interval: float = PING_INTERVAL
    ):
        self.url = url
        self.asset_ids = list(asset_ids)
        self.on_update = on_update
        self.ping_interval = ping_interval
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._closed = False

    def subscription(self) -> Dict[str, Any]:
        return {
            "assets_ids": self.asset_ids,
            "type": "market",
            "custom_feature_enabled": True
        }

    async def _ping(self, ws: aiohttp.ClientWebSocketResponse):
        while not ws.closed:
            await asyncio.sleep(self.ping_interval)
            if not ws.closed:
                await ws.send_str("PING")

    async def _dispatch(self, raw: str):
        for update in parse_market_message(raw):
            try:
                if asyncio.iscoroutinefunction(self.on_update):
                    await self.on_update(update)
                else:
                    self.on_update(update)
            except Exception as e:
                logger.error(f"Price update handler failed: {e}")

    async def run(self):
        """Connect, subscribe and dispatch updates until the socket closes"""
        self._closed = False

        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.url) as ws:
                self._ws = ws
                await ws.send_json(self.subscription())
                logger.info(f"Subscribed to {len(self.asset_ids)} assets on {self.url}")

                ping_task = asyncio.create_task(self._ping(ws))
                try:
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            await self._dispatch(msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.error(f"WebSocket error: {ws.exception()}")
                            break
                        elif msg.type == aiohttp.WSMsgType.CLOSED:
                            break
                finally:
                    ping_task.cancel()
                    self._ws = None

        if not self._closed:
            logger.warning("Market WebSocket connection closed")

    async def close(self):
        self._closed = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    @property
    def closed(self) -> bool:
        return self._closed
