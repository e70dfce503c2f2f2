"""
Price Trigger Bot

Watches the current 15-minute up/down market and buys an outcome token once
per slot when its best ask reaches the target price.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import httpx
from loguru import logger

from .api_client import OrderResponse, PolymarketAPIClient
from .auth import create_request_signer
from .config import APIEndpoints, Settings, TradingConstants, get_settings
from .exceptions import PolycopyError, TransportError
from .models import TradeSide
from .order_builder import OrderBuilder, round_to_tick
from .price_feed import BestPriceUpdate, MarketPriceFeed


SLOT_SECONDS = 15 * 60
BUY_LIMIT_BUFFER = 0.01
LOOKUP_RETRY_DELAY = 5.0
RECONNECT_DELAY = 2.0


def slot_start(now: Optional[float] = None) -> int:
    """Epoch seconds at which the 15-minute slot containing `now` began"""
    now = time.time() if now is None else now
    return int(now // SLOT_SECONDS) * SLOT_SECONDS


def slug_for_slot(market: str, slot: int) -> str:
    return f"{market}-updown-15m-{slot}"


def _json_array(raw: Any) -> List[Any]:
    if isinstance(raw, list):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


@dataclass(frozen=True)
class MarketTokens:
    """Outcome token ids of one up/down market"""
    up_token_id: str
    down_token_id: str
    condition_id: str = ""

    @classmethod
    def from_dict(cls, data: Dict, slug: str) -> "MarketTokens":
        outcomes = _json_array(data.get("outcomes"))
        token_ids = _json_array(data.get("clobTokenIds"))

        if "Up" not in outcomes or "Down" not in outcomes:
            raise PolycopyError(f"Missing Up/Down outcomes for slug={slug} (outcomes: {outcomes})")

        up_idx, down_idx = outcomes.index("Up"), outcomes.index("Down")
        if max(up_idx, down_idx) >= len(token_ids) or not token_ids[up_idx] or not token_ids[down_idx]:
            raise PolycopyError(f"Missing token ids for slug={slug}")

        condition_id = data.get("conditionId")
        return cls(
            up_token_id=str(token_ids[up_idx]),
            down_token_id=str(token_ids[down_idx]),
            condition_id=condition_id if isinstance(condition_id, str) else ""
        )

    @property
    def asset_ids(self) -> List[str]:
        return [self.up_token_id, self.down_token_id]

    def side_for(self, token_id: str) -> str:
        if token_id == self.up_token_id:
            return "Up"
        if token_id == self.down_token_id:
            return "Down"
        return "?"


class MarketLookup:
    """Resolves market slugs to token ids through the Gamma API"""

    def __init__(self, gamma_url: str, timeout: float = 10.0):
        self.gamma_url = gamma_url.rstrip("/")
        self.timeout = timeout
        self._cache: Optional[Tuple[str, MarketTokens]] = None

    async def get_tokens(self, slug: str) -> MarketTokens:
        if self._cache is not None and self._cache[0] == slug:
            return self._cache[1]

        url = f"{self.gamma_url}{APIEndpoints.MARKET_BY_SLUG.format(slug=slug)}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise TransportError(f"Gamma API request failed for slug={slug}: {e}") from e

        if response.status_code >= 400:
            raise TransportError(
                f"Gamma API {response.status_code} for slug={slug}", status=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Gamma API returned invalid JSON for slug={slug}") from e

        tokens = MarketTokens.from_dict(data if isinstance(data, dict) else {}, slug)
        self._cache = (slug, tokens)
        return tokens

    def clear(self):
        self._cache = None


class SlotDeduplicator:
    """
    At most one buy attempt per (slot, token)

    Keys of slots before the current one are dropped on rotation.
    """

    def __init__(self):
        self._keys: Set[Tuple[int, str]] = set()

    def try_acquire(self, slot: int, token_id: str) -> bool:
        key = (slot, token_id)
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    def release(self, slot: int, token_id: str):
        self._keys.discard((slot, token_id))

    def evict_before(self, slot: int) -> int:
        stale = {key for key in self._keys if key[0] < slot}
        self._keys -= stale
        return len(stale)

    def __len__(self) -> int:
        return len(self._keys)


class PriceTriggerBot:
    """
    Buys the Up or Down token when its best ask is at or under the target

    Without an api client and order builder the bot only logs triggers.
    """

    def __init__(
        self,
        ws_url: str,
        lookup: MarketLookup,
        market: str = "btc",
        target_price: float = 0.95,
        min_price: Optional[float] = None,
        buy_size: int = 5,
        dry_run: bool = False,
        price_log_interval_ms: int = 1000,
        tick_size: str = "0.01",
        api_client: Optional[PolymarketAPIClient] = None,
        order_builder: Optional[OrderBuilder] = None,
        clock: Callable[[], float] = time.time
    ):
        self.ws_url = ws_url
        self.lookup = lookup
        self.market = market
        self.target_price = target_price
        self.min_price = min_price
        self.buy_size = buy_size
        self.dry_run = dry_run
        self.price_log_interval_ms = price_log_interval_ms
        self.tick_size = tick_size
        self.api_client = api_client
        self.order_builder = order_builder
        self.clock = clock

        self.dedup = SlotDeduplicator()
        self._tokens: Optional[MarketTokens] = None
        self._slot: Optional[int] = None
        self._latest: Dict[str, BestPriceUpdate] = {}
        self._last_price_log = 0.0
        self._feed: Optional[MarketPriceFeed] = None
        self._stop_event = asyncio.Event()

    @property
    def can_trade(self) -> bool:
        return self.api_client is not None and self.order_builder is not None

    def watch(self, tokens: MarketTokens, slot: int):
        """Switch to a new slot's market"""
        self._tokens = tokens
        self._slot = slot
        self._latest.clear()

        evicted = self.dedup.evict_before(slot)
        if evicted:
            logger.debug(f"Dropped {evicted} dedup keys from past slots")

    def _maybe_log_prices(self):
        interval = self.price_log_interval_ms
        if interval < 0 or self._tokens is None:
            return

        now_ms = self.clock() * 1000
        if interval > 0 and now_ms - self._last_price_log < interval:
            return

        up = self._latest.get(self._tokens.up_token_id)
        down = self._latest.get(self._tokens.down_token_id)
        if up is None or down is None:
            return

        logger.info(
            f"[Prices] Up ask={up.best_ask:.3f} bid={up.best_bid:.3f}  |  "
            f"Down ask={down.best_ask:.3f} bid={down.best_bid:.3f}"
        )
        self._last_price_log = now_ms

    async def on_price_update(self, update: BestPriceUpdate):
        """Handle one best price update from the feed"""
        if self._tokens is None or self._slot is None:
            return

        self._latest[update.asset_id] = update
        self._maybe_log_prices()

        best_ask = update.best_ask
        if best_ask > self.target_price:
            return
        if self.min_price is not None and best_ask < self.min_price:
            return

        side = self._tokens.side_for(update.asset_id)
        slot = self._slot

        if not self.dedup.try_acquire(slot, update.asset_id):
            logger.debug(f"[Skip] Already bought {side} this slot; bestAsk={best_ask:.3f}")
            return

        logger.info(f"[Trigger] {side} bestAsk={best_ask:.3f} <= {self.target_price} - placing buy")

        if self.dry_run:
            logger.info(
                f"[DRY RUN] Would buy {side} token {update.asset_id[:12]}... "
                f"@ ~{best_ask:.3f} x{self.buy_size}"
            )
            return

        if not self.can_trade:
            logger.info(
                f"Trading not configured. Would buy {side} token {update.asset_id[:8]}... "
                f"@ {best_ask:.3f} x{self.buy_size}"
            )
            return

        try:
            await self.place_buy(update.asset_id, best_ask)
        except Exception as e:
            logger.error(f"[Order failed] {side}: {e}")
            self.dedup.release(slot, update.asset_id)

    async def place_buy(self, token_id: str, best_ask: float) -> OrderResponse:
        """GTC limit buy one tick-rounded buffer above the best ask"""
        size = self.buy_size
        min_notional = TradingConstants.MIN_ORDER_NOTIONAL

        if best_ask * size < min_notional:
            raise PolycopyError(f"Order notional ${best_ask * size:.2f} below min ${min_notional:.0f}")

        limit_price = round_to_tick(
            min(best_ask + BUY_LIMIT_BUFFER, TradingConstants.MAX_PRICE), self.tick_size
        )
        if limit_price * size < min_notional:
            raise PolycopyError(f"Notional ${limit_price * size:.2f} below min ${min_notional:.0f}")

        order = self.order_builder.build_order(token_id, TradeSide.BUY, limit_price, size)
        response = await self.api_client.post_signed_order(order, TradingConstants.ORDER_TYPE_GTC)

        logger.info(
            f"Limit buy placed: {response.order_id} token={token_id[:12]}... "
            f"notional=${limit_price * size:.2f} (limitPrice={limit_price} size={size})"
        )
        return response

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped; True if a stop was requested"""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return False
        return True

    async def _run_slot(self, slot: int):
        slug = slug_for_slot(self.market, slot)
        tokens = await self.lookup.get_tokens(slug)
        self.watch(tokens, slot)
        logger.info(f"Watching {slug} (Up={tokens.up_token_id[:12]}..., Down={tokens.down_token_id[:12]}...)")

        slot_end = slot + SLOT_SECONDS
        while not self._stop_event.is_set() and self.clock() < slot_end:
            feed = MarketPriceFeed(self.ws_url, tokens.asset_ids, self.on_price_update)
            self._feed = feed
            feed_task = asyncio.create_task(feed.run())

            done, _ = await asyncio.wait({feed_task}, timeout=max(slot_end - self.clock(), 0))
            if feed_task not in done:
                await feed.close()

            try:
                await feed_task
            except Exception as e:
                logger.error(f"Price feed failed: {e}")
            self._feed = None

            if feed_task in done and self.clock() < slot_end:
                logger.warning(f"Price feed dropped, reconnecting in {RECONNECT_DELAY:.0f}s")
                if await self._sleep(RECONNECT_DELAY):
                    return

    async def run(self):
        """Watch successive slots until stop() is called"""
        self._stop_event.clear()
        mode = "DRY RUN" if self.dry_run else ("LIVE" if self.can_trade else "LOG ONLY")
        logger.info(
            f"Starting price trigger bot ({mode}): {self.market} target={self.target_price} "
            f"min={self.min_price} size={self.buy_size}"
        )

        while not self._stop_event.is_set():
            slot = slot_start(self.clock())
            try:
                await self._run_slot(slot)
            except PolycopyError as e:
                logger.error(f"Failed to watch slot {slot}: {e}")
                if await self._sleep(LOOKUP_RETRY_DELAY):
                    break

        logger.info("Price trigger bot stopped")

    async def stop(self):
        self._stop_event.set()
        if self._feed is not None:
            await self._feed.close()

    async def close(self):
        await self.stop()
        if self.api_client is not None:
            await self.api_client.close()


async def create_price_trigger_bot(
    settings: Optional[Settings] = None,
    dry_run: Optional[bool] = None
) -> PriceTriggerBot:
    """Build the trigger bot from settings; trading needs a key and a proxy wallet"""
    settings = settings or get_settings()
    dry_run = settings.bot_dry_run if dry_run is None else dry_run

    api_client = None
    order_builder = None

    if not settings.private_key or not settings.polymarket_proxy:
        logger.warning(
            "POLYMARKET_PRIVATE_KEY or POLYMARKET_PROXY not set; will only log triggers, no orders."
        )
    elif not dry_run:
        signer = await create_request_signer(settings)
        api_client = PolymarketAPIClient(settings.clob_http_url, signer=signer)
        order_builder = OrderBuilder(
            settings.private_key,
            chain_id=settings.chain_id,
            funder=settings.polymarket_proxy,
            signature_type=settings.signature_type,
            tick_size=settings.polymarket_tick_size,
            neg_risk=settings.polymarket_neg_risk
        )

    return PriceTriggerBot(
        ws_url=settings.clob_ws_url,
        lookup=MarketLookup(settings.gamma_api_url),
        market=settings.bot_market,
        target_price=settings.bot_target_price,
        min_price=settings.bot_min_price,
        buy_size=settings.bot_buy_size,
        dry_run=dry_run,
        price_log_interval_ms=settings.bot_price_log_interval_ms,
        tick_size=settings.polymarket_tick_size,
        api_client=api_client,
        order_builder=order_builder
    )
