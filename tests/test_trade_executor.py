"""
Tests for the trade executor
"""

from unittest.mock import AsyncMock

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from polycopy.api_client import OrderResponse, PolymarketAPIClient
from polycopy.exceptions import ExchangeRejectionError
from polycopy.models import TradeSide
from polycopy.order_builder import canonical_order_message
from polycopy.position_monitor import PositionDiff
from polycopy.trade_executor import DryRunExecutor, TradeExecutor


def buy(market="M1", outcome="Yes", difference=10.0, price=0.5):
    return PositionDiff(market, outcome, TradeSide.BUY, difference, 0.0, difference, price)


def sell(market="M1", outcome="Yes", difference=10.0, price=0.5):
    return PositionDiff(market, outcome, TradeSide.SELL, 0.0, difference, difference, price)


@pytest.fixture
def api_client():
    client = AsyncMock()
    client.get_market_price.return_value = 0.55
    client.place_buy_order.return_value = OrderResponse(order_id="buy-1")
    client.place_sell_order.return_value = OrderResponse(order_id="sell-1")
    return client


@pytest.fixture
def executor(api_client, private_key):
    return TradeExecutor(
        api_client, private_key, max_position_limit=100.0, min_trade_size=1.0, trade_delay=0
    )


class TestPolicy:

    @pytest.mark.asyncio
    async def test_blacklisted_markets_are_never_traded(self, executor, api_client):
        executor.add_to_blacklist("M1")

        results = await executor.execute_trades([buy("M1"), sell("M1", "No")])

        assert results == []
        api_client.get_market_price.assert_not_awaited()
        api_client.place_buy_order.assert_not_awaited()
        api_client.place_sell_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notional_above_limit_is_skipped_with_warning(self, executor, api_client, log_messages):
        executor.set_max_position_limit(2.0)

        results = await executor.execute_trades([buy(difference=10, price=0.5)])

        assert results == []
        api_client.place_buy_order.assert_not_awaited()
        assert any(level == "WARNING" and "exceeds limit" in msg for level, msg in log_messages)

    @pytest.mark.asyncio
    async def test_below_min_trade_size_is_skipped(self, executor, api_client, log_messages):
        results = await executor.execute_trades([buy(difference=0.5)])

        assert results == []
        api_client.place_buy_order.assert_not_awaited()
        assert any(level == "DEBUG" and "below minimum" in msg for level, msg in log_messages)

    def test_blacklist_management(self, executor):
        executor.add_to_blacklist("B")
        executor.add_to_blacklist("A")
        executor.remove_from_blacklist("B")
        executor.remove_from_blacklist("missing")

        assert executor.get_blacklist() == ["A"]


class TestExecution:

    @pytest.mark.asyncio
    async def test_buy_and_sell_are_routed(self, executor, api_client):
        results = await executor.execute_trades([buy("M1"), sell("M2", "No", difference=4)])

        assert [r.order_id for r in results] == ["buy-1", "sell-1"]
        assert all(r.success for r in results)
        assert results[1].side == TradeSide.SELL
        assert results[1].size == 4

        market, outcome, price, size, _ = api_client.place_sell_order.await_args.args
        assert (market, outcome, price, size) == ("M2", "No", 0.55, 4)

    @pytest.mark.asyncio
    async def test_fresh_price_is_used(self, executor, api_client):
        results = await executor.execute_trades([buy(price=0.5)])

        assert results[0].price == 0.55

    @pytest.mark.parametrize("fetched", [None, 0.0])
    @pytest.mark.asyncio
    async def test_cached_price_is_fallback(self, executor, api_client, fetched):
        api_client.get_market_price.return_value = fetched

        results = await executor.execute_trades([buy(price=0.42)])

        assert results[0].price == 0.42
        assert api_client.place_buy_order.await_args.args[2] == 0.42

    @pytest.mark.asyncio
    async def test_malformed_order_book_falls_back_to_cached_price(self, private_key):
        client = PolymarketAPIClient("https://clob.test")

        async def request(method, url, params=None, body=None, headers=None):
            if method == "GET":
                return {"bids": [{"price": "n/a"}]}
            return {"orderID": "buy-1"}

        client._request = request
        executor = TradeExecutor(client, private_key, max_position_limit=100.0, trade_delay=0)

        results = await executor.execute_trades([buy(price=0.42)])

        assert results[0].success
        assert results[0].price == 0.42

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_batch(self, executor, api_client):
        api_client.place_buy_order.side_effect = [
            ExchangeRejectionError("not enough balance"),
            OrderResponse(order_id="buy-2"),
        ]

        results = await executor.execute_trades([buy("M1"), buy("M2"), buy("M3", difference=0.1)])

        assert len(results) == 2
        assert not results[0].success
        assert results[0].error == "not enough balance"
        assert results[1].success
        assert results[1].order_id == "buy-2"

    @pytest.mark.asyncio
    async def test_signature_covers_canonical_order(self, executor, api_client, private_key, monkeypatch):
        monkeypatch.setattr("polycopy.order_builder.time.time", lambda: 1_700_000_000.0)

        await executor.execute_trades([buy("M1", "Yes", difference=10)])

        market, outcome, price, size, signature = api_client.place_buy_order.await_args.args
        message = canonical_order_message(market, outcome, TradeSide.BUY, price, size, 1_700_000_000_000)
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)

        assert signature.startswith("0x")
        assert recovered == Account.from_key(private_key).address

    @pytest.mark.asyncio
    async def test_missing_key_fails_each_trade(self, api_client):
        executor = TradeExecutor(api_client, "", max_position_limit=100, trade_delay=0)

        results = await executor.execute_trades([buy("M1"), buy("M2")])

        assert [r.success for r in results] == [False, False]
        assert "private key" in results[0].error
        api_client.place_buy_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delay_after_every_attempt(self, executor, api_client, monkeypatch):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        monkeypatch.setattr("polycopy.trade_executor.asyncio.sleep", fake_sleep)
        executor.trade_delay = 1.0
        api_client.place_buy_order.side_effect = [ExchangeRejectionError("x"), OrderResponse("ok")]

        await executor.execute_trades([buy("M1"), buy("M2"), buy("M3", difference=0.1)])

        assert sleeps == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_blacklist_change_applies_from_next_call(self, executor, api_client):
        async def blacklist_during_trade(*args):
            executor.add_to_blacklist("M2")
            return OrderResponse("buy-1")

        api_client.place_buy_order.side_effect = blacklist_during_trade

        first = await executor.execute_trades([buy("M1"), buy("M2")])
        second = await executor.execute_trades([buy("M2")])

        assert [r.market for r in first] == ["M1", "M2"]
        assert second == []


class TestDryRunExecutor:

    @pytest.mark.asyncio
    async def test_records_simulated_orders(self, api_client):
        executor = DryRunExecutor(api_client, max_position_limit=100, trade_delay=0)

        results = await executor.execute_trades([buy("M1"), sell("M2", "No")])

        assert all(r.success for r in results)
        assert all(r.order_id.startswith("SIM-") for r in results)
        api_client.place_buy_order.assert_not_awaited()
        api_client.place_sell_order.assert_not_awaited()

        history = executor.get_trade_history()
        assert [h["market"] for h in history] == ["M1", "M2"]
        assert history[0]["signed"] is False

    @pytest.mark.asyncio
    async def test_signs_when_key_available(self, api_client, private_key):
        executor = DryRunExecutor(api_client, private_key, max_position_limit=100, trade_delay=0)

        await executor.execute_trades([buy("M1")])

        assert executor.get_trade_history()[0]["signed"] is True

    @pytest.mark.asyncio
    async def test_policy_still_applies(self, api_client):
        executor = DryRunExecutor(api_client, max_position_limit=1.0, trade_delay=0)

        results = await executor.execute_trades([buy(difference=10, price=0.5)])

        assert results == []
        assert executor.get_trade_history() == []
