"""BybitClient against an in-process fake of the v5 REST API."""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import instrument_payload, ok, ticker_payload
from llm_autotrader.core.config import ExchangeSettings, TradingSettings
from llm_autotrader.exchange import BybitClient, Position, clamp_leverage, round_to_step
from llm_autotrader.exchange.client import NO_KEYS_ERROR
from llm_autotrader.exchange.models import Instrument
from llm_autotrader.exchange.signing import sign_v5


class TestSizingHelpers:
    @pytest.mark.parametrize(
        "qty,step,expected",
        [(0.0027, 0.001, 0.002), (0.3, 0.1, 0.3), (12.99, 1.0, 12.0), (0.5, 0, 0.5), (0.00049, 0.001, 0.0)],
    )
    def test_round_to_step_floors_to_multiple(self, qty, step, expected):
        assert round_to_step(qty, step) == pytest.approx(expected)

    def test_clamp_leverage_intersects_bounds(self):
        trading = TradingSettings(min_leverage=2, max_leverage=10)
        inst = Instrument(symbol="X", min_leverage=1, max_leverage=5)
        assert clamp_leverage(20, trading, inst) == 5
        assert clamp_leverage(1, trading, inst) == 2
        assert clamp_leverage(7, trading, None) == 7


class TestPlaceOrder:
    def _routes(self, fake_bybit, order_response=None):
        fake_bybit.on("GET", "/v5/market/instruments-info", instrument_payload())
        fake_bybit.on("GET", "/v5/market/tickers", ticker_payload(price="50000"))
        fake_bybit.on("POST", "/v5/position/set-leverage", ok())
        fake_bybit.on("POST", "/v5/position/switch-isolated", {"retCode": 110026, "retMsg": "already isolated"})
        fake_bybit.on("POST", "/v5/order/create", order_response or ok({"orderId": "1"}))

    def test_successful_order_runs_three_calls_in_order(self, fake_bybit, make_client):
        self._routes(fake_bybit)
        client = make_client()

        result = client.place_order("BTCUSDT", "Buy", 100.0, 3)

        assert result.ok is True
        posts = [r.url.path for r in fake_bybit.requests if r.method == "POST"]
        assert posts == ["/v5/position/set-leverage", "/v5/position/switch-isolated", "/v5/order/create"]

        order = fake_bybit.calls("/v5/order/create")[0]
        body = json.loads(order.content)
        assert body["qty"] == "0.002"
        assert body["side"] == "Buy"
        assert body["orderType"] == "Market"
        assert body["orderLinkId"].startswith("la-")

    def test_order_request_is_signed_over_body(self, fake_bybit, make_client):
        self._routes(fake_bybit)
        make_client().place_order("BTCUSDT", "Buy", 100.0, 3)

        order = fake_bybit.calls("/v5/order/create")[0]
        expected = sign_v5(
            timestamp_ms=int(order.headers["X-BAPI-TIMESTAMP"]),
            api_key="test-key",
            secret_key="test-secret",
            payload=order.content.decode(),
        )
        assert order.headers["X-BAPI-SIGN"] == expected
        assert order.headers["X-BAPI-API-KEY"] == "test-key"

    def test_below_minimum_reports_usdt_minimum_and_sends_nothing(self, fake_bybit, make_client):
        self._routes(fake_bybit)
        result = make_client().place_order("BTCUSDT", "Buy", 10.0, 3)

        assert result.ok is False
        assert result.min_position_usdt == pytest.approx(50.0)
        assert fake_bybit.calls("/v5/order/create") == []

    def test_above_maximum_is_rejected(self, fake_bybit, make_client):
        self._routes(fake_bybit)
        fake_bybit.on("GET", "/v5/market/instruments-info", instrument_payload(max_qty="0.001"))
        result = make_client().place_order("BTCUSDT", "Buy", 100.0, 3)
        assert result.ok is False
        assert "maximum" in result.error

    def test_missing_price_fails(self, fake_bybit, make_client):
        self._routes(fake_bybit)
        fake_bybit.on("GET", "/v5/market/tickers", ok({"list": []}))
        result = make_client().place_order("BTCUSDT", "Buy", 100.0, 3)
        assert result.ok is False
        assert "price" in result.error

    def test_qty_validation_invalidates_instrument_without_retry(self, fake_bybit, make_client):
        self._routes(fake_bybit, order_response={"retCode": 170137, "retMsg": "too many decimals"})
        client = make_client()

        result = client.place_order("BTCUSDT", "Buy", 100.0, 3)

        assert result.ok is False
        assert result.ret_code == 170137
        assert len(fake_bybit.calls("/v5/order/create")) == 1
        assert client.instruments.get("BTCUSDT") is None

    def test_no_credentials_fails_fast(self, fake_bybit, make_client):
        client = make_client(settings=ExchangeSettings(base_url="https://bybit.test"))
        result = client.place_order("BTCUSDT", "Buy", 100.0, 3)
        assert result.ok is False
        assert result.error == NO_KEYS_ERROR
        assert fake_bybit.requests == []


class TestClosePosition:
    def _position(self, size):
        return Position(symbol="BTCUSDT", side="Buy", size=size, entry_price=50000.0)

    def test_partial_close_below_minimum_is_skipped(self, fake_bybit, make_client):
        fake_bybit.on("GET", "/v5/market/instruments-info", instrument_payload())
        result = make_client().close_position_market("BTCUSDT", "Buy", 0.5, self._position(0.001))

        assert result.ok is True
        assert result.skipped is True
        assert result.skip_reason == "position_too_small_for_partial_close"
        assert fake_bybit.calls("/v5/order/create") == []

    def test_zero_quantity_is_skipped(self, fake_bybit, make_client):
        fake_bybit.on("GET", "/v5/market/instruments-info", instrument_payload(min_qty="0"))
        result = make_client().close_position_market("BTCUSDT", "Buy", 0.5, self._position(0.001))
        assert result.skipped is True
        assert result.skip_reason == "zero_quantity_partial_close"

    def test_fraction_is_clamped_and_order_is_reduce_only(self, fake_bybit, make_client):
        fake_bybit.on("GET", "/v5/market/instruments-info", instrument_payload(min_qty="0.1", step="0.1"))
        fake_bybit.on("POST", "/v5/order/create", ok())

        result = make_client().close_position_market("BTCUSDT", "Buy", 0.01, self._position(10.0))

        assert result.ok is True
        body = json.loads(fake_bybit.calls("/v5/order/create")[0].content)
        assert body["qty"] == "0.5"
        assert body["side"] == "Sell"
        assert body["reduceOnly"] is True

    def test_missing_position_fails(self, fake_bybit, make_client):
        fake_bybit.on("GET", "/v5/position/list", ok({"list": []}))
        result = make_client().close_position_market("BTCUSDT", "Buy", 1.0)
        assert result.ok is False
        assert result.error == "Position not found"


class TestRetry:
    def test_persistent_503_gives_three_attempts_with_backoff(self, fake_bybit, make_client, sleeps):
        fake_bybit.on("GET", "/v5/market/tickers", lambda request: httpx.Response(503))

        assert make_client().get_market_data("BTCUSDT") == {}
        assert len(fake_bybit.calls("/v5/market/tickers")) == 3
        assert sleeps == [1.0, 2.0]

    def test_rate_limit_waits_clamped_retry_after(self, fake_bybit, make_client, sleeps):
        fake_bybit.on(
            "GET",
            "/v5/market/tickers",
            httpx.Response(429, headers={"Retry-After": "120"}),
            ticker_payload(),
        )
        data = make_client().get_market_data("BTCUSDT")
        assert data["lastPrice"] == "50000"
        assert sleeps == [30.0]

    def test_rate_limit_ret_code_is_retried(self, fake_bybit, make_client, sleeps):
        fake_bybit.on(
            "GET",
            "/v5/market/tickers",
            {"retCode": 10006, "retMsg": "too many visits"},
            ticker_payload(),
        )
        assert make_client().get_market_data("BTCUSDT")["symbol"] == "BTCUSDT"
        assert sleeps == [1.0]

    def test_clock_skew_refreshes_offset_and_retries(self, fake_bybit, make_client, sleeps):
        fake_bybit.on(
            "GET",
            "/v5/position/list",
            {"retCode": 10002, "retMsg": "timestamp out of recv_window"},
            ok({"list": [{"symbol": "BTCUSDT", "side": "Buy", "size": "0.01", "avgPrice": "50000"}]}),
        )
        positions = make_client().get_positions()

        assert [p.symbol for p in positions] == ["BTCUSDT"]
        assert len(fake_bybit.calls("/v5/market/time")) == 2
        assert all(s == 0 for s in sleeps)

    def test_persistent_clock_skew_gets_one_extra_attempt(self, fake_bybit, make_client):
        fake_bybit.on("GET", "/v5/position/list", {"retCode": 10002, "retMsg": "timestamp"})
        assert make_client().get_positions() == []
        assert len(fake_bybit.calls("/v5/position/list")) == 4

    def test_auth_error_is_not_retried(self, fake_bybit, make_client):
        fake_bybit.on("GET", "/v5/position/list", lambda request: httpx.Response(401))
        assert make_client().get_positions() == []
        assert len(fake_bybit.calls("/v5/position/list")) == 1

    def test_clock_offset_is_cached_between_calls(self, fake_bybit, make_client):
        fake_bybit.on("GET", "/v5/position/list", ok({"list": []}))
        client = make_client()
        client.get_positions()
        client.get_positions()
        assert len(fake_bybit.calls("/v5/market/time")) == 1


class TestReads:
    def test_no_credentials_returns_mock_positions(self, fake_bybit, make_client):
        client = make_client(settings=ExchangeSettings(base_url="https://bybit.test"))
        positions = client.get_positions()
        assert positions and positions[0].symbol == "BTCUSDT"
        assert fake_bybit.requests == []

    def test_positions_with_zero_size_are_dropped(self, fake_bybit, make_client):
        fake_bybit.on(
            "GET",
            "/v5/position/list",
            ok(
                {
                    "list": [
                        {"symbol": "BTCUSDT", "side": "Buy", "size": "0.01", "avgPrice": "50000", "unrealisedPnl": "3.5", "leverage": "5"},
                        {"symbol": "ETHUSDT", "side": "", "size": "0"},
                    ]
                }
            ),
        )
        positions = make_client().get_positions()
        assert len(positions) == 1
        assert positions[0].unrealized_pnl == 3.5
        assert positions[0].leverage == 5.0

    def test_kline_history_summary(self, fake_bybit, make_client):
        rows = [
            ["3", "0", "12", "9", "11", "0", "0"],
            ["2", "0", "11", "8", "10", "0", "0"],
            ["1", "0", "10", "7", "9", "0", "0"],
        ]
        fake_bybit.on("GET", "/v5/market/kline", ok({"list": rows}))

        text = make_client().get_kline_history("BTCPERP", 5, 60, 2)

        assert text == "[3 5m candles | open=9 close=11 min=7 max=12 trend=UP] closes:10,11"
        request = fake_bybit.calls("/v5/market/kline")[0]
        assert request.url.params["symbol"] == "BTCUSDT"
        assert request.url.params["interval"] == "5"

    def test_top_markets_are_deduplicated(self, fake_bybit, make_client):
        fake_bybit.on(
            "GET",
            "/v5/market/tickers",
            ok(
                {
                    "list": [
                        {"symbol": "BTCUSDT", "lastPrice": "50000", "turnover24h": "100", "price24hPcnt": "0.01"},
                        {"symbol": "BTCPERP", "lastPrice": "50001", "turnover24h": "50", "price24hPcnt": "0.01"},
                        {"symbol": "ETHUSDT", "lastPrice": "3000", "turnover24h": "80", "price24hPcnt": "-0.02"},
                    ]
                }
            ),
        )
        markets = make_client().get_top_markets(10)
        assert [m["symbol"] for m in markets] == ["ETHUSDT", "BTCPERP"]
        assert markets[0]["price24hPcnt"] == pytest.approx(-2.0)

    def test_instrument_is_cached_across_calls(self, fake_bybit, make_client):
        fake_bybit.on("GET", "/v5/market/instruments-info", instrument_payload())
        client = make_client()
        first = client.get_instrument("BTCUSDT")
        client.begin_tick()
        second = client.get_instrument("BTCUSDT")
        assert first == second
        assert len(fake_bybit.calls("/v5/market/instruments-info")) == 1


def test_breakeven_stop_uses_entry_price(fake_bybit, make_client):
    fake_bybit.on("POST", "/v5/position/trading-stop", ok())
    result = make_client().set_breakeven_stop_loss("BTCUSDT", "Buy", 50000.0)
    assert result.ok is True
    body = json.loads(fake_bybit.calls("/v5/position/trading-stop")[0].content)
    assert body["stopLoss"] == "50000"
    assert body["symbol"] == "BTCUSDT"


class TestAccount:
    def test_balance_reads_unified_usdt(self, fake_bybit, make_client):
        fake_bybit.on(
            "GET",
            "/v5/account/wallet-balance",
            ok(
                {
                    "list": [
                        {
                            "totalEquity": "1250.5",
                            "totalAvailableBalance": "900",
                            "coin": [
                                {"coin": "BTC", "walletBalance": "0.1"},
                                {"coin": "USDT", "walletBalance": "1200", "unrealisedPnl": "-4.5"},
                            ],
                        }
                    ]
                }
            ),
        )
        bal = make_client().get_balance()
        assert bal["total_equity"] == 1250.5
        assert bal["available_balance"] == 900.0
        assert bal["usdt_wallet"] == 1200.0
        assert bal["unrealised_pnl"] == -4.5
        request = fake_bybit.calls("/v5/account/wallet-balance")[0]
        assert request.url.params["accountType"] == "UNIFIED"
        assert "X-BAPI-SIGN" in request.headers

    def test_balance_failure_gives_zeros(self, fake_bybit, make_client):
        fake_bybit.on("GET", "/v5/account/wallet-balance", {"retCode": 10003, "retMsg": "invalid key"})
        assert make_client().get_balance()["total_equity"] == 0.0

    def test_closed_trades_and_statistics(self, fake_bybit, make_client):
        fake_bybit.on(
            "GET",
            "/v5/execution/list",
            ok(
                {
                    "list": [
                        {"execId": "a", "symbol": "BTCUSDT", "side": "Sell", "execPrice": "51000", "execQty": "0.01", "closedPnl": "10", "execTime": "1700000000000"},
                        {"execId": "b", "symbol": "ETHUSDT", "side": "Buy", "execPrice": "3000", "execQty": "1", "closedPnl": "-5", "execTime": "1700000000000"},
                        {"execId": "c", "symbol": "BTCUSDT", "side": "Buy", "execPrice": "50000", "execQty": "0.01", "closedPnl": "", "execTime": "1700000000000"},
                    ]
                }
            ),
        )
        client = make_client()

        closed = client.get_closed_trades(50)
        assert [t["id"] for t in closed] == ["a", "b"]
        assert closed[0]["opened_at"] == "2023-11-14 22:13:20"
        assert len(client.get_trades(50)) == 3

        s = client.get_statistics()
        assert s["total_trades"] == 2
        assert s["win_rate"] == 50.0
        assert s["total_profit"] == 5.0
        assert s["profit_factor"] == 2.0
        assert s["max_drawdown"] == -5.0

    def test_open_orders_filter(self, fake_bybit, make_client):
        fake_bybit.on(
            "GET",
            "/v5/order/realtime",
            ok({"list": [{"orderId": "1", "symbol": "BTCUSDT", "side": "Sell", "orderType": "Limit", "price": "60000", "qty": "0.01", "orderStatus": "New"}]}),
        )
        orders = make_client().get_open_orders("BTCUSDT")
        assert orders[0]["order_id"] == "1"
        assert orders[0]["status"] == "New"
        assert fake_bybit.calls("/v5/order/realtime")[0].url.params["symbol"] == "BTCUSDT"

    def test_connection_check(self, fake_bybit, make_client):
        fake_bybit.on("GET", "/v5/position/list", ok({"list": []}))
        assert make_client().test_connection()["ok"] is True

        no_keys = make_client(settings=ExchangeSettings(base_url="https://bybit.test"))
        assert no_keys.test_connection()["ok"] is False
