from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import httpx
import pytest

from llm_autotrader.core.config import (
    AlertSettings,
    ExchangeSettings,
    ProviderSettings,
    Settings,
    TradingSettings,
)
from llm_autotrader.exchange import BybitClient, Instrument, OrderResult, Position

BASE_URL = "https://bybit.test"
START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock usable both as ``now()`` (datetime) and ``time()`` (epoch seconds)."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, **kw: float) -> None:
        self.now += timedelta(**kw)


Responder = Any


class FakeBybit:
    """Route table for ``httpx.MockTransport``.

    Each route holds a queue of responses; the last one repeats. A response
    may be a dict (200 JSON), an ``httpx.Response`` or a callable taking the
    request.
    """

    def __init__(self, server_time_ms: int = 1_700_000_000_500):
        self.server_time_ms = server_time_ms
        self.routes: Dict[Tuple[str, str], List[Responder]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, *responses: Responder) -> "FakeBybit":
        self.routes[(method, path)] = list(responses)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key == ("GET", "/v5/market/time") and key not in self.routes:
            return httpx.Response(
                200, json={"retCode": 0, "retMsg": "OK", "result": {}, "time": self.server_time_ms}
            )
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(200, json={"retCode": 404, "retMsg": f"no route {key}"})
        resp = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(resp):
            resp = resp(request)
        if isinstance(resp, dict):
            resp = httpx.Response(200, json=resp)
        return resp

    def client(self) -> httpx.Client:
        return httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(self.handler))

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def ok(result: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"retCode": 0, "retMsg": "OK", "result": result or {}}


def instrument_payload(
    symbol: str = "BTCUSDT",
    min_qty: str = "0.001",
    max_qty: str = "100",
    step: str = "0.001",
    min_lev: str = "1",
    max_lev: str = "100",
) -> Dict[str, Any]:
    return ok(
        {
            "list": [
                {
                    "symbol": symbol,
                    "lotSizeFilter": {"minOrderQty": min_qty, "maxOrderQty": max_qty, "qtyStep": step},
                    "leverageFilter": {"minLeverage": min_lev, "maxLeverage": max_lev},
                }
            ]
        }
    )


def ticker_payload(symbol: str = "BTCUSDT", price: str = "50000") -> Dict[str, Any]:
    return ok({"list": [{"symbol": symbol, "lastPrice": price}]})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / ".workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def trading() -> TradingSettings:
    return TradingSettings()


@pytest.fixture
def exchange_settings() -> ExchangeSettings:
    return ExchangeSettings(api_key="test-key", api_secret="test-secret", base_url=BASE_URL)


@pytest.fixture
def settings(workspace: Path, exchange_settings: ExchangeSettings) -> Settings:
    return Settings(
        exchange=exchange_settings,
        chatgpt=ProviderSettings(name="chatgpt", api_key="sk-test", enabled=True),
        alerts=AlertSettings(),
        workspace=str(workspace),
    )


@pytest.fixture
def fake_bybit() -> FakeBybit:
    return FakeBybit()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_client(exchange_settings, trading, workspace, fake_bybit, sleeps, clock) -> Callable[..., BybitClient]:
    def _make(**kw: Any) -> BybitClient:
        return BybitClient(
            kw.pop("settings", exchange_settings),
            kw.pop("trading", trading),
            workspace,
            http=fake_bybit.client(),
            sleep=sleeps.append,
            clock=clock.time,
        )

    return _make


def make_position(
    symbol: str = "BTCUSDT",
    side: str = "Buy",
    size: float = 0.01,
    entry: float = 50000.0,
    mark: float = 50500.0,
    pnl: float = 5.0,
    leverage: float = 3.0,
) -> Position:
    return Position(
        symbol=symbol,
        side=side,
        size=size,
        entry_price=entry,
        mark_price=mark,
        unrealized_pnl=pnl,
        leverage=leverage,
        opened_at="2026-01-15 10:00:00",
    )


@pytest.fixture
def mock_exchange() -> MagicMock:
    """Exchange double: every order call succeeds unless a test overrides it."""
    ex = MagicMock(spec=BybitClient)
    ex.get_positions.return_value = [make_position()]
    ex.get_kline_history.return_value = "[3 5m candles | trend=UP] closes:1,2,3"
    ex.get_top_markets.return_value = []
    ex.get_instrument.return_value = Instrument(symbol="BTCUSDT", min_order_qty=0.001, qty_step=0.001)
    ex.place_order.return_value = OrderResult(ok=True)
    ex.close_position_market.return_value = OrderResult(ok=True)
    ex.set_breakeven_stop_loss.return_value = OrderResult(ok=True)
    return ex


@pytest.fixture
def mock_alerts() -> MagicMock:
    return MagicMock()
