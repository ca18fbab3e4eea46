from __future__ import annotations

import math
import random
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

from llm_autotrader import __version__
from llm_autotrader.constants import (
    CLOCK_OFFSET_FILE,
    INSTRUMENT_CACHE_FILE,
    MAX_CLOSE_FRACTION,
    MIN_CLOSE_FRACTION,
    RECV_WINDOW_MS,
)
from llm_autotrader.core.config import ExchangeSettings, TradingSettings
from llm_autotrader.core.logger import logger
from llm_autotrader.resilience import (
    AuthProviderError,
    ClockSkewError,
    ProviderError,
    RateLimitProviderError,
    TransientProviderError,
    UnknownProviderError,
    exchange_retrying,
    log_event,
    log_provider_error,
)

from .caches import ClockOffsetCache, InstrumentCache
from .models import Instrument, OrderResult, Position
from .signing import auth_headers, build_query_string, minified_json
from .symbols import canonical_symbol, dedupe_top_markets, format_market

# Bybit v5 REST, category=linear. Endpoints used:
# - GET  /v5/market/time | tickers | kline | instruments-info
# - GET  /v5/position/list, /v5/execution/list, /v5/order/realtime, /v5/account/wallet-balance
# - POST /v5/position/set-leverage | switch-isolated | trading-stop, /v5/order/create

CLOCK_SKEW_CODE = 10002
RATE_LIMIT_CODE = 10006

# Order rejections caused by stale lot-size or leverage bounds. Every member is
# handled the same way: drop the cached instrument, log, fail without retry.
QTY_VALIDATION_CODES = frozenset(
    {
        10001,  # params error (qty / leverage out of range)
        110013,  # cannot set leverage due to risk limit
        110017,  # reduce-only qty exceeds position
        110094,  # order notional below minimum
        170136,  # qty exceeds max limit
        170137,  # qty decimal too long
        170140,  # order value below minimum
    }
)

NO_KEYS_ERROR = "API keys not configured"


def round_to_step(qty: float, step: float) -> float:
    """Round ``qty`` down to a multiple of ``step`` (no-op when step <= 0)."""
    if step > 0:
        # small epsilon so 0.3 / 0.1 lands on 3, not 2.9999...
        qty = math.floor(qty / step + 1e-9) * step
    return round(qty, 8)


def clamp_leverage(
    requested: int,
    trading: TradingSettings,
    instrument: Optional[Instrument],
) -> int:
    """Intersect configured and instrument leverage bounds."""
    min_setting = max(1, int(trading.min_leverage))
    max_setting = max(min_setting, int(trading.max_leverage))
    min_symbol = min_setting
    max_symbol = max_setting
    if instrument is not None:
        if instrument.min_leverage is not None:
            min_symbol = instrument.min_leverage
        if instrument.max_leverage is not None:
            max_symbol = instrument.max_leverage
    return max(min_setting, min_symbol, min(max_setting, max_symbol, int(requested)))


def _fmt_price(p: float) -> str:
    text = format(round(p, 6), "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


def kline_interval(minutes: int) -> str:
    for threshold, code in (
        (1440, "D"),
        (720, "720"),
        (360, "360"),
        (240, "240"),
        (120, "120"),
        (60, "60"),
        (30, "30"),
        (15, "15"),
        (5, "5"),
        (3, "3"),
    ):
        if minutes >= threshold:
            return code
    return "1"


def timeframe_label(minutes: int) -> str:
    if minutes >= 1440:
        return "1d"
    if minutes >= 60:
        return f"{minutes / 60:g}h"
    return f"{minutes}m"


class BybitClient:
    """Signed, retried, cached access to the Bybit v5 linear REST API.

    Read methods degrade to empty results on failure; order methods return
    ``OrderResult`` and never raise. Without credentials, positions and trades
    come from a fixed mock set and every order call fails fast.
    """

    def __init__(
        self,
        settings: ExchangeSettings,
        trading: TradingSettings,
        workspace_dir: Path,
        *,
        http: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.trading = trading
        self._sleep = sleep
        self._clock = clock
        self._http = http or httpx.Client(
            base_url=settings.base_url,
            timeout=settings.timeout_s,
            headers={"User-Agent": f"llm-autotrader/{__version__}"},
        )
        workspace_dir = Path(workspace_dir)
        self.instruments = InstrumentCache(workspace_dir / INSTRUMENT_CACHE_FILE, clock=clock)
        self.clock_offset = ClockOffsetCache(workspace_dir / CLOCK_OFFSET_FILE, clock=clock)

    @property
    def has_credentials(self) -> bool:
        return self.settings.has_credentials

    def close(self) -> None:
        self._http.close()

    def begin_tick(self) -> None:
        """Reset per-tick state; the on-disk caches persist."""
        self.instruments.clear_memory()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Dict[str, Any]:
        """Send with retry. Returns the decoded payload; non-zero retCodes are left to callers."""
        operation = f"{method} {path}"
        try:
            for attempt in exchange_retrying(self._sleep):
                with attempt:
                    payload = self._send(method, path, params=params, body=body, signed=signed)
        except ProviderError as e:
            log_provider_error("bybit", operation, type(e).__name__, str(e))
            raise
        return payload

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Dict[str, Any]:
        """One HTTP round trip, classified into the provider error hierarchy."""
        query = build_query_string(params)
        body_str = minified_json(body) if body is not None else ""
        headers: Dict[str, str] = {}
        if signed:
            headers = auth_headers(
                timestamp_ms=self._timestamp_ms(),
                api_key=self.settings.api_key,
                secret_key=self.settings.api_secret,
                payload=body_str if method == "POST" else query,
                recv_window=RECV_WINDOW_MS,
            )
        elif body is not None:
            headers["Content-Type"] = "application/json"

        url = f"{path}?{query}" if query else path
        try:
            resp = self._http.request(method, url, headers=headers, content=body_str or None)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Timeout error: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Transport error: {e}") from e

        status = resp.status_code
        if status == 429:
            raise RateLimitProviderError(
                "HTTP 429 rate limited", retry_after=resp.headers.get("Retry-After")
            )
        if status >= 500:
            raise TransientProviderError(f"HTTP {status} from {path}")
        if status in (401, 403):
            raise AuthProviderError(f"Authentication error: HTTP {status}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise UnknownProviderError(f"Invalid JSON from {path} (HTTP {status})") from e
        if not isinstance(payload, dict):
            raise UnknownProviderError(f"Unexpected payload from {path}: {payload!r}")

        ret_code = payload.get("retCode")
        if ret_code == RATE_LIMIT_CODE:
            raise RateLimitProviderError(
                payload.get("retMsg", "rate limited"),
                retry_after=resp.headers.get("Retry-After"),
            )
        if ret_code == CLOCK_SKEW_CODE:
            self.clock_offset.invalidate()
            raise ClockSkewError(ret_code, payload.get("retMsg", "timestamp out of window"))
        if status >= 400 and ret_code is None:
            raise UnknownProviderError(f"HTTP error {status} from {path}")
        return payload

    def _timestamp_ms(self) -> int:
        return int(self._clock() * 1000) + self._offset_ms()

    def _offset_ms(self) -> int:
        cached = self.clock_offset.get()
        if cached is not None:
            return cached
        try:
            before = int(self._clock() * 1000)
            payload = self._send("GET", "/v5/market/time")
            after = int(self._clock() * 1000)
        except ProviderError as e:
            logger.warning(f"Server time unavailable, signing with local clock: {e}")
            return 0
        server_ms = payload.get("time")
        if server_ms is None:
            nano = (payload.get("result") or {}).get("timeNano")
            server_ms = int(nano) // 1_000_000 if nano else None
        if server_ms is None:
            return 0
        offset = int(server_ms) - (before + after) // 2
        self.clock_offset.set(offset)
        return offset

    @staticmethod
    def _ok(payload: Dict[str, Any]) -> bool:
        return payload.get("retCode") == 0

    # ------------------------------------------------------------------
    # Account reads
    # ------------------------------------------------------------------

    def get_positions(self) -> List[Position]:
        if not self.has_credentials:
            return self._mock_positions()
        try:
            payload = self._request(
                "GET",
                "/v5/position/list",
                params={"category": "linear", "settleCoin": "USDT"},
                signed=True,
            )
        except ProviderError as e:
            logger.error(f"API Error (get_positions): {e}")
            return []
        if not self._ok(payload):
            logger.error(f"get_positions rejected: {payload.get('retMsg')}")
            return []
        rows = (payload.get("result") or {}).get("list") or []
        return [Position.from_api(r) for r in rows if _float(r.get("size")) > 0]

    def _executions(self, limit: int) -> List[Dict[str, Any]]:
        payload = self._request(
            "GET",
            "/v5/execution/list",
            params={"category": "linear", "settleCoin": "USDT", "limit": limit},
            signed=True,
        )
        if not self._ok(payload):
            return []
        return (payload.get("result") or {}).get("list") or []

    def get_trades(self, limit: int = 100) -> List[Dict[str, Any]]:
        if not self.has_credentials:
            return self._mock_trades(limit)
        try:
            return [_format_trade(t) for t in self._executions(limit)]
        except ProviderError as e:
            logger.error(f"API Error (get_trades): {e}")
            return []

    def get_closed_trades(self, limit: int = 100) -> List[Dict[str, Any]]:
        if not self.has_credentials:
            return self._mock_trades(limit)
        try:
            rows = self._executions(limit)
        except ProviderError as e:
            logger.error(f"API Error (get_closed_trades): {e}")
            return []
        return [_format_trade(t) for t in rows if t.get("closedPnl") not in (None, "")]

    def get_open_orders(self, symbol: str = "") -> List[Dict[str, Any]]:
        if not self.has_credentials:
            return []
        params: Dict[str, Any] = {"category": "linear", "settleCoin": "USDT"}
        if symbol:
            params["symbol"] = symbol
        try:
            payload = self._request("GET", "/v5/order/realtime", params=params, signed=True)
        except ProviderError as e:
            logger.error(f"API Error (get_open_orders): {e}")
            return []
        if not self._ok(payload):
            return []
        return [_format_order(o) for o in (payload.get("result") or {}).get("list") or []]

    def get_balance(self) -> Dict[str, float]:
        empty = {
            "total_equity": 0.0,
            "wallet_balance": 0.0,
            "available_balance": 0.0,
            "unrealised_pnl": 0.0,
        }
        if not self.has_credentials:
            return empty
        try:
            payload = self._request(
                "GET",
                "/v5/account/wallet-balance",
                params={"accountType": "UNIFIED", "coin": "USDT"},
                signed=True,
            )
        except ProviderError as e:
            logger.error(f"Balance Error: {e}")
            return empty
        accounts = (payload.get("result") or {}).get("list") or []
        if not self._ok(payload) or not accounts:
            return empty

        account = accounts[0]
        total_equity = _float(account.get("totalEquity"))
        usdt_wallet = 0.0
        unrealised = 0.0
        for coin in account.get("coin") or []:
            if coin.get("coin") == "USDT":
                usdt_wallet = _float(coin.get("walletBalance"))
                unrealised = _float(coin.get("unrealisedPnl"))
                break
        return {
            "total_equity": total_equity,
            "wallet_balance": total_equity,
            "available_balance": _float(account.get("totalAvailableBalance")),
            "unrealised_pnl": unrealised,
            "usdt_wallet": usdt_wallet,
        }

    def get_statistics(self) -> Dict[str, Any]:
        """Win rate, profit factor and worst trade over recent closed trades."""
        trades = self.get_closed_trades(1000) or self.get_trades(1000)
        closed = [t for t in trades if t.get("closed_pnl") is not None]
        pnls = [_float(t["closed_pnl"]) for t in closed]
        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p < 0]
        total = len(pnls)
        if not total:
            return {
                "total_trades": 0,
                "win_rate": 0.0,
                "total_profit": 0.0,
                "average_profit": 0.0,
                "max_drawdown": 0.0,
                "profit_factor": 0.0,
                "winning_trades": 0,
                "losing_trades": 0,
            }
        losing_sum = abs(sum(losses))
        winning_sum = sum(wins)
        if losing_sum > 0:
            profit_factor = winning_sum / losing_sum
        else:
            profit_factor = 999.0 if winning_sum > 0 else 0.0
        return {
            "total_trades": total,
            "win_rate": round(len(wins) / total * 100, 2),
            "total_profit": round(sum(pnls), 2),
            "average_profit": round(sum(pnls) / total, 2),
            "max_drawdown": round(min(pnls), 2),
            "profit_factor": round(profit_factor, 2),
            "winning_trades": len(wins),
            "losing_trades": len(losses),
        }

    def test_connection(self) -> Dict[str, Any]:
        if not self.has_credentials:
            return {"ok": False, "reason": "Bybit API keys are not configured"}
        try:
            payload = self._send(
                "GET",
                "/v5/position/list",
                params={"category": "linear", "settleCoin": "USDT", "limit": 1},
                signed=True,
            )
        except ProviderError as e:
            return {"ok": False, "error": str(e)}
        if self._ok(payload):
            return {"ok": True, "message": "Bybit connection OK, keys and signature accepted."}
        return {"ok": False, "ret_code": payload.get("retCode"), "ret_msg": payload.get("retMsg")}

    # ------------------------------------------------------------------
    # Market data (public, canonical symbols)
    # ------------------------------------------------------------------

    def get_market_data(self, symbol: str = "BTCUSDT") -> Dict[str, Any]:
        try:
            payload = self._request(
                "GET",
                "/v5/market/tickers",
                params={"category": "linear", "symbol": canonical_symbol(symbol)},
            )
        except ProviderError as e:
            logger.error(f"Market Data Error: {e}")
            return {}
        rows = (payload.get("result") or {}).get("list") or []
        if self._ok(payload) and rows:
            return rows[0]
        return {}

    def get_top_markets(self, limit: int = 100, category: str = "linear") -> List[Dict[str, Any]]:
        try:
            payload = self._request("GET", "/v5/market/tickers", params={"category": category})
        except ProviderError as e:
            logger.error(f"Market Top Error: {e}")
            return []
        rows = (payload.get("result") or {}).get("list") or []
        if not self._ok(payload) or not rows:
            return []
        return [format_market(item) for item in dedupe_top_markets(rows, limit)]

    def get_kline_history(
        self,
        symbol: str,
        interval_minutes: int,
        limit: int = 60,
        max_price_points: int = 30,
    ) -> str:
        """Compact one-line candle summary for prompts."""
        market_symbol = canonical_symbol(symbol)
        interval = kline_interval(interval_minutes)
        try:
            payload = self._request(
                "GET",
                "/v5/market/kline",
                params={
                    "category": "linear",
                    "symbol": market_symbol,
                    "interval": interval,
                    "limit": min(limit, 200),
                },
            )
        except ProviderError as e:
            logger.warning(f"get_kline_history({symbol},{interval}) error: {e}")
            return f"[kline unavailable for {symbol}]"

        rows = (payload.get("result") or {}).get("list") or []
        if not self._ok(payload) or not rows:
            return f"[kline error for {symbol}: {payload.get('retMsg') or 'no data'}]"

        # Exchange returns newest first: [start, open, high, low, close, volume, turnover]
        candles = list(reversed(rows))
        closes = [_float(c[4]) if len(c) > 4 else 0.0 for c in candles]
        highs = [_float(c[2]) if len(c) > 2 else 0.0 for c in candles]
        lows = [_float(c[3]) if len(c) > 3 else 0.0 for c in candles]
        first, last = closes[0], closes[-1]

        trend = "FLAT"
        if last > first * 1.001:
            trend = "UP"
        elif last < first * 0.999:
            trend = "DOWN"

        header = (
            f"[{len(closes)} {timeframe_label(interval_minutes)} candles | "
            f"open={_fmt_price(first)} close={_fmt_price(last)} "
            f"min={_fmt_price(min(lows))} max={_fmt_price(max(highs))} trend={trend}]"
        )
        recent = closes[-max_price_points:] if max_price_points > 0 else []
        return header + " closes:" + ",".join(_fmt_price(p) for p in recent)

    def get_instrument(self, symbol: str) -> Optional[Instrument]:
        cached = self.instruments.get(symbol)
        if cached is not None:
            return cached
        try:
            payload = self._request(
                "GET",
                "/v5/market/instruments-info",
                params={"category": "linear", "symbol": symbol},
            )
        except ProviderError as e:
            logger.error(f"get_instrument Error: {e}")
            return None
        rows = (payload.get("result") or {}).get("list") or []
        if not self._ok(payload) or not rows:
            return None
        instrument = Instrument.from_api(rows[0])
        self.instruments.put(instrument)
        return instrument

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _post_best_effort(self, path: str, body: Dict[str, Any]) -> None:
        """Single attempt; outcome only logged."""
        try:
            payload = self._send("POST", path, body=body, signed=True)
        except ProviderError as e:
            logger.warning(f"{path} failed (ignored): {e}")
            return
        if not self._ok(payload):
            logger.info(f"{path} retCode={payload.get('retCode')} {payload.get('retMsg')}")

    def _order_outcome(self, symbol: str, payload: Dict[str, Any]) -> OrderResult:
        if self._ok(payload):
            return OrderResult(ok=True, result=payload.get("result") or {})
        ret_code = payload.get("retCode")
        ret_msg = payload.get("retMsg") or "Unknown error"
        if ret_code in QTY_VALIDATION_CODES:
            self.instruments.invalidate(symbol)
            log_event(
                "instrument_invalidated",
                {"symbol": symbol, "ret_code": ret_code, "ret_msg": ret_msg},
                context="order",
            )
        return OrderResult.failure(ret_msg, ret_code=ret_code)

    def place_order(
        self, symbol: str, side: str, position_size_usdt: float, leverage: int
    ) -> OrderResult:
        """Open an isolated-margin market position worth ``position_size_usdt``."""
        if not self.has_credentials:
            return OrderResult.failure(NO_KEYS_ERROR)

        instrument = self.get_instrument(symbol)
        leverage = clamp_leverage(leverage, self.trading, instrument)

        market = self.get_market_data(symbol)
        price = _float(market.get("lastPrice"))
        if price <= 0:
            return OrderResult.failure(f"Could not fetch price for {symbol}")

        min_qty = instrument.min_order_qty if instrument else 0.0
        max_qty = instrument.max_order_qty if instrument else 0.0
        step = instrument.qty_step if instrument else 0.0
        qty = round_to_step(position_size_usdt / price, step)

        log_event(
            "order_attempt",
            {
                "symbol": symbol,
                "side": side,
                "usdt": position_size_usdt,
                "price": price,
                "qty": qty,
                "leverage": leverage,
                "min_qty": min_qty,
                "max_qty": max_qty,
                "qty_step": step,
            },
            context="order",
        )

        if min_qty > 0 and qty < min_qty:
            min_usdt = min_qty * price
            return OrderResult.failure(
                f"Minimum order size for {symbol} is about {min_usdt:.2f} USDT",
                min_position_usdt=min_usdt,
            )
        if max_qty > 0 and qty > max_qty:
            return OrderResult.failure(
                f"Position size exceeds the maximum allowed for {symbol}"
            )
        if qty <= 0:
            return OrderResult.failure("Order quantity too small")

        lev = str(leverage)
        self._post_best_effort(
            "/v5/position/set-leverage",
            {"category": "linear", "symbol": symbol, "buyLeverage": lev, "sellLeverage": lev},
        )
        self._post_best_effort(
            "/v5/position/switch-isolated",
            {
                "category": "linear",
                "symbol": symbol,
                "tradeMode": 1,
                "buyLeverage": lev,
                "sellLeverage": lev,
            },
        )

        body = {
            "category": "linear",
            "symbol": symbol,
            "side": side,
            "orderType": "Market",
            "qty": _fmt_qty(qty),
            "positionIdx": 0,
            # Same link id across retries, the exchange rejects duplicates
            "orderLinkId": _order_link_id(),
        }
        try:
            payload = self._request("POST", "/v5/order/create", body=body, signed=True)
        except ProviderError as e:
            logger.error(f"place_order Error: {e}")
            return OrderResult.failure(str(e))
        return self._order_outcome(symbol, payload)

    def close_position_market(
        self,
        symbol: str,
        current_side: str,
        fraction: float = 1.0,
        position: Optional[Position] = None,
    ) -> OrderResult:
        """Reduce-only market close of ``fraction`` of the position."""
        if not self.has_credentials:
            return OrderResult.failure(NO_KEYS_ERROR)

        if position is None:
            position = next(
                (
                    p
                    for p in self.get_positions()
                    if p.symbol == symbol and p.side == current_side
                ),
                None,
            )
        if position is None:
            return OrderResult.failure("Position not found")
        if position.size <= 0:
            return OrderResult.failure("Position size is zero")

        fraction = max(MIN_CLOSE_FRACTION, min(MAX_CLOSE_FRACTION, float(fraction)))
        instrument = self.get_instrument(symbol)
        min_qty = instrument.min_order_qty if instrument else 0.0
        step = instrument.qty_step if instrument else 0.0
        qty = round_to_step(position.size * fraction, step)

        log_event(
            "close_attempt",
            {
                "symbol": symbol,
                "side": current_side,
                "fraction": fraction,
                "qty": qty,
                "size": position.size,
                "min_qty": min_qty,
                "qty_step": step,
            },
            context="order",
        )

        if min_qty > 0 and qty < min_qty:
            return OrderResult.skip("position_too_small_for_partial_close")
        if qty <= 0:
            return OrderResult.skip("zero_quantity_partial_close")

        body = {
            "category": "linear",
            "symbol": symbol,
            "side": "Sell" if current_side.lower() == "buy" else "Buy",
            "orderType": "Market",
            "qty": _fmt_qty(qty),
            "reduceOnly": True,
            "positionIdx": 0,
            "orderLinkId": _order_link_id(),
        }
        try:
            payload = self._request("POST", "/v5/order/create", body=body, signed=True)
        except ProviderError as e:
            logger.error(f"close_position_market Error: {e}")
            return OrderResult.failure(str(e))
        return self._order_outcome(symbol, payload)

    def set_breakeven_stop_loss(
        self, symbol: str, current_side: str, entry_price: float
    ) -> OrderResult:
        """Move the stop-loss to the entry price. No PnL check here."""
        if not self.has_credentials:
            return OrderResult.failure(NO_KEYS_ERROR)

        body = {
            "category": "linear",
            "symbol": symbol,
            "positionIdx": 0,
            "tpslMode": "Full",
            "stopLoss": _fmt_price(max(0.0001, float(entry_price))),
            "slTriggerBy": "MarkPrice",
            "slOrderType": "Market",
        }
        try:
            payload = self._request("POST", "/v5/position/trading-stop", body=body, signed=True)
        except ProviderError as e:
            logger.error(f"set_breakeven_stop_loss Error: {e}")
            return OrderResult.failure(str(e))
        return self._order_outcome(symbol, payload)

    # ------------------------------------------------------------------
    # Mock data (no credentials)
    # ------------------------------------------------------------------

    def _mock_positions(self) -> List[Position]:
        opened = datetime.now(timezone.utc) - timedelta(hours=2)
        return [
            Position(
                symbol="BTCUSDT",
                side="Buy",
                size=0.1,
                entry_price=45000.0,
                mark_price=45200.0,
                unrealized_pnl=20.0,
                leverage=10.0,
                opened_at=opened.strftime("%Y-%m-%d %H:%M:%S"),
            )
        ]

    def _mock_trades(self, limit: int) -> List[Dict[str, Any]]:
        now = datetime.now(timezone.utc)
        trades = []
        for i in range(min(limit, 50)):
            trades.append(
                {
                    "id": f"mock_{i + 1}",
                    "symbol": random.choice(["BTCUSDT", "ETHUSDT", "BNBUSDT"]),
                    "side": random.choice(["Buy", "Sell"]),
                    "price": float(random.randint(40000, 50000)),
                    "quantity": random.randint(1, 100) / 100,
                    "closed_pnl": float(random.randint(-100, 200)),
                    "status": "Filled",
                    "opened_at": (now - timedelta(hours=i)).strftime("%Y-%m-%d %H:%M:%S"),
                    "order_type": "Market",
                }
            )
        return trades


def _float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _fmt_qty(qty: float) -> str:
    text = format(qty, ".8f").rstrip("0").rstrip(".")
    return text or "0"


def _order_link_id() -> str:
    return f"la-{uuid.uuid4().hex[:24]}"


def _ms_str(value: Any) -> str:
    try:
        ts = int(value) / 1000.0
    except (TypeError, ValueError):
        ts = time.time()
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _format_trade(trade: Dict[str, Any]) -> Dict[str, Any]:
    closed = trade.get("closedPnl")
    return {
        "id": trade.get("execId", ""),
        "symbol": trade.get("symbol", ""),
        "side": trade.get("side", ""),
        "price": _float(trade.get("execPrice")),
        "quantity": _float(trade.get("execQty")),
        "closed_pnl": _float(closed) if closed not in (None, "") else None,
        "status": trade.get("execStatus", "Unknown"),
        "opened_at": _ms_str(trade.get("execTime")),
        "order_type": trade.get("orderType", ""),
    }


def _format_order(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "order_id": order.get("orderId", ""),
        "order_link_id": order.get("orderLinkId", ""),
        "symbol": order.get("symbol", ""),
        "side": order.get("side", ""),
        "order_type": order.get("orderType", ""),
        "price": _float(order.get("price")),
        "trigger_price": order.get("triggerPrice"),
        "qty": _float(order.get("qty")),
        "leaves_qty": _float(order.get("leavesQty")),
        "cum_exec_qty": _float(order.get("cumExecQty")),
        "status": order.get("orderStatus", "Unknown"),
        "time_in_force": order.get("timeInForce", "GTC"),
        "created_time": _ms_str(order.get("createdTime")),
        "updated_time": _ms_str(order.get("updatedTime")),
    }
