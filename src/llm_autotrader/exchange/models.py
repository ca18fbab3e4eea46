from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _f(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _opt_f(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    return v if v != 0 else None


def _ms_to_str(value: Any) -> str:
    try:
        ts = int(value) / 1000.0
    except (TypeError, ValueError):
        ts = datetime.now(timezone.utc).timestamp()
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class Position:
    """Open position, read fresh from the exchange on every call."""

    symbol: str
    side: str  # Buy (long) / Sell (short)
    size: float
    entry_price: float
    mark_price: float = 0.0
    unrealized_pnl: float = 0.0
    leverage: float = 1.0
    liquidation_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    opened_at: str = ""
    # Attached by the tick before the decision prompt is built
    price_history: Optional[str] = None
    timeframe: Optional[int] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Position":
        return cls(
            symbol=raw.get("symbol", ""),
            side=raw.get("side", ""),
            size=_f(raw.get("size")),
            entry_price=_f(raw.get("avgPrice")),
            mark_price=_f(raw.get("markPrice")),
            unrealized_pnl=_f(raw.get("unrealisedPnl")),
            leverage=_f(raw.get("leverage"), 1.0) or 1.0,
            liquidation_price=_opt_f(raw.get("liqPrice")),
            stop_loss=_opt_f(raw.get("stopLoss")),
            take_profit=_opt_f(raw.get("takeProfit")),
            opened_at=_ms_to_str(raw.get("createdTime")),
        )

    @property
    def notional(self) -> float:
        return self.size * self.entry_price

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Instrument:
    symbol: str
    min_order_qty: float = 0.0
    max_order_qty: float = 0.0
    qty_step: float = 0.0
    min_leverage: Optional[int] = None
    max_leverage: Optional[int] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Instrument":
        lot = raw.get("lotSizeFilter") or {}
        lev = raw.get("leverageFilter") or {}
        return cls(
            symbol=raw.get("symbol", ""),
            min_order_qty=_f(lot.get("minOrderQty")),
            max_order_qty=_f(lot.get("maxOrderQty")),
            qty_step=_f(lot.get("qtyStep")),
            min_leverage=int(_f(lev["minLeverage"])) if lev.get("minLeverage") else None,
            max_leverage=int(_f(lev["maxLeverage"])) if lev.get("maxLeverage") else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Instrument":
        return cls(**data)


@dataclass
class OrderResult:
    """Outcome of an order-type call; failures are data, never exceptions."""

    ok: bool
    error: Optional[str] = None
    ret_code: Optional[int] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)
    min_position_usdt: Optional[float] = None

    @classmethod
    def failure(cls, error: str, ret_code: Optional[int] = None, **kw: Any) -> "OrderResult":
        return cls(ok=False, error=error, ret_code=ret_code, **kw)

    @classmethod
    def skip(cls, reason: str) -> "OrderResult":
        return cls(ok=True, skipped=True, skip_reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in (None, {}, False) or k == "ok"}
