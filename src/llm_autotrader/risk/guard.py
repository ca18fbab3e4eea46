"""
Trading-safety checks that do not depend on the model.

Every check is a pure function of the settings plus events and positions the
caller has already loaded, so one tick reads the event log once and reuses it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from llm_autotrader.core.config import TradingSettings
from llm_autotrader.exchange.models import Position
from llm_autotrader.storage.event_log import Event, parse_ts, utcnow

# Event types whose realized_pnl_estimate counts toward the daily loss
DAILY_PNL_TYPES = frozenset({"close_full", "close_partial", "auto_open", "manual_close_full"})

# Event types that start a per-symbol cooldown
COOLDOWN_TYPES = frozenset(
    {"close_full", "close_partial", "average_in", "auto_open", "manual_close_full"}
)

# Actions that need a human confirmation in strict mode
DANGEROUS_ACTIONS = frozenset({"CLOSE_FULL", "AVERAGE_IN_ONCE"})


@dataclass
class RiskCheck:
    ok: bool
    reason: Optional[str] = None
    value: Optional[float] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RiskGuard:
    def __init__(
        self,
        trading: TradingSettings,
        *,
        now: Callable[[], datetime] = utcnow,
    ):
        self.trading = trading
        self._now = now

    def is_trading_enabled(self) -> bool:
        return bool(self.trading.trading_enabled)

    def is_strict_mode(self) -> bool:
        return bool(self.trading.bot_strict_mode)

    @staticmethod
    def is_dangerous_action(action: str) -> bool:
        return action in DANGEROUS_ACTIONS

    def daily_realized_pnl(self, events: Iterable[Event]) -> float:
        today = self._now().date()
        total = 0.0
        for e in events:
            if e.get("type") not in DAILY_PNL_TYPES:
                continue
            ts = parse_ts(e.get("timestamp"))
            if ts is None or ts.astimezone(self._now().tzinfo).date() != today:
                continue
            try:
                total += float(e.get("realized_pnl_estimate") or 0.0)
            except (TypeError, ValueError):
                continue
        return total

    def check_daily_loss(self, events: Iterable[Event]) -> RiskCheck:
        limit = float(self.trading.daily_loss_limit_usdt or 0.0)
        if limit <= 0:
            return RiskCheck(ok=True)

        daily_pnl = self.daily_realized_pnl(events)
        if daily_pnl < -limit:
            return RiskCheck(
                ok=False,
                reason="daily_loss_limit",
                value=daily_pnl,
                message=(
                    f"Daily loss limit exceeded: {daily_pnl:.2f} USDT "
                    f"(limit: -{limit:.2f} USDT). Bot paused."
                ),
            )
        return RiskCheck(ok=True, value=daily_pnl)

    @staticmethod
    def total_exposure(positions: Iterable[Position]) -> float:
        """Margin in use: notional / leverage, summed."""
        return sum(p.size * p.entry_price / max(1.0, float(p.leverage or 1)) for p in positions)

    def check_max_exposure(self, positions: Iterable[Position]) -> RiskCheck:
        limit = float(self.trading.max_total_exposure_usdt or 0.0)
        if limit <= 0:
            return RiskCheck(ok=True)

        exposure = self.total_exposure(positions)
        if exposure >= limit:
            return RiskCheck(
                ok=False,
                reason="max_exposure",
                value=exposure,
                message=(
                    f"Total exposure {exposure:.2f} USDT exceeds limit {limit:.2f} USDT. "
                    f"New positions blocked."
                ),
            )
        return RiskCheck(ok=True, value=exposure)

    def is_action_allowed(self, symbol: str, recent_events: Iterable[Event]) -> bool:
        """False while ``symbol`` is inside its cooldown window."""
        cooldown = int(self.trading.action_cooldown_minutes or 0)
        if cooldown <= 0:
            return True

        now = self._now()
        for e in recent_events:
            if e.get("symbol") != symbol or e.get("type") not in COOLDOWN_TYPES:
                continue
            ts = parse_ts(e.get("timestamp"))
            if ts is not None and (now - ts).total_seconds() < cooldown * 60:
                return False
        return True

    def risk_status(self, positions: List[Position], events: Iterable[Event]) -> Dict[str, Any]:
        """Snapshot for display; computed on demand, never stored."""
        enabled = self.is_trading_enabled()
        daily = self.check_daily_loss(events)
        exposure = self.check_max_exposure(positions)

        alerts = []
        if not enabled:
            alerts.append("Trading disabled (kill switch active).")
        if not daily.ok:
            alerts.append(daily.message)
        if not exposure.ok:
            alerts.append(exposure.message)

        return {
            "trading_enabled": enabled,
            "can_trade": enabled and daily.ok,
            "can_open_new": enabled and daily.ok and exposure.ok,
            "daily_loss_check": daily.to_dict(),
            "exposure_check": exposure.to_dict(),
            "strict_mode": self.is_strict_mode(),
            "daily_loss_limit_usdt": float(self.trading.daily_loss_limit_usdt),
            "max_total_exposure_usdt": float(self.trading.max_total_exposure_usdt),
            "action_cooldown_minutes": int(self.trading.action_cooldown_minutes),
            "alerts": alerts,
        }
