"""Operator-initiated trading actions. Every outcome is a plain result dict."""

from __future__ import annotations

from typing import Any, Dict

from llm_autotrader.constants import DEFAULT_AVERAGE_SIZE_USDT
from llm_autotrader.core.logger import logger
from llm_autotrader.exchange import BybitClient
from llm_autotrader.risk import PendingActionStore, RiskGuard
from llm_autotrader.storage import EventLog, PositionLockStore

KILL_SWITCH_ERROR = "Trading disabled (kill switch)."
PENDING_NOT_FOUND = "Pending action not found (expired or resolved)"

Result = Dict[str, Any]


def normalize_side(side: str) -> str:
    """'buy', 'BUY', 'long' -> 'Buy'; 'sell', 'short' -> 'Sell'; else ''."""
    s = (side or "").strip().lower()
    if s in ("buy", "long"):
        return "Buy"
    if s in ("sell", "short"):
        return "Sell"
    return ""


class ManualActions:
    def __init__(
        self,
        exchange: BybitClient,
        events: EventLog,
        pending: PendingActionStore,
        locks: PositionLockStore,
        guard: RiskGuard,
    ):
        self.exchange = exchange
        self.events = events
        self.pending = pending
        self.locks = locks
        self.guard = guard

    def open_position(self, symbol: str, side: str, position_size_usdt: float = 10.0, leverage: int = 1) -> Result:
        if not self.guard.is_trading_enabled():
            return {"ok": False, "error": KILL_SWITCH_ERROR}

        side = normalize_side(side)
        if not symbol or not side:
            return {"ok": False, "error": "Invalid symbol or side"}

        exposure = self.guard.check_max_exposure(self.exchange.get_positions())
        if not exposure.ok:
            return {"ok": False, "error": exposure.message}

        result = self.exchange.place_order(symbol, side, float(position_size_usdt), int(leverage))
        self.events.log(
            "manual_open",
            {
                "symbol": symbol,
                "side": side,
                "position_size_usdt": float(position_size_usdt),
                "leverage": int(leverage),
                "ok": result.ok,
                "error": result.error,
            },
        )
        return result.to_dict()

    def close_position(self, symbol: str, side: str) -> Result:
        if not self.guard.is_trading_enabled():
            return {"ok": False, "error": KILL_SWITCH_ERROR}

        side = normalize_side(side)
        if not symbol or not side:
            return {"ok": False, "error": "Invalid symbol or side"}

        result = self.exchange.close_position_market(symbol, side, 1.0)
        self.events.log(
            "manual_close_full",
            {
                "symbol": symbol,
                "side": side,
                "action": "MANUAL_CLOSE_FULL",
                "ok": result.ok,
                "error": result.error,
            },
        )
        return result.to_dict()

    def set_position_lock(self, symbol: str, side: str, locked: bool) -> Result:
        side = normalize_side(side)
        if not symbol or not side:
            return {"ok": False, "error": "Invalid symbol or side"}

        self.locks.set_lock(symbol, side, locked)
        self.events.log("position_lock", {"symbol": symbol, "side": side, "locked": locked})
        return {"ok": True, "symbol": symbol, "side": side, "locked": locked}

    def confirm_pending(self, pending_id: str, confirm: bool) -> Result:
        """Resolve a strict-mode pending action; execute it if confirmed."""
        if not pending_id:
            return {"ok": False, "error": "Missing pending action id"}

        if confirm and not self.guard.is_trading_enabled():
            return {"ok": False, "error": KILL_SWITCH_ERROR}

        action = self.pending.resolve(pending_id, confirm)
        if action is None:
            return {"ok": False, "error": PENDING_NOT_FOUND}

        if not confirm:
            self.events.log(
                "pending_rejected",
                {"id": pending_id, "symbol": action.get("symbol", ""), "action": action.get("action", "")},
            )
            return {"ok": True, "result": "rejected"}

        symbol = action.get("symbol", "")
        side = action.get("side", "")
        kind = action.get("action", "")
        ok, error = False, "Unknown action"
        event_type = "confirmed_action"
        realized = None

        if kind == "CLOSE_FULL":
            result = self.exchange.close_position_market(symbol, side, 1.0)
            ok, error = result.ok, result.error
            event_type = "close_full"
            realized = action.get("pnl_at_decision")
        elif kind == "AVERAGE_IN_ONCE":
            size = max(1.0, float(action.get("average_size_usdt") or DEFAULT_AVERAGE_SIZE_USDT))
            leverage = 1
            for p in self.exchange.get_positions():
                if p.symbol == symbol and p.side == side:
                    leverage = max(1, int(p.leverage or 1))
                    break
            result = self.exchange.place_order(symbol, side, size, leverage)
            ok, error = result.ok, result.error
            event_type = "average_in"
        else:
            logger.warning(f"Confirmed pending action {pending_id} has unknown type {kind!r}")

        payload = {
            "symbol": symbol,
            "side": side,
            "action": kind,
            "note": "Confirmed by user",
            "ok": ok,
            "error": error,
            "pnl_at_decision": action.get("pnl_at_decision"),
            "realized_pnl_estimate": realized,
        }
        self.events.log(event_type, payload)
        return {"ok": True, "result": "executed", "details": payload}
