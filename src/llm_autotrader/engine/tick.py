"""
One bot tick: manage open positions, then optionally open new ones.

The tick is a fixed sequence of named stages sharing a ``TickState``. A stage
returns None to continue or a result dict to end the tick early. ``run`` never
raises; anything unexpected becomes ``{"ok": False, "error": ...}``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from llm_autotrader.constants import AUTO_OPEN_MIN_CONFIDENCE, HISTORY_SUMMARY_DAYS
from llm_autotrader.core.config import Settings
from llm_autotrader.core.lock_manager import TickLock
from llm_autotrader.core.logger import logger
from llm_autotrader.exchange import BybitClient, OrderResult, Position
from llm_autotrader.llm import DecisionProvider, averaged_symbols, price_points_for
from llm_autotrader.risk import PendingActionStore, RiskGuard
from llm_autotrader.storage import EventLog, PositionLockStore
from llm_autotrader.storage.event_log import Event, parse_ts, utcnow

Result = Dict[str, Any]


@dataclass
class TickState:
    positions: List[Position] = field(default_factory=list)
    managed_positions: List[Position] = field(default_factory=list)
    decisions: List[Any] = field(default_factory=list)
    recent_events: List[Event] = field(default_factory=list)
    managed: List[Result] = field(default_factory=list)
    opened: List[Result] = field(default_factory=list)

    @property
    def open_count(self) -> int:
        return len(self.positions)


def consecutive_failures(events: List[Event]) -> Dict[str, int]:
    """Per-symbol count of trailing not-ok events, oldest to newest."""
    counts: Dict[str, int] = {}
    for e in events:
        symbol = e.get("symbol") or ""
        if not symbol:
            continue
        counts[symbol] = counts.get(symbol, 0) + 1 if not e.get("ok", True) else 0
    return counts


def find_position(positions: List[Position], symbol: str) -> Optional[Position]:
    for side in ("Buy", "Sell"):
        for p in positions:
            if p.symbol == symbol and p.side == side:
                return p
    return None


def tick_summary(managed_count: int, opened_count: int) -> str:
    if managed_count == 0 and opened_count == 0:
        return "Bot checked positions, no action needed."
    parts = []
    if managed_count:
        parts.append(f"processed {managed_count} positions")
    if opened_count:
        parts.append(f"opened {opened_count} trades")
    return "Bot tick: " + ", ".join(parts) + "."


class TickOrchestrator:
    def __init__(
        self,
        settings: Settings,
        exchange: BybitClient,
        decider: DecisionProvider,
        events: EventLog,
        pending: PendingActionStore,
        locks: PositionLockStore,
        guard: RiskGuard,
        alerts,
        tick_lock: TickLock,
        *,
        now: Callable[[], datetime] = utcnow,
    ):
        self.trading = settings.trading
        self.exchange = exchange
        self.decider = decider
        self.events = events
        self.pending = pending
        self.locks = locks
        self.guard = guard
        self.alerts = alerts
        self.tick_lock = tick_lock
        self._now = now

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> Result:
        if not self.tick_lock.try_acquire():
            logger.warning("Tick already in progress, skipping")
            return {
                "ok": False,
                "blocked": True,
                "reason": "tick_in_progress",
                "managed": [],
                "opened": [],
            }
        try:
            return self._run_stages()
        except Exception as e:
            # The trigger always gets a result
            logger.exception(f"Tick failed: {e}")
            return {"ok": False, "error": str(e), "managed": [], "opened": []}
        finally:
            self.tick_lock.release()

    def _run_stages(self) -> Result:
        self.exchange.begin_tick()
        state = TickState()
        stages = (
            self._check_kill_switch,
            self._load_positions,
            self._check_daily_loss,
            self._check_throttle,
            self._enrich_positions,
            self._fetch_decisions,
            self._manage_positions,
            self._auto_open,
        )
        for stage in stages:
            result = stage(state)
            if result is not None:
                return result
        return self._finish(state)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _check_kill_switch(self, state: TickState) -> Optional[Result]:
        if self.guard.is_trading_enabled():
            return None
        logger.warning("Tick blocked: trading disabled (kill switch)")
        return {
            "ok": False,
            "blocked": True,
            "reason": "kill_switch",
            "message": "Trading disabled (kill switch).",
            "managed": [],
            "opened": [],
        }

    def _load_positions(self, state: TickState) -> Optional[Result]:
        state.positions = self.exchange.get_positions()
        state.managed_positions = state.positions[: self.trading.max_managed_positions]
        state.recent_events = self.events.recent_events(HISTORY_SUMMARY_DAYS)
        return None

    def _check_daily_loss(self, state: TickState) -> Optional[Result]:
        check = self.guard.check_daily_loss(state.recent_events)
        if check.ok:
            return None
        logger.warning(f"Tick blocked: {check.message}")
        self.alerts.alert_risk_limit("daily_loss_limit", {"message": check.message})
        return {
            "ok": False,
            "blocked": True,
            "reason": "daily_loss_limit",
            "message": check.message,
            "managed": [],
            "opened": [],
        }

    def _check_throttle(self, state: TickState) -> Optional[Result]:
        timeframe = self.trading.bot_timeframe
        min_interval = timeframe * 60
        last_tick = self.events.last_event_of_type("bot_tick")
        last_ts = parse_ts(last_tick.get("timestamp")) if last_tick else None
        if last_ts is None:
            return None
        elapsed = int((self._now() - last_ts).total_seconds())
        if elapsed >= min_interval:
            return None
        return {
            "ok": True,
            "skipped": True,
            "message": (
                f"Waiting for the {timeframe}min timeframe. "
                f"{elapsed}s of {min_interval}s elapsed."
            ),
            "managed": [],
            "opened": [],
            "open_positions_before": state.open_count,
        }

    def _enrich_positions(self, state: TickState) -> Optional[Result]:
        timeframe = self.trading.bot_timeframe
        candles = max(1, min(60, self.trading.bot_history_candles))
        points = price_points_for(len(state.managed_positions))
        for p in state.managed_positions:
            p.price_history = self.exchange.get_kline_history(p.symbol, timeframe, candles, points)
            p.timeframe = timeframe
        return None

    def _fetch_decisions(self, state: TickState) -> Optional[Result]:
        state.decisions = self.decider.decisions(state.managed_positions)
        if not state.decisions and state.managed_positions:
            self.events.log(
                "llm_failure",
                {"reason": "empty_decisions", "positions_count": len(state.managed_positions)},
            )
        return None

    def _manage_positions(self, state: TickState) -> Optional[Result]:
        averaged = averaged_symbols(state.recent_events)
        failures = consecutive_failures(state.recent_events)
        strict = self.guard.is_strict_mode()

        for d in state.decisions:
            if not d.symbol or d.action == "DO_NOTHING":
                continue
            position = find_position(state.managed_positions, d.symbol)
            if position is None:
                continue

            base = {
                **d.trace,
                "symbol": d.symbol,
                "side": position.side,
                "action": d.action,
            }

            if self.locks.is_locked(d.symbol, position.side):
                state.managed.append({**base, "ok": False, "skipped": True, "skip_reason": "locked"})
                continue
            if not self.guard.is_action_allowed(d.symbol, state.recent_events):
                state.managed.append({**base, "ok": False, "skipped": True, "skip_reason": "cooldown"})
                continue
            if strict and self.guard.is_dangerous_action(d.action):
                if not self.pending.has_pending(d.symbol, d.action):
                    pending_id = self.pending.add(
                        {
                            "symbol": d.symbol,
                            "side": position.side,
                            "action": d.action,
                            "reason": d.reason,
                            "close_fraction": getattr(d, "close_fraction", 0.5),
                            "average_size_usdt": getattr(d, "average_size_usdt", 10.0),
                            "pnl_at_decision": position.unrealized_pnl,
                        }
                    )
                    logger.info(f"Strict mode: {d.action} {d.symbol} queued as {pending_id}")
                    state.managed.append(
                        {
                            **base,
                            "ok": True,
                            "pending": True,
                            "pending_id": pending_id,
                            "skip_reason": "strict_mode_pending",
                        }
                    )
                else:
                    state.managed.append({**base, "ok": True, "skipped": True, "skip_reason": "already_pending"})
                continue

            state.managed.append(self._execute(d, position, base, averaged, failures))
        return None

    def _execute(
        self,
        d: Any,
        position: Position,
        base: Result,
        averaged: set,
        failures: Dict[str, int],
    ) -> Result:
        pnl = position.unrealized_pnl
        result: Optional[OrderResult] = None
        event_type: Optional[str] = None
        realized: Optional[float] = None
        skip_reason: Optional[str] = None

        if d.action in ("CLOSE_FULL", "CLOSE_PARTIAL"):
            fraction = 1.0 if d.action == "CLOSE_FULL" else float(d.close_fraction)
            result = self.exchange.close_position_market(d.symbol, position.side, fraction, position)
            if result.skipped:
                event_type = "close_partial_skip"
                skip_reason = result.skip_reason or "position_too_small"
            else:
                event_type = "close_full" if d.action == "CLOSE_FULL" else "close_partial"
                realized = pnl if d.action == "CLOSE_FULL" else pnl * max(0.0, min(1.0, fraction))
        elif d.action == "MOVE_STOP_TO_BREAKEVEN":
            if pnl > 0 and position.entry_price > 0 and position.mark_price > 0:
                result = self.exchange.set_breakeven_stop_loss(d.symbol, position.side, position.entry_price)
                event_type = "move_sl_to_be"
            else:
                result = OrderResult.skip("position_not_profitable_for_breakeven")
                event_type = "move_sl_to_be_skip"
                skip_reason = result.skip_reason
        elif d.action == "AVERAGE_IN_ONCE":
            if d.symbol not in averaged:
                size = max(1.0, float(d.average_size_usdt))
                leverage = max(1, int(position.leverage or 1))
                result = self.exchange.place_order(d.symbol, position.side, size, leverage)
                event_type = "average_in"
                if result.ok:
                    averaged.add(d.symbol)
            else:
                result = OrderResult.skip("already_averaged")
                skip_reason = result.skip_reason

        payload = {
            **base,
            "ok": result.ok if result else False,
            "error": result.error if result else None,
            "skipped": bool(result and result.skipped),
            "skip_reason": skip_reason,
            "pnl_at_decision": pnl,
            "realized_pnl_estimate": realized,
        }

        if event_type is not None:
            self.events.log(event_type, payload)
            if result is not None and not result.ok and not result.skipped:
                count = failures.get(d.symbol, 0) + 1
                failures[d.symbol] = count
                logger.warning(f"{d.action} failed for {d.symbol} ({count} in a row): {result.error}")
                self.alerts.alert_repeated_failures(d.symbol, count)
        return payload

    def _auto_open(self, state: TickState) -> Optional[Result]:
        if not self.trading.auto_open_enabled:
            return None

        exposure = self.guard.check_max_exposure(state.positions)
        if not exposure.ok:
            self.alerts.alert_risk_limit("max_exposure", {"message": exposure.message})
            return None

        open_count = state.open_count
        min_positions = max(0, self.trading.auto_open_min_positions)
        max_managed = max(1, self.trading.max_managed_positions)
        slots = max(0, min(max(0, min_positions - open_count), max(0, max_managed - open_count)))
        if slots <= 0:
            return None

        open_symbols = {p.symbol for p in state.positions}
        for proposal in self.decider.proposals():
            if slots <= 0:
                break
            if proposal.confidence < AUTO_OPEN_MIN_CONFIDENCE or proposal.symbol in open_symbols:
                continue

            side = "Buy" if proposal.signal == "BUY" else "Sell"
            result = self.exchange.place_order(
                proposal.symbol, side, proposal.position_size_usdt, proposal.leverage
            )
            event = {
                "symbol": proposal.symbol,
                "side": side,
                "position_size_usdt": proposal.position_size_usdt,
                "leverage": proposal.leverage,
                "confidence": proposal.confidence,
                "reason": proposal.reason,
                "ok": result.ok,
                "error": result.error,
            }
            self.events.log("auto_open", event)
            state.opened.append(event)
            if result.ok:
                slots -= 1
                open_symbols.add(proposal.symbol)
        return None

    def _finish(self, state: TickState) -> Result:
        managed_count = len(state.managed)
        opened_count = len(state.opened)
        summary = tick_summary(managed_count, opened_count)
        self.events.log(
            "bot_tick",
            {
                "managed_count": managed_count,
                "opened_count": opened_count,
                "timeframe": self.trading.bot_timeframe,
            },
        )
        logger.info(summary)
        return {
            "ok": True,
            "message": "Bot tick executed",
            "summary": summary,
            "managed": state.managed,
            "opened": state.opened,
            "open_positions_before": state.open_count,
        }
