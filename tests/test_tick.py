from __future__ import annotations

from dataclasses import dataclass
from unittest.mock import MagicMock

import pytest

from llm_autotrader.core.config import TradingSettings
from llm_autotrader.core.lock_manager import TickLock
from llm_autotrader.engine.tick import TickOrchestrator, consecutive_failures, find_position, tick_summary
from llm_autotrader.exchange import OrderResult
from llm_autotrader.llm.schema import (
    AverageInOnce,
    CloseFull,
    ClosePartial,
    DecisionChecks,
    DoNothing,
    MoveStopToBreakeven,
    Proposal,
)
from llm_autotrader.risk import PendingActionStore, RiskGuard
from llm_autotrader.storage import EventLog, PositionLockStore

from conftest import make_position


def decision(cls, symbol="BTCUSDT", **extra):
    action = {
        CloseFull: "CLOSE_FULL",
        ClosePartial: "CLOSE_PARTIAL",
        MoveStopToBreakeven: "MOVE_STOP_TO_BREAKEVEN",
        AverageInOnce: "AVERAGE_IN_ONCE",
        DoNothing: "DO_NOTHING",
    }[cls]
    return cls(
        symbol=symbol,
        action=action,
        confidence=80,
        reason="model reason",
        risk="medium",
        checks=DecisionChecks(pnl_positive=True, trend="up"),
        provider="chatgpt",
        prompt_version="manage-v2",
        **extra,
    )


@dataclass
class Rig:
    tick: TickOrchestrator
    exchange: MagicMock
    decider: MagicMock
    alerts: MagicMock
    events: EventLog
    pending: PendingActionStore
    locks: PositionLockStore
    tick_lock: TickLock

    def of_type(self, event_type):
        return [e for e in self.events.all_events() if e["type"] == event_type]


@pytest.fixture
def make_rig(settings, workspace, clock, mock_exchange, mock_alerts):
    def _make(**trading_kw) -> Rig:
        trading = TradingSettings(**trading_kw)
        s = settings.model_copy(update={"trading": trading})
        events = EventLog(workspace / "bot_history.json", now=clock)
        pending = PendingActionStore(workspace / "pending_actions.json", now=clock)
        locks = PositionLockStore(workspace / "position_locks.json")
        tick_lock = TickLock(workspace / "tick.pid")
        decider = MagicMock()
        decider.decisions.return_value = []
        decider.proposals.return_value = []
        tick = TickOrchestrator(
            s,
            mock_exchange,
            decider,
            events,
            pending,
            locks,
            RiskGuard(trading, now=clock),
            mock_alerts,
            tick_lock,
            now=clock,
        )
        return Rig(tick, mock_exchange, decider, mock_alerts, events, pending, locks, tick_lock)

    return _make


class TestGates:
    def test_kill_switch_blocks_before_any_exchange_call(self, make_rig):
        rig = make_rig(trading_enabled=False)
        result = rig.tick.run()

        assert result["ok"] is False
        assert result["reason"] == "kill_switch"
        rig.exchange.get_positions.assert_not_called()
        assert rig.of_type("bot_tick") == []

    def test_daily_loss_limit_blocks_and_alerts(self, make_rig):
        rig = make_rig(daily_loss_limit_usdt=100)
        rig.events.log("close_full", {"symbol": "ETHUSDT", "ok": True, "realized_pnl_estimate": -120.0})

        result = rig.tick.run()

        assert result["reason"] == "daily_loss_limit"
        assert "-120.00" in result["message"]
        rig.decider.decisions.assert_not_called()
        assert rig.alerts.alert_risk_limit.call_args.args[0] == "daily_loss_limit"

    def test_throttle_until_timeframe_elapses(self, make_rig, clock):
        rig = make_rig(bot_timeframe=5)
        assert rig.tick.run()["ok"] is True

        clock.advance(minutes=2)
        skipped = rig.tick.run()
        assert skipped["skipped"] is True
        assert skipped["open_positions_before"] == 1
        assert "120s of 300s" in skipped["message"]
        assert rig.decider.decisions.call_count == 1

        clock.advance(minutes=3)
        again = rig.tick.run()
        assert "skipped" not in again
        assert rig.decider.decisions.call_count == 2
        assert len(rig.of_type("bot_tick")) == 2

    def test_overlapping_tick_is_rejected(self, make_rig):
        rig = make_rig()
        assert rig.tick_lock.try_acquire()
        try:
            result = rig.tick.run()
        finally:
            rig.tick_lock.release()

        assert result["reason"] == "tick_in_progress"
        rig.exchange.get_positions.assert_not_called()

    def test_unexpected_error_becomes_result_and_releases_lock(self, make_rig):
        rig = make_rig()
        rig.exchange.get_positions.side_effect = RuntimeError("exchange exploded")

        result = rig.tick.run()
        assert result == {"ok": False, "error": "exchange exploded", "managed": [], "opened": []}

        rig.exchange.get_positions.side_effect = None
        assert rig.tick.run()["ok"] is True


class TestDecisionFlow:
    def test_positions_capped_and_enriched(self, make_rig):
        rig = make_rig(max_managed_positions=2, bot_timeframe=15, bot_history_candles=40)
        rig.exchange.get_positions.return_value = [
            make_position("BTCUSDT"),
            make_position("ETHUSDT"),
            make_position("SOLUSDT"),
        ]

        rig.tick.run()

        sent = rig.decider.decisions.call_args.args[0]
        assert [p.symbol for p in sent] == ["BTCUSDT", "ETHUSDT"]
        assert sent[0].price_history.startswith("[3 5m candles")
        assert sent[0].timeframe == 15
        rig.exchange.get_kline_history.assert_any_call("BTCUSDT", 15, 40, 30)
        assert rig.exchange.get_kline_history.call_count == 2

    def test_empty_decisions_log_llm_failure(self, make_rig):
        rig = make_rig()
        result = rig.tick.run()

        failure = rig.of_type("llm_failure")
        assert failure[0]["reason"] == "empty_decisions"
        assert failure[0]["positions_count"] == 1
        assert result["summary"] == "Bot checked positions, no action needed."

    def test_do_nothing_and_unknown_symbols_are_ignored(self, make_rig):
        rig = make_rig()
        rig.decider.decisions.return_value = [decision(DoNothing), decision(CloseFull, symbol="XRPUSDT")]

        result = rig.tick.run()

        assert result["managed"] == []
        rig.exchange.close_position_market.assert_not_called()

    def test_locked_position_is_skipped(self, make_rig):
        rig = make_rig()
        rig.locks.set_lock("BTCUSDT", "Buy", True)
        rig.decider.decisions.return_value = [decision(CloseFull)]

        managed = rig.tick.run()["managed"]

        assert managed[0]["skip_reason"] == "locked"
        assert managed[0]["ok"] is False
        rig.exchange.close_position_market.assert_not_called()

    def test_cooldown_blocks_repeat_action(self, make_rig, clock):
        rig = make_rig(action_cooldown_minutes=30)
        rig.events.log("close_partial", {"symbol": "BTCUSDT", "ok": True})
        clock.advance(minutes=10)
        rig.decider.decisions.return_value = [decision(CloseFull)]

        managed = rig.tick.run()["managed"]

        assert managed[0]["skip_reason"] == "cooldown"
        rig.exchange.close_position_market.assert_not_called()

    def test_strict_mode_queues_dangerous_action_once(self, make_rig, clock):
        rig = make_rig(bot_strict_mode=True)
        rig.decider.decisions.return_value = [decision(CloseFull)]

        managed = rig.tick.run()["managed"]

        assert managed[0]["pending"] is True
        assert managed[0]["skip_reason"] == "strict_mode_pending"
        items = rig.pending.all()
        assert len(items) == 1
        assert items[0]["id"] == managed[0]["pending_id"]
        assert items[0]["pnl_at_decision"] == 5.0
        assert items[0]["side"] == "Buy"
        rig.exchange.close_position_market.assert_not_called()

        clock.advance(minutes=5)
        again = rig.tick.run()["managed"]
        assert len(again) == 1
        assert again[0]["skipped"] is True
        assert again[0]["skip_reason"] == "already_pending"
        assert len(rig.pending.all()) == 1
        rig.exchange.close_position_market.assert_not_called()

    def test_strict_mode_lets_safe_actions_through(self, make_rig):
        rig = make_rig(bot_strict_mode=True)
        rig.decider.decisions.return_value = [decision(ClosePartial, close_fraction=0.5)]

        rig.tick.run()

        rig.exchange.close_position_market.assert_called_once()
        assert rig.pending.all() == []


class TestExecution:
    def test_close_full_records_realized_estimate(self, make_rig):
        rig = make_rig()
        rig.decider.decisions.return_value = [decision(CloseFull)]

        result = rig.tick.run()

        position = rig.exchange.get_positions.return_value[0]
        rig.exchange.close_position_market.assert_called_once_with("BTCUSDT", "Buy", 1.0, position)
        event = rig.of_type("close_full")[0]
        assert event["realized_pnl_estimate"] == 5.0
        assert event["pnl_at_decision"] == 5.0
        assert event["outcome"] == "win"
        assert event["reason"] == "model reason"
        assert event["provider"] == "chatgpt"
        assert result["summary"] == "Bot tick: processed 1 positions."

    def test_close_partial_scales_estimate(self, make_rig):
        rig = make_rig()
        rig.decider.decisions.return_value = [decision(ClosePartial, close_fraction=0.3)]

        rig.tick.run()

        assert rig.exchange.close_position_market.call_args.args[2] == pytest.approx(0.3)
        assert rig.of_type("close_partial")[0]["realized_pnl_estimate"] == pytest.approx(1.5)

    def test_partial_close_below_minimum_is_skip_event(self, make_rig):
        rig = make_rig()
        rig.exchange.close_position_market.return_value = OrderResult.skip(
            "position_too_small_for_partial_close"
        )
        rig.decider.decisions.return_value = [decision(ClosePartial, close_fraction=0.2)]

        managed = rig.tick.run()["managed"]

        event = rig.of_type("close_partial_skip")[0]
        assert event["skip_reason"] == "position_too_small_for_partial_close"
        assert event["skipped"] is True
        assert managed[0]["realized_pnl_estimate"] is None
        assert "outcome" not in event

    def test_breakeven_needs_profit(self, make_rig):
        rig = make_rig()
        rig.decider.decisions.return_value = [decision(MoveStopToBreakeven)]

        rig.tick.run()
        rig.exchange.set_breakeven_stop_loss.assert_called_once_with("BTCUSDT", "Buy", 50000.0)
        assert len(rig.of_type("move_sl_to_be")) == 1

    def test_breakeven_skipped_when_losing(self, make_rig):
        rig = make_rig()
        rig.exchange.get_positions.return_value = [make_position(pnl=-3.0)]
        rig.decider.decisions.return_value = [decision(MoveStopToBreakeven)]

        rig.tick.run()

        rig.exchange.set_breakeven_stop_loss.assert_not_called()
        event = rig.of_type("move_sl_to_be_skip")[0]
        assert event["skip_reason"] == "position_not_profitable_for_breakeven"

    def test_average_in_uses_position_leverage(self, make_rig):
        rig = make_rig()
        rig.decider.decisions.return_value = [decision(AverageInOnce, average_size_usdt=15)]

        rig.tick.run()

        rig.exchange.place_order.assert_called_once_with("BTCUSDT", "Buy", 15.0, 3)
        assert rig.of_type("average_in")[0]["ok"] is True

    def test_average_in_at_most_once_per_week(self, make_rig):
        rig = make_rig(action_cooldown_minutes=0)
        rig.events.log("average_in", {"symbol": "BTCUSDT", "ok": True})
        rig.decider.decisions.return_value = [decision(AverageInOnce)]

        managed = rig.tick.run()["managed"]

        rig.exchange.place_order.assert_not_called()
        assert managed[0]["skipped"] is True
        assert managed[0]["skip_reason"] == "already_averaged"

    def test_average_in_allowed_again_after_a_week(self, make_rig, clock):
        rig = make_rig(action_cooldown_minutes=0)
        rig.events.log("average_in", {"symbol": "BTCUSDT", "ok": True})
        rig.decider.decisions.return_value = [decision(AverageInOnce)]
        clock.advance(days=7, minutes=1)

        managed = rig.tick.run()["managed"]

        rig.exchange.place_order.assert_called_once()
        assert managed[0]["ok"] is True
        assert managed[0]["skipped"] is False

    def test_repeated_failures_alert(self, make_rig):
        rig = make_rig(action_cooldown_minutes=0)
        for _ in range(2):
            rig.events.log("close_full", {"symbol": "BTCUSDT", "ok": False, "error": "boom"})
        rig.exchange.close_position_market.return_value = OrderResult.failure("retCode=10001 retMsg=boom", 10001)
        rig.decider.decisions.return_value = [decision(CloseFull)]

        managed = rig.tick.run()["managed"]

        assert managed[0]["ok"] is False
        assert managed[0]["error"] == "retCode=10001 retMsg=boom"
        rig.alerts.alert_repeated_failures.assert_called_once_with("BTCUSDT", 3)
        assert rig.of_type("close_full")[-1]["outcome"] == "error"


class TestAutoOpen:
    @staticmethod
    def _proposal(symbol, signal, confidence):
        return Proposal(
            symbol=symbol,
            signal=signal,
            confidence=confidence,
            reason="idea",
            position_size_usdt=20.0,
            leverage=2,
        )

    def test_disabled_by_default(self, make_rig):
        rig = make_rig()
        rig.tick.run()
        rig.decider.proposals.assert_not_called()

    def test_fills_free_slots_with_confident_new_symbols(self, make_rig):
        rig = make_rig(auto_open_enabled=True, auto_open_min_positions=3)
        rig.decider.proposals.return_value = [
            self._proposal("ETHUSDT", "BUY", 90),
            self._proposal("BTCUSDT", "BUY", 95),
            self._proposal("SOLUSDT", "BUY", 75),
            self._proposal("XRPUSDT", "SELL", 88),
            self._proposal("ADAUSDT", "BUY", 85),
        ]

        result = rig.tick.run()

        calls = [c.args for c in rig.exchange.place_order.call_args_list]
        assert calls == [("ETHUSDT", "Buy", 20.0, 2), ("XRPUSDT", "Sell", 20.0, 2)]
        assert [o["symbol"] for o in result["opened"]] == ["ETHUSDT", "XRPUSDT"]
        assert len(rig.of_type("auto_open")) == 2
        assert result["summary"] == "Bot tick: opened 2 trades."

    def test_failed_open_does_not_use_a_slot(self, make_rig):
        rig = make_rig(auto_open_enabled=True, auto_open_min_positions=2)
        rig.exchange.place_order.side_effect = [OrderResult.failure("no margin"), OrderResult(ok=True)]
        rig.decider.proposals.return_value = [
            self._proposal("ETHUSDT", "BUY", 90),
            self._proposal("XRPUSDT", "SELL", 88),
        ]

        opened = rig.tick.run()["opened"]

        assert [(o["symbol"], o["ok"]) for o in opened] == [("ETHUSDT", False), ("XRPUSDT", True)]

    def test_no_slots_when_enough_positions(self, make_rig):
        rig = make_rig(auto_open_enabled=True, auto_open_min_positions=1)
        rig.tick.run()
        rig.decider.proposals.assert_not_called()

    def test_exposure_limit_blocks_new_positions(self, make_rig):
        rig = make_rig(auto_open_enabled=True, auto_open_min_positions=5, max_total_exposure_usdt=100)
        rig.tick.run()

        rig.decider.proposals.assert_not_called()
        assert rig.alerts.alert_risk_limit.call_args.args[0] == "max_exposure"


def test_bot_tick_event_counts(make_rig):
    rig = make_rig()
    rig.decider.decisions.return_value = [decision(CloseFull)]
    rig.tick.run()

    tick_event = rig.of_type("bot_tick")[0]
    assert tick_event["managed_count"] == 1
    assert tick_event["opened_count"] == 0
    assert tick_event["timeframe"] == 5


def test_consecutive_failures_reset_on_success():
    events = [
        {"symbol": "BTCUSDT", "ok": False},
        {"symbol": "BTCUSDT", "ok": True},
        {"symbol": "BTCUSDT", "ok": False},
        {"symbol": "ETHUSDT", "ok": False},
        {"type": "bot_tick"},
    ]
    assert consecutive_failures(events) == {"BTCUSDT": 1, "ETHUSDT": 1}


def test_find_position_prefers_long():
    short = make_position(side="Sell")
    long_ = make_position(side="Buy")
    assert find_position([short, long_], "BTCUSDT") is long_
    assert find_position([short], "BTCUSDT") is short
    assert find_position([short], "ETHUSDT") is None


def test_tick_summary_text():
    assert tick_summary(2, 1) == "Bot tick: processed 2 positions, opened 1 trades."
