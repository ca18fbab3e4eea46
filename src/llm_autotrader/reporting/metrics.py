"""
Decision metrics over the event log.

Counts what the model proposed against what the bot executed, skipped or
failed, and keeps a per-position trace of the latest decision.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Optional

from llm_autotrader.storage.event_log import Event, EventLog

# Event types that come out of model-driven position management
MANAGE_TYPES = (
    "close_full",
    "close_partial",
    "close_partial_skip",
    "move_sl_to_be",
    "move_sl_to_be_skip",
    "average_in",
)
TRACE_TYPES = MANAGE_TYPES + ("llm_invalid_response", "pending_rejected", "auto_open")
TRACE_DAYS = 14


def _pnl(e: Event) -> Optional[float]:
    value = e.get("realized_pnl_estimate")
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _new_bucket() -> Dict[str, Any]:
    return {
        "proposed": 0,
        "executed": 0,
        "skipped": 0,
        "failed": 0,
        "wins": 0,
        "losses": 0,
        "total_pnl": 0.0,
    }


class MetricsAggregator:
    def __init__(self, events: EventLog):
        self.events = events

    def metrics(self, days: int = 30) -> Dict[str, Any]:
        tick_count = llm_failures = invalid_responses = 0
        proposed = executed = skipped = failed = 0
        by_action: Dict[str, Dict[str, Any]] = {}
        skip_reasons: Counter = Counter()

        for e in self.events.recent_events(days):
            etype = e.get("type", "")
            if etype == "bot_tick":
                tick_count += 1
                continue
            if etype == "llm_failure":
                llm_failures += 1
                continue
            if etype == "llm_invalid_response":
                invalid_responses += 1
                continue
            if etype not in MANAGE_TYPES:
                continue

            action = str(e.get("action") or etype.replace("_skip", "")).upper()
            stats = by_action.setdefault(action, _new_bucket())
            proposed += 1
            stats["proposed"] += 1

            if e.get("skipped"):
                skipped += 1
                stats["skipped"] += 1
                if e.get("skip_reason") is not None:
                    skip_reasons[e["skip_reason"]] += 1
            elif e.get("ok"):
                executed += 1
                stats["executed"] += 1
                pnl = _pnl(e)
                if pnl is not None:
                    stats["total_pnl"] += pnl
                    if pnl > 0:
                        stats["wins"] += 1
                    elif pnl < 0:
                        stats["losses"] += 1
            else:
                failed += 1
                stats["failed"] += 1

        for stats in by_action.values():
            with_pnl = stats["wins"] + stats["losses"]
            stats["win_rate"] = round(stats["wins"] / with_pnl * 100, 1) if with_pnl else None
            stats["total_pnl"] = round(stats["total_pnl"], 2)

        return {
            "period_days": days,
            "tick_count": tick_count,
            "llm_failures": llm_failures,
            "invalid_responses": invalid_responses,
            "proposed": proposed,
            "executed": executed,
            "skipped": skipped,
            "failed": failed,
            "execution_rate_pct": round(executed / proposed * 100, 1) if proposed else None,
            "by_action": by_action,
            "skip_reasons": dict(skip_reasons.most_common()),
        }

    def recent_decisions(self, limit: int = 100) -> List[Event]:
        """Decision-trace events from the last two weeks, newest first."""
        decisions = [e for e in self.events.recent_events(TRACE_DAYS) if e.get("type") in TRACE_TYPES]
        decisions.sort(key=lambda e: e.get("timestamp") or "", reverse=True)
        return decisions[:limit]

    def last_decision_per_position(self) -> Dict[str, Dict[str, Any]]:
        by_position: Dict[str, Dict[str, Any]] = {}
        for d in self.recent_decisions(200):
            key = f"{d.get('symbol') or ''}|{d.get('side') or ''}"
            if key == "|" or key in by_position:
                continue
            by_position[key] = {
                "timestamp": d.get("timestamp"),
                "action": d.get("action") or d.get("type", ""),
                "confidence": d.get("confidence"),
                "reason": d.get("reason") or d.get("note") or "",
                "risk": d.get("risk"),
                "checks": d.get("checks"),
                "ok": d.get("ok"),
                "skip_reason": d.get("skip_reason"),
                "prompt_version": d.get("prompt_version"),
            }
        return by_position
