"""
Append-only record of everything the bot decides and does.

Events are plain dicts ``{id, type, timestamp, ...payload}``. Every append
drops events older than the retention window and then keeps only the newest
``max_count`` entries, so the file stays bounded without a separate job.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from llm_autotrader.constants import (
    EVENT_MAX_COUNT,
    EVENT_RETENTION_DAYS,
    HISTORY_SUMMARY_DAYS,
    HISTORY_SUMMARY_TOP,
)
from llm_autotrader.core.state_store import JsonFileStore

Event = Dict[str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _at_or_after(event: Event, since: datetime) -> bool:
    ts = parse_ts(event.get("timestamp"))
    return ts is not None and ts >= since


def derive_outcome(payload: Dict[str, Any]) -> Optional[str]:
    """win / loss from the realized estimate, error for a failed non-skipped action."""
    if "ok" in payload and not payload.get("ok") and not payload.get("skipped"):
        return "error"
    pnl = payload.get("realized_pnl_estimate")
    if isinstance(pnl, (int, float)):
        if pnl > 0:
            return "win"
        if pnl < 0:
            return "loss"
    return None


class EventLog:
    def __init__(
        self,
        path: Path,
        *,
        retention_days: int = EVENT_RETENTION_DAYS,
        max_count: int = EVENT_MAX_COUNT,
        now: Callable[[], datetime] = utcnow,
    ):
        self._store = JsonFileStore(path, default=list)
        self.retention_days = retention_days
        self.max_count = max_count
        self._now = now

    def log(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> Event:
        """Append an event and prune; returns the stored event."""
        event: Event = {
            "id": f"{event_type}_{uuid.uuid4().hex}",
            "type": event_type,
            "timestamp": self._now().isoformat(),
        }
        event.update(payload or {})
        if "outcome" not in event:
            outcome = derive_outcome(event)
            if outcome is not None:
                event["outcome"] = outcome

        def _append(events: List[Event]) -> None:
            events.append(event)
            since = self._now() - timedelta(days=self.retention_days)
            kept = [e for e in events if _at_or_after(e, since)]
            if len(kept) > self.max_count:
                kept = kept[-self.max_count :]
            events[:] = kept

        self._store.update(_append)
        return event

    def all_events(self) -> List[Event]:
        data = self._store.load()
        return data if isinstance(data, list) else []

    def recent_events(self, days: int = HISTORY_SUMMARY_DAYS) -> List[Event]:
        since = self._now() - timedelta(days=days)
        return [e for e in self.all_events() if _at_or_after(e, since)]

    def last_event_of_type(self, event_type: str) -> Optional[Event]:
        for e in reversed(self.all_events()):
            if e.get("type") == event_type:
                return e
        return None

    def weekly_summary_text(self) -> str:
        return summarize_events(self.recent_events(HISTORY_SUMMARY_DAYS))


def summarize_events(events: List[Event], top: int = HISTORY_SUMMARY_TOP) -> str:
    """Per-symbol totals and outcomes, busiest symbols first."""
    if not events:
        return (
            f"No prior bot decisions or trade outcomes are available "
            f"for the last {HISTORY_SUMMARY_DAYS} days."
        )

    per_symbol: Dict[str, Dict[str, int]] = defaultdict(
        lambda: {"total": 0, "wins": 0, "losses": 0, "errors": 0}
    )
    for e in events:
        stats = per_symbol[e.get("symbol") or "UNKNOWN"]
        stats["total"] += 1
        outcome = e.get("outcome")
        if outcome == "win":
            stats["wins"] += 1
        elif outcome == "loss":
            stats["losses"] += 1
        elif outcome == "error":
            stats["errors"] += 1

    ranked = sorted(per_symbol.items(), key=lambda kv: kv[1]["total"], reverse=True)[:top]
    lines = [f"Recent bot performance over the last {HISTORY_SUMMARY_DAYS} days:"]
    for sym, s in ranked:
        lines.append(
            f"{sym}: total={s['total']}, wins={s['wins']}, "
            f"losses={s['losses']}, errors={s['errors']}"
        )
    return "\n".join(lines)
