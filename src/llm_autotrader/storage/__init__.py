from .event_log import EventLog, summarize_events
from .position_locks import PositionLockStore

__all__ = ["EventLog", "PositionLockStore", "summarize_events"]
