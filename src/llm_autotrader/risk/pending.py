"""Two-phase confirmation queue for dangerous actions in strict mode."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from llm_autotrader.constants import PENDING_TTL_MINUTES
from llm_autotrader.core.logger import logger
from llm_autotrader.core.state_store import JsonFileStore
from llm_autotrader.storage.event_log import parse_ts, utcnow

PendingAction = Dict[str, Any]


class PendingActionStore:
    """
    Entries live until resolved or until ``ttl_minutes`` pass, whichever is
    first. Expired entries are swept on every read, so an id that has timed out
    resolves to None exactly like an unknown one.
    """

    def __init__(
        self,
        path: Path,
        *,
        ttl_minutes: int = PENDING_TTL_MINUTES,
        now: Callable[[], datetime] = utcnow,
    ):
        self._store = JsonFileStore(path, default=list)
        self.ttl = timedelta(minutes=ttl_minutes)
        self._now = now

    def _sweep(self, items: List[PendingAction]) -> None:
        now = self._now()
        fresh = []
        for item in items:
            created = parse_ts(item.get("created_at"))
            if created is not None and now - created < self.ttl:
                fresh.append(item)
        if len(fresh) != len(items):
            logger.info(f"Expired {len(items) - len(fresh)} pending action(s)")
        items[:] = fresh

    def all(self) -> List[PendingAction]:
        def _read(items: List[PendingAction]) -> List[PendingAction]:
            self._sweep(items)
            return list(items)

        return self._store.update(_read)

    def add(self, action: Dict[str, Any]) -> str:
        pending_id = f"pa_{uuid.uuid4().hex}"
        entry = {
            **action,
            "id": pending_id,
            "created_at": self._now().isoformat(),
            "status": "pending",
        }

        def _append(items: List[PendingAction]) -> None:
            self._sweep(items)
            items.append(entry)

        self._store.update(_append)
        return pending_id

    def resolve(self, pending_id: str, confirm: bool) -> Optional[PendingAction]:
        """Remove the entry and hand back its snapshot; the caller executes on confirm."""

        def _take(items: List[PendingAction]) -> Optional[PendingAction]:
            self._sweep(items)
            for i, item in enumerate(items):
                if item.get("id") == pending_id:
                    found = items.pop(i)
                    found["status"] = "confirmed" if confirm else "rejected"
                    return found
            return None

        return self._store.update(_take)

    def has_pending(self, symbol: str, action: str) -> bool:
        return any(
            item.get("symbol") == symbol and item.get("action") == action
            for item in self.all()
        )
