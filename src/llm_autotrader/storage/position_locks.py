from __future__ import annotations

from pathlib import Path
from typing import Dict

from llm_autotrader.core.state_store import JsonFileStore


class PositionLockStore:
    """Positions the user has pinned; the bot never acts on a locked one."""

    def __init__(self, path: Path):
        self._store = JsonFileStore(path)

    @staticmethod
    def key(symbol: str, side: str) -> str:
        return f"{symbol.upper()}|{side.lower().capitalize()}"

    def is_locked(self, symbol: str, side: str) -> bool:
        return bool(self._store.load().get(self.key(symbol, side), False))

    def set_lock(self, symbol: str, side: str, locked: bool) -> None:
        k = self.key(symbol, side)

        def _apply(locks: Dict[str, bool]) -> None:
            if locked:
                locks[k] = True
            else:
                locks.pop(k, None)

        self._store.update(_apply)

    def locks(self) -> Dict[str, bool]:
        return dict(self._store.load())
