"""
Lock-protected JSON file persistence.

Every shared store (event log, pending actions, caches, position locks) goes
through ``JsonFileStore.update`` so a read-modify-write cycle happens under a
single lock and lands on disk via temp file + atomic rename.
"""
from __future__ import annotations

import json
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, TypeVar

from llm_autotrader.core.logger import logger

T = TypeVar("T")

# One lock per resolved path, shared by every store instance in the process
_PATH_LOCKS: Dict[str, threading.RLock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        if key not in _PATH_LOCKS:
            _PATH_LOCKS[key] = threading.RLock()
        return _PATH_LOCKS[key]


class JsonFileStore:
    """Atomic JSON document persistence for crash recovery."""

    def __init__(self, path: Path, default: Callable[[], Any] = dict):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._default = default
        self._lock = _lock_for(self.path)

    def load(self) -> Any:
        with self._lock:
            return self._load_unlocked()

    def save(self, data: Any) -> None:
        with self._lock:
            self._save_unlocked(data)

    def update(self, fn: Callable[[Any], T]) -> T:
        """Run ``fn`` on the current document and persist the result.

        ``fn`` mutates the document in place and returns whatever the caller
        needs back; the document is saved after ``fn`` returns.
        """
        with self._lock:
            data = self._load_unlocked()
            result = fn(data)
            self._save_unlocked(data)
            return result

    def _load_unlocked(self) -> Any:
        backup_path = self.path.with_suffix(".bak")
        for try_path in [self.path, backup_path]:
            if not try_path.exists():
                continue
            try:
                with open(try_path, encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to load state from {try_path}: {e}")
                if try_path == self.path:
                    # Move corrupt file aside, fall back to backup
                    try:
                        self.path.rename(
                            self.path.with_suffix(f".corrupt.{int(time.time())}")
                        )
                    except OSError:
                        pass
        return self._default()

    def _save_unlocked(self, data: Any) -> None:
        """Atomic save via temp file + rename + backup."""
        temp = self.path.with_suffix(".tmp")
        backup = self.path.with_suffix(".bak")

        with open(temp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
            f.flush()
            os.fsync(f.fileno())

        if self.path.exists():
            try:
                shutil.copy2(self.path, backup)
            except OSError as e:
                logger.warning(f"Backup of {self.path} failed: {e}")

        os.replace(temp, self.path)

    def clear(self) -> None:
        with self._lock:
            for p in (self.path, self.path.with_suffix(".bak")):
                if p.exists():
                    p.unlink()
