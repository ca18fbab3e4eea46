import os
import threading
from pathlib import Path
from typing import Any, Dict

import psutil

from llm_autotrader.core.logger import logger


class LockManager:
    """PID file lock so only one process runs a tick at a time."""

    def __init__(self, lock_file: Path) -> None:
        self.lock_file = Path(lock_file)

    def _is_our_process(self, proc: psutil.Process) -> bool:
        """
        Best-effort check to avoid blocking on unrelated processes if a PID
        gets reused or a stale lock points at a different command.
        """
        try:
            cmdline = proc.cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

        return any(
            "llm_autotrader" in str(arg) or "llm-autotrader" in str(arg)
            for arg in cmdline
        )

    def _read_pid(self) -> int:
        with open(self.lock_file, "r") as f:
            content = f.read().strip()
        return int(content) if content else 0

    def acquire(self) -> bool:
        """Acquire the lock. Returns True if successful, False if already locked."""
        if self.lock_file.exists():
            try:
                old_pid = self._read_pid()
                if old_pid and old_pid != os.getpid() and psutil.pid_exists(old_pid):
                    try:
                        if self._is_our_process(psutil.Process(old_pid)):
                            return False
                    except (psutil.NoSuchProcess, psutil.AccessDenied):
                        pass
            except (OSError, ValueError) as e:
                logger.warning(f"Error reading lockfile: {e}. Overwriting.")

        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_file, "w") as f:
            f.write(str(os.getpid()))
        return True

    def release(self) -> None:
        if self.lock_file.exists():
            try:
                os.remove(self.lock_file)
            except OSError as e:
                logger.error(f"Failed to release lock: {e}")

    def get_status(self) -> Dict[str, Any]:
        """Get status of the process associated with the lock."""
        if not self.lock_file.exists():
            return {"running": False}

        try:
            pid = self._read_pid()
            if pid and psutil.pid_exists(pid):
                proc = psutil.Process(pid)
                if not self._is_our_process(proc):
                    return {"running": False}
                return {
                    "running": True,
                    "pid": pid,
                    "created": proc.create_time(),
                    "status": proc.status(),
                }
        except (OSError, ValueError, psutil.Error) as e:
            logger.debug(f"Error getting lock status: {e}")

        return {"running": False}


class TickLock:
    """Single-flight guard for ticks: in-process lock plus cross-process PID file."""

    def __init__(self, lock_file: Path) -> None:
        self._local = threading.Lock()
        self._process = LockManager(lock_file)

    def try_acquire(self) -> bool:
        if not self._local.acquire(blocking=False):
            return False
        if not self._process.acquire():
            self._local.release()
            return False
        return True

    def release(self) -> None:
        self._process.release()
        self._local.release()

    @property
    def status(self) -> Dict[str, Any]:
        return self._process.get_status()
