"""Instrument and clock-offset caches shared between ticks."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Optional

from cachetools import TTLCache

from llm_autotrader.constants import CLOCK_OFFSET_TTL_SECONDS, INSTRUMENT_TTL_SECONDS
from llm_autotrader.core.logger import logger
from llm_autotrader.core.state_store import JsonFileStore

from .models import Instrument


class InstrumentCache:
    """Two tiers: an in-process TTLCache in front of a JSON file.

    Both tiers expire entries after ``ttl`` seconds. ``invalidate`` drops the
    symbol from both tiers.
    """

    def __init__(
        self,
        path: Path,
        ttl: float = INSTRUMENT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self._clock = clock
        self._memory: TTLCache = TTLCache(maxsize=1024, ttl=ttl, timer=clock)
        self._disk = JsonFileStore(path)

    def get(self, symbol: str) -> Optional[Instrument]:
        cached = self._memory.get(symbol)
        if cached is not None:
            return cached

        entry = self._disk.load().get(symbol)
        if not entry:
            return None
        if self._clock() - float(entry.get("cached_at", 0)) >= self.ttl:
            return None
        try:
            instrument = Instrument.from_dict(entry["instrument"])
        except (KeyError, TypeError) as e:
            logger.warning(f"Discarding malformed instrument cache entry for {symbol}: {e}")
            return None
        self._memory[symbol] = instrument
        return instrument

    def put(self, instrument: Instrument) -> None:
        self._memory[instrument.symbol] = instrument
        now = self._clock()

        def _write(data):
            # Expired entries are pruned on every write
            for sym in [s for s, e in data.items() if now - float(e.get("cached_at", 0)) >= self.ttl]:
                data.pop(sym, None)
            data[instrument.symbol] = {"cached_at": now, "instrument": instrument.to_dict()}

        self._disk.update(_write)

    def invalidate(self, symbol: str) -> None:
        self._memory.pop(symbol, None)
        self._disk.update(lambda data: data.pop(symbol, None))

    def clear_memory(self) -> None:
        """Drop the in-process tier; called at the start of every tick."""
        self._memory.clear()


class ClockOffsetCache:
    """Server-minus-local clock offset in ms, persisted with a short TTL."""

    def __init__(
        self,
        path: Path,
        ttl: float = CLOCK_OFFSET_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self._clock = clock
        self._store = JsonFileStore(path)

    def get(self) -> Optional[int]:
        data = self._store.load()
        if "offset_ms" not in data:
            return None
        if self._clock() - float(data.get("fetched_at", 0)) >= self.ttl:
            return None
        return int(data["offset_ms"])

    def set(self, offset_ms: int) -> None:
        self._store.save({"offset_ms": int(offset_ms), "fetched_at": self._clock()})

    def invalidate(self) -> None:
        self._store.save({})
