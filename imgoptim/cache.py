"""In-process memo of optimization records.

Entries are keyed by (absolute source path, options fingerprint) so a cache
shared between optimizers with different settings never serves a record
produced under another configuration. Lookups for a key that is still being
computed wait for that computation instead of starting a second one.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable

from .models import OptimizationRecord

logger = logging.getLogger(__name__)

DISABLE_CACHE_ENV_VAR = "IMGOPTIM_DISABLE_CACHE"

CacheKey = tuple[str, str]


def is_cache_disabled() -> bool:
    return os.environ.get(DISABLE_CACHE_ENV_VAR, "").lower() in ("1", "true", "yes", "on")


class ResultCache:
    def __init__(self) -> None:
        self._entries: dict[CacheKey, OptimizationRecord] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._waiters: dict[CacheKey, int] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(path: Path | str, fingerprint: str) -> CacheKey:
        return (os.path.abspath(path), fingerprint)

    def get(self, path: Path | str, fingerprint: str) -> OptimizationRecord | None:
        if is_cache_disabled():
            return None
        record = self._entries.get(self.key(path, fingerprint))
        if record is None:
            self.misses += 1
            logger.debug(f"[cache] MISS {os.path.basename(path)}")
        else:
            self.hits += 1
            logger.debug(f"[cache] HIT {os.path.basename(path)}")
        return record

    def set(self, path: Path | str, fingerprint: str, record: OptimizationRecord) -> None:
        if is_cache_disabled():
            return
        self._entries[self.key(path, fingerprint)] = record

    async def get_or_compute(
        self,
        path: Path | str,
        fingerprint: str,
        factory: Callable[[], Awaitable[OptimizationRecord]],
    ) -> OptimizationRecord:
        key = self.key(path, fingerprint)
        lock = self._locks.setdefault(key, asyncio.Lock())
        # The lock lives while anyone holds or waits for it; a released lock
        # with queued waiters still reports locked() == False.
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                cached = self.get(path, fingerprint)
                if cached is not None:
                    return cached
                record = await factory()
                self.set(path, fingerprint, record)
                return record
        finally:
            remaining = self._waiters.get(key, 1) - 1
            if remaining > 0:
                self._waiters[key] = remaining
            else:
                self._waiters.pop(key, None)
                if self._locks.get(key) is lock:
                    del self._locks[key]

    def clear(self) -> None:
        self._entries.clear()
        self._locks.clear()
        self._waiters.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
