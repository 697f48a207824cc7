"""In-process TTL cache for source snapshots and triangulation results.

Keys are ``(symbol, kind)`` tuples, e.g. ``("BTC", "triangulation")``.
 • expiry is checked on read, a miss is a normal outcome
 • ``get_or_compute`` holds a per-key lock so only one thread refreshes
   a given key while the others wait for its result
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Protocol

from loguru import logger


CacheKey = tuple[str, str]


class Cache(Protocol):
    def get(self, key: CacheKey) -> Any | None:
        ...

    def set(self, key: CacheKey, value: Any, ttl_seconds: float) -> None:
        ...


class TTLCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[CacheKey, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._key_locks: dict[CacheKey, threading.Lock] = {}

    def get(self, key: CacheKey) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: CacheKey, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            if ttl_seconds <= 0:
                self._entries.pop(key, None)
                return
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def invalidate(self, key: CacheKey | None = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def get_or_compute(
        self,
        key: CacheKey,
        ttl_seconds: float,
        compute: Callable[[], Any],
        force_refresh: bool = False,
    ) -> Any:
        if not force_refresh:
            cached = self.get(key)
            if cached is not None:
                logger.debug("Cache hit: {}", key)
                return cached

        with self._lock_for(key):
            # another thread may have filled it while we waited
            if not force_refresh:
                cached = self.get(key)
                if cached is not None:
                    logger.debug("Cache hit after wait: {}", key)
                    return cached
            value = compute()
            self.set(key, value, ttl_seconds)
            return value

    def stats(self) -> dict:
        now = self._clock()
        with self._lock:
            live = sum(1 for expires_at, _ in self._entries.values() if expires_at > now)
            return {"entries": len(self._entries), "live": live}

    def _lock_for(self, key: CacheKey) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock
