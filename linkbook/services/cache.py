from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any


@dataclass
class CacheEntry:
    value: Any
    stored_at: float


class TTLCache:
    """In-memory key/value cache with a fixed time-to-live.

    Expired entries are dropped when they are read; nothing sweeps the cache
    in the background, so it grows with the number of distinct keys. The clock
    is injectable so expiry can be tested without sleeping.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = float(ttl_seconds)
        self.clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default=None):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if self.clock() - entry.stored_at >= self.ttl_seconds:
                del self._entries[key]
                return default
            return entry.value

    def set(self, key: Hashable, value) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, stored_at=self.clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
