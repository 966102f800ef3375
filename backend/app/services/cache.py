from __future__ import annotations

import time
from threading import Lock
from typing import Any, Callable, Hashable, Optional


class TTLCache:
    """Small owned key/value cache with per-entry expiry and manual invalidation."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            now = self._clock()
            if len(self._entries) >= self.max_entries:
                self._entries = {
                    existing: entry for existing, entry in self._entries.items() if entry[0] > now
                }
                if len(self._entries) >= self.max_entries:
                    oldest = min(self._entries, key=lambda item: self._entries[item][0])
                    del self._entries[oldest]
            self._entries[key] = (now + self.ttl_seconds, value)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
