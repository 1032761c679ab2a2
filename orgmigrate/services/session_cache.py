"""Small TTL-bounded cache for short-lived identity lookups."""

import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class SessionCache:
    """
    Bounded map of key -> value with per-entry expiry.

    Expired entries are dropped lazily on read and by a sweep that runs
    every ``sweep_every`` writes. When full, expired entries go first,
    then the oldest half.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_size: int = 1000,
        sweep_every: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.sweep_every = sweep_every
        self.clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}  # key -> (stored_at, value)
        self._writes = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self.clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._writes += 1
            if self._writes % self.sweep_every == 0:
                self._sweep_locked()
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_locked()
            self._entries[key] = (self.clock(), value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        with self._lock:
            return self._sweep_locked()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _sweep_locked(self) -> int:
        now = self.clock()
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _evict_locked(self) -> None:
        self._sweep_locked()
        if len(self._entries) < self.max_size:
            return
        by_age = sorted(self._entries.items(), key=lambda item: item[1][0])
        for key, _ in by_age[: max(len(by_age) // 2, 1)]:
            del self._entries[key]
