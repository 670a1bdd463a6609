"""Bounded in-process caches for renders, OCR results and sent images."""

import time
from threading import Lock
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

V = TypeVar("V")


class LRUCache(Generic[V]):
    """Thread-safe LRU cache with a size limit."""

    def __init__(self, max_size: int = 200):
        self._cache: Dict[str, V] = {}
        self._access_order: List[str] = []
        self._max_size = max_size
        self._lock = Lock()

    def add(self, key: str, value: V) -> None:
        """Add a value with LRU eviction."""
        with self._lock:
            if key in self._cache:
                self._access_order.remove(key)
            elif len(self._cache) >= self._max_size:
                lru_key = self._access_order.pop(0)
                self._cache.pop(lru_key, None)
            self._cache[key] = value
            self._access_order.append(key)

    def get(self, key: str) -> Optional[V]:
        """Retrieve a value, updating access order."""
        with self._lock:
            value = self._cache.get(key)
            if value is not None:
                self._access_order.remove(key)
                self._access_order.append(key)
            return value

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._access_order.clear()

    def __len__(self) -> int:
        return len(self._cache)


class TTLCache(Generic[V]):
    """Thread-safe cache whose entries expire ``ttl`` seconds after insertion.

    When full, the oldest entry is evicted first.
    """

    def __init__(self, max_size: int, ttl: float, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[float, V]] = {}
        self._max_size = max_size
        self._ttl = ttl
        self._clock = clock
        self._lock = Lock()

    def add(self, key: str, value: V) -> None:
        with self._lock:
            self._purge_expired()
            self._entries.pop(key, None)
            while len(self._entries) >= self._max_size:
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                self._entries.pop(oldest)
            self._entries[key] = (self._clock(), value)

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self._ttl:
                self._entries.pop(key, None)
                return None
            return value

    def __contains__(self, key: Any) -> bool:
        return self.get(str(key)) is not None

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at >= self._ttl]
        for key in expired:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)
