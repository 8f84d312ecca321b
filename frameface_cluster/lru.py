"""
Bounded least‑recently‑used cache with per‑entry expiry.

Used for the in‑memory result caches of the embedding generator and the
recognition service.  Entries are a speed‑up only; losing them never loses
data.  All operations take a lock because batch workers share one generator.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class LRUCache(Generic[V]):
    """LRU cache holding at most ``max_entries`` items for ``ttl`` seconds.

    Parameters
    ----------
    max_entries: int
        Capacity; the least recently used entry is evicted when exceeded.
    ttl: float, optional
        Lifetime of an entry in seconds.  Reading an entry refreshes its age.
        ``None`` disables expiry.
    clock: callable
        Monotonic time source, injectable for tests.
    """

    def __init__(self, max_entries: int = 100, ttl: Optional[float] = 3600.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.ttl = ttl
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                self.misses += 1
                return None
            stamp, value = item
            now = self._clock()
            if self.ttl is not None and now - stamp > self.ttl:
                del self._data[key]
                self.misses += 1
                return None
            self._data[key] = (now, value)
            self._data.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._data[key] = (self._clock(), value)
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return False
            return self.ttl is None or self._clock() - item[0] <= self.ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
