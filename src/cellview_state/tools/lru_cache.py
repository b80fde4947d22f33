"""
Bounded least-recently-used cache.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


class LRUCache:
    """Ordered mapping that evicts its least recently used entry.

    Args:
        max_size: Maximum number of entries (must be >= 1)
        max_age: Seconds after which an entry expires; 0 disables expiry
        on_evict: Called as ``on_evict(key, value)`` for every eviction
    """

    def __init__(
        self,
        max_size: int = 50,
        max_age: float = 0.0,
        on_evict: Optional[Callable[[Hashable, Any], None]] = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.max_age = max_age
        self.on_evict = on_evict
        self._entries: "OrderedDict[Hashable, tuple]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.has(key)

    def _expired(self, stamp: float) -> bool:
        return self.max_age > 0 and (time.monotonic() - stamp) > self.max_age

    def _evict(self, key: Hashable) -> None:
        value, _ = self._entries.pop(key)
        self.evictions += 1
        if self.on_evict is not None:
            self.on_evict(key, value)

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default
        value, stamp = entry
        if self._expired(stamp):
            self._evict(key)
            self.misses += 1
            return default
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def has(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._expired(entry[1]):
            self._evict(key)
            return False
        return True

    def set(self, key: Hashable, value: Any) -> None:
        if key in self._entries:
            self._entries.pop(key)
        self._entries[key] = (value, time.monotonic())
        while len(self._entries) > self.max_size:
            oldest = next(iter(self._entries))
            logger.debug("LRU evicting %r", oldest)
            self._evict(oldest)

    def delete(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def keys(self):
        return list(self._entries.keys())

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": (self.hits / total) if total else 0.0,
        }
