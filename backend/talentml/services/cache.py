"""
Bounded In-Process Cache

Holds text embeddings for the feature extractor so that repeated profiles
do not hit the embedding provider again.

Properties:
    - Fixed capacity, oldest-first eviction (insertion order)
    - Thread-safe get/set behind a single lock
    - Stored values are copied on the way in and out, so callers can
      never mutate a cached entry
    - Hit/miss counters for monitoring

Usage:
    cache = EmbeddingCache(capacity=1000)

    embedding = cache.get(key)
    if embedding is None:
        embedding = await provider.embed(text)
        cache.set(key, embedding)
"""

import logging
import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from talentml.middleware.metrics import record_cache_hit, record_cache_miss

logger = logging.getLogger(__name__)


class EmbeddingCache:
    """
    Thread-safe bounded cache with oldest-first eviction.

    A race between two writers for the same key ends with one of the two
    (identical) values stored; entries are never partially written.

    Attributes:
        capacity: Maximum number of entries kept
        stats: Hit/miss counters
    """

    def __init__(self, capacity: int = 1000, layer: str = "embedding"):
        if capacity < 1:
            raise ValueError("Cache capacity must be at least 1")
        self.capacity = capacity
        self.layer = layer
        self._entries: "OrderedDict[str, tuple]" = OrderedDict()
        self._lock = threading.Lock()
        self.stats: Dict[str, int] = {"hits": 0, "misses": 0, "evictions": 0}

    def get(self, key: str) -> Optional[List[float]]:
        with self._lock:
            value = self._entries.get(key)
            if value is None:
                self.stats["misses"] += 1
            else:
                self.stats["hits"] += 1

        if value is None:
            record_cache_miss(self.layer)
            return None

        record_cache_hit(self.layer)
        return list(value)

    def set(self, key: str, value: List[float]) -> None:
        stored = tuple(float(v) for v in value)

        with self._lock:
            if key in self._entries:
                self._entries[key] = stored
                return

            while len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self.stats["evictions"] += 1
                logger.debug(f"Evicted cache entry {evicted[:20]!r}")

            self._entries[key] = stored

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics including hit rate.

        Returns:
            Dict with hits, misses, evictions, size and hit_rate
        """
        with self._lock:
            hits = self.stats["hits"]
            misses = self.stats["misses"]
            total = hits + misses
            return {
                "hits": hits,
                "misses": misses,
                "evictions": self.stats["evictions"],
                "size": len(self._entries),
                "capacity": self.capacity,
                "hit_rate": hits / total if total > 0 else 0.0,
            }
