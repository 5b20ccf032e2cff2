"""
Metadata lookup cache

LRU cache with TTL for successful enrichment results, so a manifest listing
the same ISBN many times (or a re-uploaded manifest) costs one provider call.

- Cache key: MD5 of the normalized identifiers
- TTL: 1 hour (configurable)
- Max size: 1000 entries (LRU eviction)

Owned by one enrichment chain; never shared through module state.
"""
import hashlib
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class MetadataCache:
    """
    Attributes:
        ttl_seconds: Time-to-live for cache entries (default: 3600 = 1 hour)
        max_size: Maximum cache entries before LRU eviction (default: 1000)
    """

    def __init__(self, ttl_seconds: int = 3600, max_size: int = 1000, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @staticmethod
    def _make_key(key: str) -> str:
        return hashlib.md5(key.lower().strip().encode()).hexdigest()

    def get(self, key: str) -> Optional[Any]:
        """Cached value, or None if missing or expired."""
        hashed = self._make_key(key)
        if hashed not in self._cache:
            self._misses += 1
            return None

        timestamp, value = self._cache[hashed]
        if self._clock() - timestamp > self.ttl_seconds:
            del self._cache[hashed]
            self._misses += 1
            logger.debug(f"[MetadataCache] Expired: {key[:50]}")
            return None

        # Move to end (most recently used)
        self._cache.move_to_end(hashed)
        self._hits += 1
        return value

    def set(self, key: str, value: Any) -> None:
        hashed = self._make_key(key)
        if hashed in self._cache:
            del self._cache[hashed]
        while len(self._cache) >= self.max_size:
            self._cache.popitem(last=False)
            self._evictions += 1
        self._cache[hashed] = (self._clock(), value)

    def clear(self) -> None:
        self._cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": len(self._cache),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
        }
