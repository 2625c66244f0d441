"""
TTL Cache
In-memory key/value cache with a fixed time-to-live and an injected clock.

Instantiated per pipeline run instead of living as module state, so tests can
drive expiry with a fake clock.
"""

import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Optional, Tuple

from loguru import logger


class TTLCache:
    """
    Fixed-TTL cache with oldest-first eviction.

    Example:
        >>> cache = TTLCache(ttl_seconds=300)
        >>> cache.set("btc:1h", candles)
        >>> cache.get("btc:1h")
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Lifetime of every entry
            max_size: Maximum number of entries before the oldest is evicted
            clock: Monotonic clock returning seconds
        """
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

        logger.debug(f"TTLCache initialized (ttl={ttl_seconds}s, max_size={max_size})")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def set(self, key: str, value: Any) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            self._evict_oldest()
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def get(self, key: str) -> Optional[Any]:
        """
        Retrieve a live entry.

        Args:
            key: Cache key

        Returns:
            Cached value or None if missing or expired
        """
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return value

    async def get_or_fetch(self, key: str, fetch_func: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value or await `fetch_func` and cache its result."""
        value = self.get(key)
        if value is not None:
            return value
        value = await fetch_func()
        self.set(key, value)
        return value

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def _evict_oldest(self) -> None:
        key, _ = self._entries.popitem(last=False)
        logger.debug(f"Evicted cache entry: {key}")

    def get_stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }
