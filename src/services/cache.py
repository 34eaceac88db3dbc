"""Short-lived read-through cache.

Every handler in a process shares one TTLCache (``get_shared_cache``) and
passes it to the services that read or invalidate it. Separate serverless
functions run in separate processes, so across functions freshness is bounded
by the TTL alone.
"""

import time
from typing import Any, Awaitable, Callable, Optional

from src.utils.config import CRMConfig
from src.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)

_MISSING = object()

_shared_cache: Optional["TTLCache"] = None


class TTLCache:
    """In-memory key/value cache with per-entry TTL and a size bound."""

    def __init__(
        self,
        ttl_seconds: float = 30,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 1024,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._store: dict[str, tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._store.get(key)
        if entry is None:
            self.misses += 1
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._store[key]
            self.misses += 1
            return default
        self.hits += 1
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store a value. Expired entries are swept first; when still full the oldest entry goes."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self.evict_expired()
        if key not in self._store and len(self._store) >= self.max_entries:
            oldest = next(iter(self._store))
            del self._store[oldest]
            logger.debug("Cache full, evicted oldest entry", cache_key=oldest)
        self._store[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with prefix; returns how many were dropped."""
        keys = [k for k in self._store if k.startswith(prefix)]
        for key in keys:
            del self._store[key]
        return len(keys)

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._store.items() if now >= expires_at]
        for key in expired:
            del self._store[key]
        return len(expired)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> dict[str, int]:
        return {"size": len(self._store), "hits": self.hits, "misses": self.misses}

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        cacheable: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Return the cached value or await compute().

        The computed value is stored unless ``cacheable`` rejects it.
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            logger.debug("Cache hit", cache_key=key)
            return value
        value = await compute()
        if cacheable is None or cacheable(value):
            self.set(key, value)
        return value

    @staticmethod
    def make_key(*parts: Any) -> str:
        return ":".join("" if p is None else str(p) for p in parts)


def get_shared_cache() -> TTLCache:
    """Get or create the cache shared by every handler in this process."""
    global _shared_cache

    if _shared_cache is None:
        _shared_cache = TTLCache(CRMConfig.CACHE_TTL_SECONDS)

    return _shared_cache
