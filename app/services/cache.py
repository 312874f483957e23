"""
Cache-aside port.

Components depend on the ``Cache`` protocol (get/set/invalidate) and never
talk to a cache backend directly, so TTL and invalidation policy live here.
Writers must call ``invalidate`` on the same key before returning.
"""

import time
from typing import Any, Protocol

from structlog import get_logger

logger = get_logger(__name__)

# Sentinel stored for negative lookups ("we checked, it does not exist")
MISSING = object()


class Cache(Protocol):
    """Cache-aside interface injected into services."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: float) -> None: ...

    async def invalidate(self, key: str) -> None: ...


class MemoryCache:
    """
    In-process TTL cache.

    Entries expire lazily on read. When full, expired entries are purged
    first and then the oldest entries are evicted.
    """

    def __init__(self, max_entries: int = 10_000) -> None:
        self.max_entries = max_entries
        # Key: cache key, Value: (expires_at_monotonic, value)
        self._entries: dict[str, tuple[float, Any]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: float) -> None:
        if ttl <= 0:
            self._entries.pop(key, None)
            return
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict()
        self._entries[key] = (time.monotonic() + ttl, value)

    async def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self) -> None:
        now = time.monotonic()
        expired = [k for k, (exp, _) in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]

        # Dicts keep insertion order: drop the oldest tenth
        overflow = len(self._entries) - self.max_entries + 1
        if overflow > 0:
            drop = max(overflow, self.max_entries // 10)
            for k in list(self._entries)[:drop]:
                del self._entries[k]
            logger.debug("cache_evicted", evicted=drop, remaining=len(self._entries))


# Cache keys - one place so readers and writers agree
def domain_key_cache_key(api_key_digest: str) -> str:
    return f"domain:key:{api_key_digest}"


def domain_prefix_cache_key(key_prefix: str) -> str:
    return f"domain:prefix:{key_prefix}"


def domain_url_cache_key(domain_url: str) -> str:
    return f"domain:url:{domain_url}"


def vanity_code_cache_key(code: str) -> str:
    return f"vanity:{code}"


def affiliate_cache_key(code: str) -> str:
    return f"affiliate:{code}"


CORS_ALLOWLIST_CACHE_KEY = "cors:allowlist"
