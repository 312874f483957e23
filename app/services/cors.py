"""
CORS Policy Engine.

Allow-list entries come in three forms:
    https://shop.example.com:8443   exact origin (scheme, host, optional port)
    example.com                     bare host, scheme taken from the request
    *.example.com                   any strict subdomain, never the root itself

The allow-list is every active domain (plus its www. variant) and the
CORS_EXTRA_ORIGINS setting, cached through the cache port.
"""

from dataclasses import dataclass
from urllib.parse import urlsplit

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.repositories import DomainRepository
from app.services.cache import CORS_ALLOWLIST_CACHE_KEY, Cache

logger = get_logger(__name__)

ALLOWED_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOWED_HEADERS = (
    "Authorization, Content-Type, X-API-Key, X-AFFCD-Signature, "
    "X-AFFCD-Timestamp, X-Client-Domain, X-Request-ID"
)
EXPOSED_HEADERS = "X-RateLimit-Limit, X-RateLimit-Remaining, X-RateLimit-Reset, Retry-After"
MAX_AGE_SECONDS = 86400


@dataclass(frozen=True)
class OriginPattern:
    """A parsed allow-list entry."""

    scheme: str | None
    host: str
    port: int | None
    wildcard: bool

    @classmethod
    def parse(cls, entry: str) -> "OriginPattern | None":
        entry = entry.strip().lower()
        if not entry:
            return None
        scheme: str | None = None
        if "://" in entry:
            scheme, _, entry = entry.partition("://")
        entry = entry.split("/", 1)[0]

        wildcard = entry.startswith("*.")
        if wildcard:
            entry = entry[2:]

        host, port = _split_host_port(entry)
        if not host or "*" in host:
            return None
        return cls(scheme=scheme, host=host, port=port, wildcard=wildcard)

    def matches(self, scheme: str, host: str, port: int | None, request_scheme: str) -> bool:
        if scheme != (self.scheme or request_scheme):
            return False
        if self.port is not None and self.port != port:
            return False
        if self.wildcard:
            return host.endswith(f".{self.host}")
        return host == self.host


def _split_host_port(netloc: str) -> tuple[str, int | None]:
    host, sep, port = netloc.rpartition(":")
    if sep and port.isdigit() and "]" not in port:
        return host, int(port)
    return netloc, None


def is_allowed(origin: str | None, allowlist: list[str], request_scheme: str = "https") -> bool:
    """True when ``origin`` matches any allow-list entry."""
    if not origin or origin == "null":
        return False
    try:
        parts = urlsplit(origin.strip().lower())
        host = parts.hostname
        port = parts.port
    except ValueError:
        return False
    if not parts.scheme or not host:
        return False

    for entry in allowlist:
        pattern = OriginPattern.parse(entry)
        if pattern is not None and pattern.matches(parts.scheme, host, port, request_scheme):
            return True
    return False


class CorsAllowlist:
    """Builds and caches the allow-list from the domain registry."""

    def __init__(self, db: AsyncSession, cache: Cache):
        self.db = db
        self.cache = cache

    async def entries(self) -> list[str]:
        cached = await self.cache.get(CORS_ALLOWLIST_CACHE_KEY)
        if cached is not None:
            return cached

        hosts = await DomainRepository(self.db).active_hosts()
        allowlist: list[str] = []
        for host in hosts:
            for entry in (host, f"www.{host}"):
                if entry not in allowlist:
                    allowlist.append(entry)
        for entry in settings.cors_extra_origin_list:
            if entry not in allowlist:
                allowlist.append(entry)

        await self.cache.set(CORS_ALLOWLIST_CACHE_KEY, allowlist, settings.cors_allowlist_cache_ttl)
        logger.debug("cors_allowlist_refreshed", entries=len(allowlist))
        return allowlist

    async def invalidate(self) -> None:
        await self.cache.invalidate(CORS_ALLOWLIST_CACHE_KEY)
