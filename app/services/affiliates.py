"""
Affiliate Directory - External source of affiliate business objects.

The gateway never owns affiliates; it only reads them by code or id.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

import httpx
from structlog import get_logger

from app.config import settings
from app.exceptions import DependencyError
from app.models.domain import AffiliateProfile
from app.services.cache import MISSING, Cache, affiliate_cache_key

logger = get_logger(__name__)


class AffiliateDirectory(Protocol):
    async def find_by_code(self, affiliate_code: str) -> AffiliateProfile | None: ...

    async def find_by_id(self, affiliate_id: int) -> AffiliateProfile | None: ...


def _parse_profile(data: dict[str, Any]) -> AffiliateProfile:
    created_at = data.get("created_at")
    return AffiliateProfile(
        affiliate_id=int(data["affiliate_id"]),
        affiliate_code=str(data["affiliate_code"]),
        status=str(data.get("status", "active")),
        group=data.get("group"),
        created_at=datetime.fromisoformat(created_at) if created_at else None,
    )


class HttpAffiliateDirectory:
    """
    Directory backed by an HTTP service.

    GET {base}/affiliates/by-code/{code}  -> profile JSON or 404
    GET {base}/affiliates/{id}            -> profile JSON or 404
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        cache: Cache,
        base_url: str,
        token: str = "",
        timeout: float = 5.0,
    ):
        self.http_client = http_client
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    async def find_by_code(self, affiliate_code: str) -> AffiliateProfile | None:
        cache_key = affiliate_cache_key(affiliate_code)
        cached = await self.cache.get(cache_key)
        if cached is MISSING:
            return None
        if cached is not None:
            return cached

        profile = await self._fetch(f"/affiliates/by-code/{affiliate_code}")
        await self.cache.set(
            cache_key,
            profile if profile is not None else MISSING,
            settings.affiliate_cache_ttl,
        )
        return profile

    async def find_by_id(self, affiliate_id: int) -> AffiliateProfile | None:
        return await self._fetch(f"/affiliates/{affiliate_id}")

    async def _fetch(self, path: str) -> AffiliateProfile | None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = await self.http_client.get(
                f"{self.base_url}{path}", headers=headers, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            logger.error("affiliate_directory_unreachable", path=path, error=str(e))
            raise DependencyError("affiliate_directory", str(e)) from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.error(
                "affiliate_directory_error", path=path, status_code=response.status_code
            )
            raise DependencyError(
                "affiliate_directory", f"unexpected status {response.status_code}"
            )
        try:
            return _parse_profile(response.json())
        except (KeyError, TypeError, ValueError) as e:
            raise DependencyError("affiliate_directory", f"malformed profile: {e}") from e


class StaticAffiliateDirectory:
    """In-memory directory for development and tests."""

    def __init__(self, profiles: Iterable[AffiliateProfile] = ()):
        self._by_code: dict[str, AffiliateProfile] = {}
        self._by_id: dict[int, AffiliateProfile] = {}
        for profile in profiles:
            self.add(profile)

    def add(self, profile: AffiliateProfile) -> None:
        self._by_code[profile.affiliate_code] = profile
        self._by_id[profile.affiliate_id] = profile

    async def find_by_code(self, affiliate_code: str) -> AffiliateProfile | None:
        return self._by_code.get(affiliate_code)

    async def find_by_id(self, affiliate_id: int) -> AffiliateProfile | None:
        return self._by_id.get(affiliate_id)
