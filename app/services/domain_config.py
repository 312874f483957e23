"""
Domain Configuration - Client config served to satellites and its overlay.

The stored overlay lives in authorized_domains.metadata["configuration"].
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import AuthorizedDomain
from app.db.repositories import DomainRepository
from app.exceptions import NotFoundError
from app.models.api import (
    CacheSettings,
    ClientConfig,
    Permission,
    RateLimitSettings,
    RateLimitTier,
    SecuritySettings,
)
from app.models.domain import DomainRecord
from app.services.cache import Cache
from app.services.credentials import CredentialStore
from app.services.rate_limiter import tier_limit

logger = get_logger(__name__)

CONFIGURATION_KEY = "configuration"

# Endpoint -> permission guarding it (None means no permission needed)
GATEWAY_ENDPOINTS: dict[str, Permission | None] = {
    "/v1/track": Permission.TRACK_EVENTS,
    "/v1/convert": Permission.TRACK_EVENTS,
    "/v1/batch": Permission.TRACK_EVENTS,
    "/v1/validate-code": Permission.VALIDATE_CODES,
    "/v1/config": Permission.VIEW_CONFIGURATION,
    "/v1/config/get": Permission.VIEW_CONFIGURATION,
    "/v1/config/sync": Permission.MANAGE_CONFIGURATION,
    "/v1/config/update": Permission.MANAGE_CONFIGURATION,
    "/v1/addons/register": Permission.MANAGE_ADDONS,
    "/v1/addons/unregister": Permission.MANAGE_ADDONS,
    "/v1/addons/status": Permission.VIEW_ADDONS,
    "/v1/addons/list": Permission.VIEW_ADDONS,
    "/v1/webhook/referral-update": None,
}


def enabled_features() -> list[str]:
    features = ["tracking", "conversions", "batch", "vanity_codes", "commissions", "addons"]
    if settings.referral_webhook_enabled:
        features.append("referral_webhook")
    return features


class DomainConfigService:
    def __init__(self, db: AsyncSession, cache: Cache):
        self.db = db
        self.repo = DomainRepository(db)
        self.credentials = CredentialStore(db, cache)

    async def _row(self, domain: DomainRecord) -> AuthorizedDomain:
        row = await self.repo.get(domain.domain_id)
        if row is None:
            raise NotFoundError("Domain", domain.domain_url)
        return row

    async def stored(self, domain: DomainRecord) -> dict[str, Any]:
        row = await self._row(domain)
        return dict((row.domain_metadata or {}).get(CONFIGURATION_KEY) or {})

    async def client_config(self, domain: DomainRecord) -> ClientConfig:
        endpoints = [
            path
            for path, permission in GATEWAY_ENDPOINTS.items()
            if permission is None or domain.permits(permission)
        ]
        per_hour = tier_limit(RateLimitTier.DEFAULT)
        if domain.rate_limit_per_hour:
            per_hour = min(per_hour, domain.rate_limit_per_hour)
        return ClientConfig(
            api_version=settings.api_version,
            domain=domain.domain_url,
            endpoints=endpoints,
            rate_limits=RateLimitSettings(
                per_minute=domain.rate_limit_per_minute,
                per_hour=per_hour,
                max_daily=domain.max_daily_requests,
            ),
            cache=CacheSettings(),
            security=SecuritySettings(
                require_https=True,
                signature_required=settings.signed_endpoints_required,
                timestamp_window=settings.signature_max_skew_seconds,
                security_level=domain.security_level,
            ),
            features=enabled_features(),
            configuration=await self.stored(domain),
        )

    async def sync(self, domain: DomainRecord, supplied: dict[str, Any]) -> dict[str, Any]:
        """Merge ``supplied`` over the stored overlay without persisting."""
        return {**await self.stored(domain), **supplied}

    async def update(self, domain: DomainRecord, supplied: dict[str, Any]) -> dict[str, Any]:
        """Shallow-merge ``supplied`` into the stored overlay and persist it."""
        row = await self._row(domain)
        metadata = dict(row.domain_metadata or {})
        merged = {**(metadata.get(CONFIGURATION_KEY) or {}), **supplied}
        row.domain_metadata = {**metadata, CONFIGURATION_KEY: merged}
        await self.db.commit()
        await self.credentials.invalidate(row)
        logger.info("domain_configuration_updated", domain=domain.domain_url, keys=sorted(supplied))
        return merged
