"""
Addon Registry - Addons a satellite domain reports as installed.

Entries live in authorized_domains.metadata["registered_addons"], keyed by
slug. JSONB columns are replaced wholesale so SQLAlchemy sees the change.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import AuthorizedDomain
from app.db.repositories import DomainRepository
from app.exceptions import NotFoundError
from app.models.api import AddonInfo
from app.models.domain import DomainRecord

logger = get_logger(__name__)

REGISTRY_KEY = "registered_addons"


def _registry(row: AuthorizedDomain) -> dict[str, dict[str, Any]]:
    return dict((row.domain_metadata or {}).get(REGISTRY_KEY) or {})


class AddonRegistry:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = DomainRepository(db)

    async def _row(self, domain: DomainRecord) -> AuthorizedDomain:
        row = await self.repo.get(domain.domain_id)
        if row is None:
            raise NotFoundError("Domain", domain.domain_url)
        return row

    async def _save(self, row: AuthorizedDomain, registry: dict[str, dict[str, Any]]) -> None:
        row.domain_metadata = {**(row.domain_metadata or {}), REGISTRY_KEY: registry}
        await self.db.commit()

    async def register(
        self,
        domain: DomainRecord,
        slug: str,
        name: str,
        version: str,
        capabilities: list[str],
    ) -> AddonInfo:
        """Add or replace an addon entry. Re-registering keeps the original registered_at."""
        row = await self._row(domain)
        registry = _registry(row)
        now = datetime.now(UTC).isoformat()
        previous = registry.get(slug) or {}
        registry[slug] = {
            "name": name,
            "version": version,
            "capabilities": list(capabilities),
            "registered_at": previous.get("registered_at", now),
            "last_seen": now,
            "status": "active",
        }
        await self._save(row, registry)
        logger.info("addon_registered", domain=domain.domain_url, addon_slug=slug, version=version)
        return AddonInfo.model_validate(registry[slug])

    async def unregister(self, domain: DomainRecord, slug: str) -> bool:
        """Remove an addon. Idempotent: returns False when it was not registered."""
        row = await self._row(domain)
        registry = _registry(row)
        if slug not in registry:
            return False
        del registry[slug]
        await self._save(row, registry)
        logger.info("addon_unregistered", domain=domain.domain_url, addon_slug=slug)
        return True

    async def list_addons(self, domain: DomainRecord) -> dict[str, AddonInfo]:
        row = await self._row(domain)
        return {slug: AddonInfo.model_validate(info) for slug, info in _registry(row).items()}

    async def status(self, domain: DomainRecord, slug: str) -> AddonInfo:
        addons = await self.list_addons(domain)
        if slug not in addons:
            raise NotFoundError("Addon", slug)
        return addons[slug]
