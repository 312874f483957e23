"""
Vanity/Affiliate Code Resolver and vanity code management.

NO DICTIONARIES - Resolution results are CodeValidation.

Checks run in a fixed order and stop at the first failure:
    format -> existence -> status -> expiry -> domain authorization
Codes that are not vanity codes fall back to the Affiliate Directory.
"""

import re
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import VanityCode, VanityCodeUsage
from app.db.repositories import VanityCodeRepository
from app.exceptions import DuplicateCodeError, NotFoundError, ValidationError
from app.models.api import (
    CODE_PATTERN,
    InvalidCodeReason,
    VanityCodeStatus,
)
from app.models.domain import CodeValidation, RequestContext, VanityCodeSnapshot
from app.observability.metrics import metrics
from app.services.affiliates import AffiliateDirectory
from app.services.cache import MISSING, Cache, vanity_code_cache_key
from app.services.credentials import CredentialStore

logger = get_logger(__name__)

_CODE_RE = re.compile(CODE_PATTERN)


def is_well_formed(code: str | None) -> bool:
    return bool(code) and _CODE_RE.match(code) is not None


def to_snapshot(row: VanityCode) -> VanityCodeSnapshot:
    return VanityCodeSnapshot(
        vanity_code_id=row.id,
        vanity_code=row.vanity_code,
        affiliate_id=row.affiliate_id,
        affiliate_code=row.affiliate_code,
        status=VanityCodeStatus(row.status),
        expires_at=row.expires_at,
    )


class CodeResolver:
    """Resolves vanity and affiliate codes to affiliates."""

    def __init__(self, db: AsyncSession, cache: Cache, directory: AffiliateDirectory):
        self.db = db
        self.cache = cache
        self.directory = directory
        self.repo = VanityCodeRepository(db)
        self.credentials = CredentialStore(db, cache)

    async def _snapshot(self, code: str) -> VanityCodeSnapshot | None:
        cache_key = vanity_code_cache_key(code)
        cached = await self.cache.get(cache_key)
        if cached is MISSING:
            return None
        if cached is not None:
            return cached

        row = await self.repo.get_by_code(code)
        snapshot = to_snapshot(row) if row is not None else None
        await self.cache.set(
            cache_key,
            snapshot if snapshot is not None else MISSING,
            settings.vanity_code_cache_ttl,
        )
        return snapshot

    async def _domain_authorized(self, domain: str, now: datetime) -> bool:
        """Same rule as the gateway: pending domains pass inside the provisioning window."""
        try:
            record = await self.credentials.find_by_domain(domain)
        except ValidationError:
            return False
        window = timedelta(hours=settings.provisioning_window_hours)
        return record is not None and record.is_authorized(now, window)

    async def lookup(
        self, code: str, domain: str | None = None, now: datetime | None = None
    ) -> tuple[CodeValidation, VanityCodeSnapshot | None]:
        """Read-only resolution. Records nothing."""
        now = now or datetime.now(UTC)
        if not is_well_formed(code):
            return CodeValidation.rejected(InvalidCodeReason.INVALID_CODE), None

        snapshot = await self._snapshot(code)
        if snapshot is not None:
            if snapshot.status is not VanityCodeStatus.ACTIVE:
                # An expired status is still reported as expiry
                reason = (
                    InvalidCodeReason.EXPIRED_CODE
                    if snapshot.status is VanityCodeStatus.EXPIRED
                    else InvalidCodeReason.INACTIVE_CODE
                )
                return CodeValidation.rejected(reason), snapshot
            if snapshot.is_expired(now):
                return CodeValidation.rejected(InvalidCodeReason.EXPIRED_CODE), snapshot
            affiliate_id = snapshot.affiliate_id
            affiliate_code = snapshot.affiliate_code
        else:
            profile = await self.directory.find_by_code(code)
            if profile is None:
                return CodeValidation.rejected(InvalidCodeReason.INVALID_CODE), None
            if not profile.is_active:
                return CodeValidation.rejected(InvalidCodeReason.INACTIVE_CODE), None
            affiliate_id = profile.affiliate_id
            affiliate_code = profile.affiliate_code

        if domain and not await self._domain_authorized(domain, now):
            return CodeValidation.rejected(InvalidCodeReason.UNAUTHORISED_DOMAIN), snapshot

        return (
            CodeValidation(
                valid=True,
                affiliate_id=affiliate_id,
                affiliate_code=affiliate_code,
                vanity_code_id=snapshot.vanity_code_id if snapshot else None,
            ),
            snapshot,
        )

    async def validate(
        self,
        code: str,
        domain: str | None,
        context: RequestContext,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> CodeValidation:
        """
        Resolve a code and, for a valid vanity code, record the usage.

        Usage recording inserts a vanity_code_usage row and bumps usage_count
        atomically in the same transaction.
        """
        result, snapshot = await self.lookup(code, domain, now)
        metrics.record_code_validation(result.valid, result.reason.value if result.reason else None)

        if not result.valid:
            logger.info(
                "code_validation_rejected",
                code=code,
                domain=domain,
                reason=result.reason.value if result.reason else None,
            )
            return result

        if snapshot is not None:
            await self.repo.add_usage(
                VanityCodeUsage(
                    vanity_code_id=snapshot.vanity_code_id,
                    domain=domain,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    referrer=context.referrer,
                    session_id=session_id,
                    created_at=datetime.now(UTC),
                )
            )
            usage_count = await self.repo.increment_usage(snapshot.vanity_code_id)
            await self.db.commit()
            await self.cache.invalidate(vanity_code_cache_key(code))
            logger.info("vanity_code_used", code=code, domain=domain, usage_count=usage_count)

        return result


class VanityCodeService:
    """Administrative management of vanity codes."""

    def __init__(self, db: AsyncSession, cache: Cache):
        self.db = db
        self.cache = cache
        self.repo = VanityCodeRepository(db)

    async def _get_row(self, code_id: UUID) -> VanityCode:
        row = await self.repo.get(code_id)
        if row is None:
            raise NotFoundError("Vanity code", str(code_id))
        return row

    async def create(
        self,
        vanity_code: str,
        affiliate_id: int,
        affiliate_code: str,
        description: str | None = None,
        expires_at: datetime | None = None,
        created_by: str | None = None,
    ) -> VanityCode:
        """
        Create a vanity code.

        Raises:
            ValidationError: malformed code or missing affiliate
            DuplicateCodeError: code already taken
        """
        if not is_well_formed(vanity_code):
            raise ValidationError(f"Invalid vanity code format: {vanity_code}", field="vanity_code")
        if affiliate_id <= 0 or not affiliate_code:
            raise ValidationError("An affiliate is required", field="affiliate_id")
        if await self.repo.get_by_code(vanity_code) is not None:
            raise DuplicateCodeError(vanity_code)

        row = VanityCode(
            vanity_code=vanity_code,
            affiliate_id=affiliate_id,
            affiliate_code=affiliate_code,
            description=description,
            status=VanityCodeStatus.ACTIVE.value,
            expires_at=expires_at,
            usage_count=0,
            conversion_count=0,
            revenue_generated=Decimal("0"),
            created_by=created_by,
            created_at=datetime.now(UTC),
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise DuplicateCodeError(vanity_code) from exc
        await self.db.refresh(row)
        await self.cache.invalidate(vanity_code_cache_key(vanity_code))

        logger.info(
            "vanity_code_created",
            code=vanity_code,
            affiliate_id=affiliate_id,
            created_by=created_by,
        )
        return row

    async def get(self, code_id: UUID) -> VanityCode:
        return await self._get_row(code_id)

    async def list_codes(
        self, status: VanityCodeStatus | None = None, page: int = 1, per_page: int = 50
    ) -> tuple[list[VanityCode], int]:
        rows, total = await self.repo.list_page(
            status.value if status else None, offset=(page - 1) * per_page, limit=per_page
        )
        return list(rows), total

    async def update(self, code_id: UUID, fields: dict[str, Any]) -> VanityCode:
        row = await self._get_row(code_id)
        if "description" in fields:
            row.description = fields["description"]
        if fields.get("status") is not None:
            row.status = VanityCodeStatus(fields["status"]).value
        if "expires_at" in fields:
            row.expires_at = fields["expires_at"]
        await self.db.commit()
        await self.db.refresh(row)
        await self.cache.invalidate(vanity_code_cache_key(row.vanity_code))
        logger.info("vanity_code_updated", code=row.vanity_code, fields=sorted(fields))
        return row

    async def delete(self, code_id: UUID) -> None:
        row = await self._get_row(code_id)
        code = row.vanity_code
        await self.db.delete(row)
        await self.db.commit()
        await self.cache.invalidate(vanity_code_cache_key(code))
        logger.info("vanity_code_deleted", code=code)

    async def bulk(self, action: str, code_ids: Sequence[UUID]) -> int:
        """Activate, deactivate or delete many codes. Returns rows affected."""
        codes = await self.repo.codes_for_ids(code_ids)
        match action:
            case "activate":
                affected = await self.repo.set_status(code_ids, VanityCodeStatus.ACTIVE.value)
            case "deactivate":
                affected = await self.repo.set_status(code_ids, VanityCodeStatus.INACTIVE.value)
            case "delete":
                affected = await self.repo.delete_many(code_ids)
            case _:
                raise ValidationError(f"Unknown bulk action: {action}", field="action")
        await self.db.commit()
        for code in codes:
            await self.cache.invalidate(vanity_code_cache_key(code))
        logger.info("vanity_codes_bulk_updated", action=action, affected=affected)
        return affected

    async def record_conversion(self, code: str, value: Decimal) -> None:
        """Bump conversion_count and revenue_generated atomically. Caller commits."""
        await self.repo.record_conversion(code, value)
        await self.cache.invalidate(vanity_code_cache_key(code))

    async def expire_codes(self, now: datetime | None = None) -> int:
        """Daily sweep: one idempotent UPDATE flipping overdue active codes to expired."""
        now = now or datetime.now(UTC)
        expired = await self.repo.expire_due(now)
        await self.db.commit()
        for code in expired:
            await self.cache.invalidate(vanity_code_cache_key(code))
        logger.info("vanity_codes_expired", count=len(expired))
        return len(expired)
