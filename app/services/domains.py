"""
Domain Authorization Service - Registry, authorization and verification.

NO DICTIONARIES - Results are DomainRecord / VerificationResult.

A domain passes authorization when it is active and verified, or when it is
still pending (and has not failed verification) inside the provisioning
window. Outbound verification suspends a domain after
MAX_VERIFICATION_FAILURES consecutive failures.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import AuthorizedDomain
from app.db.repositories import DomainRepository
from app.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.models.api import DomainStatus, Permission, SecurityLevel, Severity, VerificationStatus
from app.models.domain import DomainRecord, IssuedCredentials, VerificationResult
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.cache import Cache
from app.services.cors import CorsAllowlist
from app.services.credentials import CredentialStore, to_record
from app.services.events import DomainSuspended, DomainVerified, EventBus
from app.services.security_log import DOMAIN_SUSPENDED, SecurityLogService

logger = get_logger(__name__)

# Fields an administrator may change after registration
UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "security_level",
        "rate_limit_per_minute",
        "rate_limit_per_hour",
        "max_daily_requests",
        "allowed_endpoints",
        "webhook_url",
        "webhook_secret",
        "webhook_events",
        "metadata",
    }
)


def authorize_domain(
    domain: DomainRecord, permission: Permission | None = None, now: datetime | None = None
) -> None:
    """
    Raise unless ``domain`` may call an endpoint guarded by ``permission``.

    Raises:
        AuthorizationError: domain not authorized, or permission missing
    """
    now = now or datetime.now(UTC)
    window = timedelta(hours=settings.provisioning_window_hours)
    if not domain.is_authorized(now, window):
        raise AuthorizationError(
            f"domain is {domain.status.value} ({domain.verification_status.value})"
        )
    if permission is not None and not domain.permits(permission):
        raise AuthorizationError("endpoint not allowed", required_permission=permission.value)


def suspension_reason() -> str:
    return f"verification_failed_{settings.max_verification_failures}_times"


class DomainService:
    """Administers authorized domains and runs outbound verification."""

    def __init__(
        self,
        db: AsyncSession,
        cache: Cache,
        http_client: httpx.AsyncClient,
        bus: EventBus,
        security_log: SecurityLogService | None = None,
    ):
        self.db = db
        self.cache = cache
        self.http_client = http_client
        self.bus = bus
        self.security_log = security_log or SecurityLogService(db, bus)
        self.repo = DomainRepository(db)
        self.credentials = CredentialStore(db, cache)
        self.cors = CorsAllowlist(db, cache)

    # ========================================================================
    # Registry
    # ========================================================================

    async def add(
        self,
        domain_url: str,
        *,
        security_level: SecurityLevel = SecurityLevel.MEDIUM,
        rate_limit_per_minute: int | None = None,
        rate_limit_per_hour: int | None = None,
        max_daily_requests: int | None = None,
        allowed_endpoints: list[str] | None = None,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
        webhook_events: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> tuple[DomainRecord, IssuedCredentials]:
        """Register a domain as pending/unverified and issue its credentials."""
        record, credentials = await self.credentials.create(
            domain_url,
            metadata,
            security_level=security_level,
            rate_limit_per_minute=rate_limit_per_minute,
            rate_limit_per_hour=rate_limit_per_hour,
            max_daily_requests=max_daily_requests,
            allowed_endpoints=allowed_endpoints or (),
            webhook_url=webhook_url,
            webhook_secret=webhook_secret,
            webhook_events=webhook_events or (),
            created_by=created_by,
        )
        await self.cors.invalidate()
        return record, credentials

    async def _get_row(self, domain_id: UUID) -> AuthorizedDomain:
        row = await self.repo.get(domain_id)
        if row is None:
            raise NotFoundError("Domain", str(domain_id))
        return row

    async def get(self, domain_id: UUID) -> DomainRecord:
        return to_record(await self._get_row(domain_id))

    async def list_domains(
        self, status: DomainStatus | None = None, page: int = 1, per_page: int = 50
    ) -> tuple[list[DomainRecord], int]:
        rows, total = await self.repo.list_page(
            status.value if status else None, offset=(page - 1) * per_page, limit=per_page
        )
        return [to_record(row) for row in rows], total

    async def update(self, domain_id: UUID, fields: dict[str, Any]) -> DomainRecord:
        """
        Apply whitelisted field changes.

        Raises:
            NotFoundError: unknown domain
            ValidationError: a field outside UPDATABLE_FIELDS
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {sorted(unknown)}", field="fields")

        row = await self._get_row(domain_id)
        for name, value in fields.items():
            match name:
                case "status":
                    status = DomainStatus(value)
                    row.status = status.value
                    if status is DomainStatus.SUSPENDED:
                        row.suspended_at = datetime.now(UTC)
                        row.suspended_reason = row.suspended_reason or "manual"
                    else:
                        row.suspended_at = None
                        row.suspended_reason = None
                case "security_level":
                    row.security_level = SecurityLevel(value).value
                case "allowed_endpoints" | "webhook_events":
                    setattr(row, name, [str(item) for item in value or []])
                case "metadata":
                    row.domain_metadata = dict(value or {})
                case _:
                    setattr(row, name, value)

        await self.db.commit()
        await self.db.refresh(row)
        await self.credentials.invalidate(row)
        await self.cors.invalidate()

        logger.info("domain_updated", domain_id=str(domain_id), fields=sorted(fields))
        return to_record(row)

    async def set_status(
        self, domain_id: UUID, status: DomainStatus, reason: str | None = None
    ) -> DomainRecord:
        record = await self.credentials.update_status(domain_id, status, reason)
        await self.cors.invalidate()
        return record

    async def delete(self, domain_id: UUID) -> None:
        row = await self._get_row(domain_id)
        await self.db.delete(row)
        await self.db.commit()
        await self.credentials.invalidate(row)
        await self.cors.invalidate()
        logger.info("domain_deleted", domain_id=str(domain_id), domain=row.domain_url)

    async def rotate_key(self, domain_id: UUID) -> IssuedCredentials:
        return await self.credentials.rotate_key(domain_id)

    # ========================================================================
    # Verification
    # ========================================================================

    async def verify(self, domain_id: UUID) -> VerificationResult:
        """
        Request https://{domain}{VERIFICATION_PATH} once and record the outcome.

        Never raises for remote failures; ``network_error`` on the result
        tells synchronous callers the remote side was unreachable.
        """
        row = await self._get_row(domain_id)
        url = f"https://{row.domain_url}{settings.verification_path}"
        now = datetime.now(UTC)
        status_code: int | None = None
        error: str | None = None
        network_error = False

        with trace_operation("domain_verification", domain=row.domain_url) as span:
            try:
                response = await self.http_client.get(
                    url,
                    timeout=settings.verification_timeout_seconds,
                    follow_redirects=True,
                )
                status_code = response.status_code
                span.set_attribute("http.status_code", status_code)
            except httpx.HTTPError as e:
                error = str(e) or type(e).__name__
                network_error = True

        success = status_code == 200
        if not success and error is None:
            error = f"unexpected status {status_code}"
        metrics.record_verification(success)

        row.last_verification_attempt_at = now
        if success:
            result = await self._record_success(row, now)
        else:
            result = await self._record_failure(row, now, status_code, error, network_error)

        logger.info(
            "domain_verification_completed",
            domain_id=str(domain_id),
            domain=row.domain_url,
            success=success,
            status_code=status_code,
            error=error,
            verification_failures=result.verification_failures,
            status=result.status.value,
        )
        return result

    async def _record_success(self, row: AuthorizedDomain, now: datetime) -> VerificationResult:
        row.verification_status = VerificationStatus.VERIFIED.value
        row.last_verified_at = now
        # A suspended domain keeps its failure count until it is reactivated
        if row.status != DomainStatus.SUSPENDED.value:
            row.verification_failures = 0
            if row.status == DomainStatus.PENDING.value:
                row.status = DomainStatus.ACTIVE.value
        await self.db.commit()
        await self.db.refresh(row)
        await self.credentials.invalidate(row)
        await self.cors.invalidate()

        await self.bus.publish(
            DomainVerified(domain_id=row.id, domain_url=row.domain_url, occurred_at=now)
        )
        return VerificationResult(
            domain_id=row.id,
            success=True,
            status_code=200,
            error=None,
            verification_failures=row.verification_failures,
            status=DomainStatus(row.status),
            verification_status=VerificationStatus(row.verification_status),
        )

    async def _record_failure(
        self,
        row: AuthorizedDomain,
        now: datetime,
        status_code: int | None,
        error: str | None,
        network_error: bool,
    ) -> VerificationResult:
        failures = await self.repo.increment_verification_failures(row.id)
        suspended_now = False
        if failures >= settings.max_verification_failures:
            suspended_now = await self.repo.suspend(row.id, suspension_reason(), now)
        await self.db.commit()
        await self.db.refresh(row)
        await self.credentials.invalidate(row)
        await self.cors.invalidate()

        if suspended_now:
            metrics.domains_suspended_total.inc()
            logger.error(
                "domain_auto_suspended",
                domain_id=str(row.id),
                domain=row.domain_url,
                verification_failures=failures,
            )
            await self.bus.publish(
                DomainSuspended(
                    domain_id=row.id,
                    domain_url=row.domain_url,
                    reason=suspension_reason(),
                    occurred_at=now,
                )
            )
            await self.security_log.log_event(
                DOMAIN_SUSPENDED,
                Severity.HIGH,
                actor="verification_sweep",
                domain_id=row.id,
                context={"verification_failures": failures, "last_error": error},
            )

        return VerificationResult(
            domain_id=row.id,
            success=False,
            status_code=status_code,
            error=error,
            verification_failures=failures,
            status=DomainStatus(row.status),
            verification_status=VerificationStatus(row.verification_status),
            network_error=network_error,
        )

    async def verify_all(self, delay: float | None = None) -> tuple[int, int]:
        """
        Daily sweep over active domains.

        Each domain is claimed atomically first, so overlapping sweeps never
        verify the same domain twice within the minimum interval.

        Returns:
            (verified, failed)
        """
        delay = settings.verification_sweep_delay_seconds if delay is None else delay
        now = datetime.now(UTC)
        cutoff = now - timedelta(hours=settings.verification_sweep_min_interval_hours)

        verified = failed = 0
        for domain_id in await self.repo.active_ids():
            claimed = await self.repo.claim_for_verification(domain_id, now, cutoff)
            await self.db.commit()
            if not claimed:
                continue
            if (verified or failed) and delay > 0:
                await asyncio.sleep(delay)

            result = await self.verify(domain_id)
            if result.success:
                verified += 1
            else:
                failed += 1

        logger.info("domain_verification_sweep_completed", verified=verified, failed=failed)
        return verified, failed
