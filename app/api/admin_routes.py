"""
Admin API Routes - Domain registry, vanity codes, commissions, security.

All routes require an admin JWT (see require_admin).
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import get_container, http_error, require_admin
from app.db.models import SecurityLogEntry, VanityCode
from app.db.session import get_read_db, get_write_db
from app.exceptions import GatewayError, NotFoundError, ValidationError
from app.models.api import (
    BulkOperationResponse,
    CommissionBreakdownResponse,
    CommissionCalculateRequest,
    CommissionResponse,
    DiagnosticsResponse,
    DomainCreateRequest,
    DomainCredentialsResponse,
    DomainListResponse,
    DomainResponse,
    DomainStatus,
    DomainStatusRequest,
    DomainUpdateRequest,
    SecurityLogListResponse,
    SecurityLogResponse,
    SecurityStatsResponse,
    Severity,
    SweepResponse,
    VanityCodeBulkRequest,
    VanityCodeCreateRequest,
    VanityCodeListResponse,
    VanityCodeResponse,
    VanityCodeStatus,
    VanityCodeUpdateRequest,
    VerificationResponse,
)
from app.models.commission import RuleScope
from app.models.domain import DomainRecord, IssuedCredentials
from app.services.admin_auth import AdminIdentity
from app.services.commission import CommissionOptions, CommissionService
from app.services.container import ServiceContainer
from app.services.diagnostics import DiagnosticsService
from app.services.domains import DomainService
from app.services.security_log import SecurityLogService
from app.services.vanity_codes import VanityCodeService

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", dependencies=[Depends(require_admin)])


def _domains(db: AsyncSession, container: ServiceContainer) -> DomainService:
    return DomainService(
        db,
        container.cache,
        container.http_client,
        container.bus,
        SecurityLogService(db, container.bus),
    )


def _domain_response(record: DomainRecord) -> DomainResponse:
    return DomainResponse(
        domain_id=record.domain_id,
        domain_url=record.domain_url,
        status=record.status,
        verification_status=record.verification_status,
        verification_failures=record.verification_failures,
        security_level=record.security_level,
        rate_limit_per_minute=record.rate_limit_per_minute,
        rate_limit_per_hour=record.rate_limit_per_hour,
        max_daily_requests=record.max_daily_requests,
        allowed_endpoints=list(record.allowed_endpoints),
        webhook_url=record.webhook_url,
        webhook_events=list(record.webhook_events),
        api_key_prefix=record.api_key_prefix,
        suspended_reason=record.suspended_reason,
        last_verified_at=record.last_verified_at,
        created_at=record.created_at,
    )


def _credentials_response(
    record: DomainRecord, credentials: IssuedCredentials
) -> DomainCredentialsResponse:
    return DomainCredentialsResponse(
        success=True,
        domain=_domain_response(record),
        api_key=credentials.api_key,
        api_secret=credentials.api_secret,
    )


def _code_response(row: VanityCode) -> VanityCodeResponse:
    return VanityCodeResponse(
        vanity_code_id=row.id,
        vanity_code=row.vanity_code,
        affiliate_id=row.affiliate_id,
        affiliate_code=row.affiliate_code,
        description=row.description,
        status=VanityCodeStatus(row.status),
        expires_at=row.expires_at,
        usage_count=row.usage_count,
        conversion_count=row.conversion_count,
        revenue_generated=row.revenue_generated,
        created_at=row.created_at,
    )


def _security_log_response(entry: SecurityLogEntry) -> SecurityLogResponse:
    return SecurityLogResponse(
        log_id=entry.id,
        event_type=entry.event_type,
        severity=Severity(entry.severity),
        ip_address=str(entry.ip_address) if entry.ip_address is not None else None,
        actor=entry.actor,
        domain_id=entry.domain_id,
        context=dict(entry.context or {}),
        created_at=entry.created_at,
    )


# ============================================================================
# Domains
# ============================================================================


@router.get("/admin/domains", response_model=DomainListResponse)
async def list_domains(
    status_filter: DomainStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_read_db),
    container: ServiceContainer = Depends(get_container),
) -> DomainListResponse:
    records, total = await _domains(db, container).list_domains(status_filter, page, per_page)
    return DomainListResponse(
        success=True,
        domains=[_domain_response(record) for record in records],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post(
    "/admin/domains",
    response_model=DomainCredentialsResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_domain(
    request: DomainCreateRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    admin: AdminIdentity = Depends(require_admin),
) -> DomainCredentialsResponse:
    """
    Register a satellite domain (pending, unverified).

    The API key and signing secret are returned here once and never again.
    """
    try:
        record, credentials = await _domains(db, container).add(
            request.domain_url,
            security_level=request.security_level,
            rate_limit_per_minute=request.rate_limit_per_minute,
            rate_limit_per_hour=request.rate_limit_per_hour,
            max_daily_requests=request.max_daily_requests,
            allowed_endpoints=[permission.value for permission in request.allowed_endpoints],
            webhook_url=request.webhook_url,
            webhook_secret=request.webhook_secret,
            webhook_events=request.webhook_events,
            metadata=request.metadata,
            created_by=admin.subject,
        )
    except GatewayError as exc:
        raise http_error(exc) from exc

    logger.info("admin_domain_added", domain=record.domain_url, admin=admin.subject)
    return _credentials_response(record, credentials)


@router.get("/admin/domains/{domain_id}", response_model=DomainResponse)
async def get_domain(
    domain_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    container: ServiceContainer = Depends(get_container),
) -> DomainResponse:
    try:
        return _domain_response(await _domains(db, container).get(domain_id))
    except GatewayError as exc:
        raise http_error(exc) from exc


@router.put("/admin/domains/{domain_id}", response_model=DomainResponse)
async def update_domain(
    domain_id: UUID,
    request: DomainUpdateRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
) -> DomainResponse:
    fields: dict[str, Any] = request.model_dump(exclude_unset=True, mode="json")
    if not fields:
        raise http_error(ValidationError("No fields to update", field="body"))
    try:
        return _domain_response(await _domains(db, container).update(domain_id, fields))
    except GatewayError as exc:
        raise http_error(exc) from exc


@router.delete("/admin/domains/{domain_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_domain(
    domain_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    try:
        await _domains(db, container).delete(domain_id)
    except GatewayError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/admin/domains/{domain_id}/status", response_model=DomainResponse)
async def set_domain_status(
    domain_id: UUID,
    request: DomainStatusRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
) -> DomainResponse:
    try:
        record = await _domains(db, container).set_status(domain_id, request.status, request.reason)
    except GatewayError as exc:
        raise http_error(exc) from exc
    return _domain_response(record)


@router.post("/admin/domains/{domain_id}/verify", response_model=VerificationResponse)
async def verify_domain(
    domain_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    """Run one verification now. A network failure answers 502 with the result body."""
    try:
        result = await _domains(db, container).verify(domain_id)
    except GatewayError as exc:
        raise http_error(exc) from exc

    body = VerificationResponse(
        success=result.success,
        domain_id=result.domain_id,
        status_code=result.status_code,
        error=result.error,
        verification_failures=result.verification_failures,
        status=result.status,
        verification_status=result.verification_status,
    )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY if result.network_error else status.HTTP_200_OK,
        content=body.model_dump(mode="json"),
    )


@router.post("/admin/domains/{domain_id}/rotate-key", response_model=DomainCredentialsResponse)
async def rotate_domain_key(
    domain_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    admin: AdminIdentity = Depends(require_admin),
) -> DomainCredentialsResponse:
    """Issue a new key and secret. The old key stops working immediately."""
    service = _domains(db, container)
    try:
        credentials = await service.rotate_key(domain_id)
        record = await service.get(domain_id)
    except GatewayError as exc:
        raise http_error(exc) from exc
    logger.info("admin_domain_key_rotated", domain=record.domain_url, admin=admin.subject)
    return _credentials_response(record, credentials)


# ============================================================================
# Vanity codes
# ============================================================================


@router.get("/admin/vanity-codes", response_model=VanityCodeListResponse)
async def list_vanity_codes(
    status_filter: VanityCodeStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_read_db),
    container: ServiceContainer = Depends(get_container),
) -> VanityCodeListResponse:
    rows, total = await VanityCodeService(db, container.cache).list_codes(
        status_filter, page, per_page
    )
    return VanityCodeListResponse(
        success=True,
        codes=[_code_response(row) for row in rows],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post(
    "/admin/vanity-codes",
    response_model=VanityCodeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_vanity_code(
    request: VanityCodeCreateRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    admin: AdminIdentity = Depends(require_admin),
) -> VanityCodeResponse:
    try:
        row = await VanityCodeService(db, container.cache).create(
            request.vanity_code,
            request.affiliate_id,
            request.affiliate_code,
            description=request.description,
            expires_at=request.expires_at,
            created_by=admin.subject,
        )
    except GatewayError as exc:
        raise http_error(exc) from exc
    return _code_response(row)


@router.put("/admin/vanity-codes/{code_id}", response_model=VanityCodeResponse)
async def update_vanity_code(
    code_id: UUID,
    request: VanityCodeUpdateRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
) -> VanityCodeResponse:
    try:
        row = await VanityCodeService(db, container.cache).update(
            code_id, request.model_dump(exclude_unset=True)
        )
    except GatewayError as exc:
        raise http_error(exc) from exc
    return _code_response(row)


@router.delete("/admin/vanity-codes/{code_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_vanity_code(
    code_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
) -> Response:
    try:
        await VanityCodeService(db, container.cache).delete(code_id)
    except GatewayError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/admin/vanity-codes/bulk", response_model=BulkOperationResponse)
async def bulk_vanity_codes(
    request: VanityCodeBulkRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
) -> BulkOperationResponse:
    try:
        affected = await VanityCodeService(db, container.cache).bulk(request.action, request.ids)
    except GatewayError as exc:
        raise http_error(exc) from exc
    return BulkOperationResponse(success=True, action=request.action, affected=affected)


# ============================================================================
# Commissions
# ============================================================================


@router.post("/admin/commissions/calculate", response_model=CommissionResponse)
async def calculate_commission(
    request: CommissionCalculateRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
) -> CommissionResponse:
    options = CommissionOptions(
        currency=request.currency,
        apply_bonuses=request.apply_bonuses,
        apply_time_adjustments=request.apply_time_adjustments,
        include_breakdown=request.include_breakdown,
        validate_thresholds=request.validate_thresholds,
    )
    try:
        result = await CommissionService(db, container.directory).calculate(
            request.sale_amount, request.affiliate_code, options
        )
    except GatewayError as exc:
        raise http_error(exc) from exc

    breakdown = None
    if request.include_breakdown:
        breakdown = CommissionBreakdownResponse(
            base_commission=result.breakdown.base_commission,
            bonus_multiplier=result.breakdown.bonus_multiplier,
            performance_bonus=result.breakdown.performance_bonus,
            time_multiplier=result.breakdown.time_multiplier,
            time_adjustment=result.breakdown.time_adjustment,
            rules_applied=list(result.breakdown.rules_applied),
            calculation_method=result.breakdown.calculation_method,
        )
    return CommissionResponse(
        success=True,
        commission_amount=result.commission_amount,
        currency=result.currency,
        affiliate_code=result.affiliate_code,
        sale_amount=result.sale_amount,
        effective_rate=result.effective_rate,
        calculated_at=result.calculated_at,
        breakdown=breakdown,
    )


@router.get("/admin/commissions/rules/{scope}/{scope_key}")
async def get_commission_rules(
    scope: RuleScope,
    scope_key: str,
    db: AsyncSession = Depends(get_read_db),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    rules = await CommissionService(db, container.directory).get_rules(scope, scope_key)
    if rules is None:
        raise http_error(NotFoundError("Commission rules", f"{scope.value}/{scope_key}"))
    return {"success": True, "scope": scope.value, "scope_key": scope_key, "rules": rules}


@router.put("/admin/commissions/rules/{scope}/{scope_key}")
async def put_commission_rules(
    scope: RuleScope,
    scope_key: str,
    rules: dict[str, Any],
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Upsert one rule layer. The layer is validated merged over the defaults."""
    try:
        await CommissionService(db, container.directory).set_rules(scope, scope_key, rules)
    except GatewayError as exc:
        raise http_error(exc) from exc
    return {"success": True, "scope": scope.value, "scope_key": scope_key, "rules": rules}


# ============================================================================
# Security logs
# ============================================================================


@router.get("/admin/security-logs", response_model=SecurityLogListResponse)
async def list_security_logs(
    severity: Severity | None = None,
    event_type: str | None = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_read_db),
    container: ServiceContainer = Depends(get_container),
) -> SecurityLogListResponse:
    entries, total = await SecurityLogService(db, container.bus).list_entries(
        severity, event_type, page, per_page
    )
    return SecurityLogListResponse(
        success=True,
        logs=[_security_log_response(entry) for entry in entries],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/admin/security-logs/stats", response_model=SecurityStatsResponse)
async def security_log_stats(
    days: int = Query(7, ge=1, le=365),
    db: AsyncSession = Depends(get_read_db),
    container: ServiceContainer = Depends(get_container),
) -> SecurityStatsResponse:
    by_severity, by_event_type = await SecurityLogService(db, container.bus).stats(days)
    return SecurityStatsResponse(
        success=True, days=days, by_severity=by_severity, by_event_type=by_event_type
    )


# ============================================================================
# Sweeps & diagnostics
# ============================================================================


@router.post("/admin/sweeps", response_model=SweepResponse)
async def run_sweeps(container: ServiceContainer = Depends(get_container)) -> SweepResponse:
    """Run every maintenance job once. Each job is isolated from the others."""
    report = await container.sweeps().run_once()
    return SweepResponse(
        success=not report.errors,
        domains_verified=report.domains_verified,
        domains_failed=report.domains_failed,
        codes_expired=report.codes_expired,
        security_logs_deleted=report.security_logs_deleted,
        rate_windows_deleted=report.rate_windows_deleted,
        errors=list(report.errors),
    )


@router.get("/diagnostics", response_model=DiagnosticsResponse)
async def diagnostics(db: AsyncSession = Depends(get_read_db)) -> DiagnosticsResponse:
    return await DiagnosticsService(db).snapshot()
