"""
API Routes - FastAPI endpoints for satellite domains.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    GENERIC_FAILURE,
    GatewayCaller,
    check_domain_authorized,
    extract_api_key,
    get_container,
    get_request_context,
    http_error,
    require_gateway,
    signature_validator,
)
from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    AuthenticationError,
    FeatureUnavailableError,
    GatewayError,
    ValidationError,
)
from app.models.api import (
    AddonListResponse,
    AddonRegisterRequest,
    AddonRegisterResponse,
    AddonStatusResponse,
    AddonUnregisterRequest,
    AddonUnregisterResponse,
    BatchItemResult,
    BatchRequest,
    BatchResponse,
    ClientConfig,
    ClientConfigResponse,
    ConfigUpdateRequest,
    ConfigurationResponse,
    ConvertRequest,
    EventResponse,
    HealthResponse,
    Permission,
    RateLimitTier,
    ReferralUpdateRequest,
    ReferralUpdateResponse,
    TrackRequest,
    ValidateCodeRequest,
    ValidateCodeResponse,
)
from app.models.domain import DomainRecord, IngestedEvent, RequestContext
from app.services.addons import AddonRegistry
from app.services.commission import CommissionService
from app.services.container import ServiceContainer
from app.services.credentials import CredentialStore, normalize_domain
from app.services.diagnostics import database_ok
from app.services.domain_config import DomainConfigService
from app.services.ingestion import IngestionService
from app.services.rate_limiter import RateLimiter, rate_limit_headers, rate_limit_identifier
from app.services.security_log import (
    WEBHOOK_SIGNATURE_INVALID,
    SecurityLogService,
    rejection_severity,
)
from app.services.signature import SIGNATURE_HEADER, TIMESTAMP_HEADER
from app.services.vanity_codes import CodeResolver

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ingestion(db: AsyncSession, container: ServiceContainer) -> IngestionService:
    resolver = CodeResolver(db, container.cache, container.directory)
    commissions = CommissionService(db, container.directory)
    return IngestionService(db, resolver, commissions, container.bus)


def _event_response(event: IngestedEvent) -> EventResponse:
    return EventResponse(
        success=True,
        event_id=event.event_id,
        event_type=event.event_type,
        status=event.status,
        commission_amount=event.commission_amount,
        currency=event.currency,
        tracked_at=event.created_at,
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> Response:
    """Public liveness check with one database round trip. 503 when the DB is down."""
    ok = await database_ok(db)
    body = HealthResponse(
        success=ok, ok=ok, time=datetime.now(UTC), version=settings.api_version
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body.model_dump(mode="json"),
    )


# ============================================================================
# Event ingestion
# ============================================================================


@router.post("/track", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def track_event(
    request: TrackRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    caller: GatewayCaller = Depends(
        require_gateway(RateLimitTier.TRACKING, Permission.TRACK_EVENTS)
    ),
) -> EventResponse:
    """
    Record a referral visit.

    The event is stored even when the code does not resolve; its status is
    then ``failed`` and the reason lands in metadata.
    """
    try:
        event = await _ingestion(db, container).track(
            caller.domain,
            request.code,
            request.metadata,
            caller.context,
            domain_to=request.domain_to,
            idempotency_key=request.idempotency_key,
        )
    except GatewayError as exc:
        raise http_error(exc) from exc
    return _event_response(event)


@router.post("/convert", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def convert_event(
    request: ConvertRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    caller: GatewayCaller = Depends(
        require_gateway(RateLimitTier.TRACKING, Permission.TRACK_EVENTS)
    ),
) -> EventResponse:
    """Record a conversion and its commission."""
    try:
        event = await _ingestion(db, container).convert(
            caller.domain,
            request.code,
            request.amount,
            request.currency,
            request.metadata,
            caller.context,
            domain_to=request.domain_to,
            idempotency_key=request.idempotency_key,
            reference=request.reference,
        )
    except GatewayError as exc:
        raise http_error(exc) from exc
    return _event_response(event)


@router.post("/batch", response_model=BatchResponse)
async def batch_events(
    request: BatchRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    caller: GatewayCaller = Depends(
        require_gateway(RateLimitTier.TRACKING, Permission.TRACK_EVENTS)
    ),
) -> BatchResponse:
    """Ingest up to MAX_BATCH_SIZE events; failures are reported per item."""
    try:
        result = await _ingestion(db, container).batch(caller.domain, request.events, caller.context)
    except GatewayError as exc:
        raise http_error(exc) from exc

    return BatchResponse(
        success=result.failed == 0,
        processed=result.processed,
        succeeded=result.succeeded,
        failed=result.failed,
        results=[
            BatchItemResult(
                index=outcome.index,
                success=outcome.success,
                event_id=outcome.event_id,
                error=outcome.error,
            )
            for outcome in result.outcomes
        ],
        tracked_at=datetime.now(UTC),
    )


@router.post("/validate-code", response_model=ValidateCodeResponse)
async def validate_code(
    request: ValidateCodeRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    caller: GatewayCaller = Depends(
        require_gateway(RateLimitTier.DEFAULT, Permission.VALIDATE_CODES)
    ),
) -> ValidateCodeResponse:
    """
    Check a vanity or affiliate code for the calling (or a named) domain.

    A valid vanity code records one usage. Every call appends a validation
    event.
    """
    try:
        domain = normalize_domain(request.domain) if request.domain else caller.domain.domain_url
    except ValidationError as exc:
        raise http_error(exc) from exc

    context = caller.context
    if request.referrer:
        context = RequestContext(
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            referrer=request.referrer,
            request_id=context.request_id,
        )

    resolver = CodeResolver(db, container.cache, container.directory)
    result = await resolver.validate(request.code, domain, context, session_id=request.session_id)
    await _ingestion(db, container).record_validation(
        caller.domain, request.code, result, context, {"checked_domain": domain}
    )
    return ValidateCodeResponse(
        success=True,
        valid=result.valid,
        affiliate_id=result.affiliate_id,
        affiliate_code=result.affiliate_code,
        reason=result.reason,
    )


# ============================================================================
# Inbound referral webhook
# ============================================================================


async def _webhook_domain(
    request: Request, credentials: CredentialStore
) -> DomainRecord | None:
    api_key = extract_api_key(request)
    if api_key:
        return await credentials.find_by_api_key(api_key)
    claimed = request.headers.get("x-client-domain") or request.headers.get("origin")
    if not claimed:
        return None
    try:
        return await credentials.find_by_domain(normalize_domain(claimed))
    except ValidationError:
        return None


@router.post(
    "/webhook/referral-update",
    response_model=ReferralUpdateResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def referral_update_webhook(
    request: Request,
    response: Response,
    payload: ReferralUpdateRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    context: RequestContext = Depends(get_request_context),
) -> ReferralUpdateResponse:
    """
    Referral status push from a satellite, signed with its webhook secret.

    Auth: X-AFFCD-Signature = HMAC-SHA256(raw body, webhook_secret)
    """
    if not settings.referral_webhook_enabled:
        raise http_error(FeatureUnavailableError("referral_webhook"))

    credentials = CredentialStore(db, container.cache)
    security_log = SecurityLogService(db, container.bus)
    limiter = RateLimiter(db, security_log)

    domain = await _webhook_domain(request, credentials)
    secret = await credentials.webhook_secret_for(domain.domain_id) if domain else None
    try:
        signature_validator.verify_webhook(
            body=await request.body(),
            timestamp=request.headers.get(TIMESTAMP_HEADER),
            signature=request.headers.get(SIGNATURE_HEADER),
            secret=secret,
        )
    except AuthenticationError as exc:
        await security_log.log_event(
            WEBHOOK_SIGNATURE_INVALID,
            rejection_severity(WEBHOOK_SIGNATURE_INVALID),
            ip_address=context.ip_address,
            domain_id=domain.domain_id if domain else None,
            context={"reason": exc.message},
        )
        await limiter.record_failure(context.ip_address)
        raise http_error(AuthenticationError(GENERIC_FAILURE)) from exc
    if domain is None:
        raise http_error(AuthenticationError(GENERIC_FAILURE))

    try:
        await check_domain_authorized(security_log, context, domain, request.url.path)
        decision = await limiter.check_and_record(
            rate_limit_identifier(domain.api_key_prefix, context.ip_address),
            RateLimitTier.DEFAULT,
            domain,
            context.ip_address,
        )
        request.state.rate_limit_headers = rate_limit_headers(decision)
        response.headers.update(request.state.rate_limit_headers)

        metadata = dict(payload.metadata)
        if payload.amount is not None:
            metadata["amount"] = str(payload.amount)
        if payload.currency:
            metadata["currency"] = payload.currency
        event = await _ingestion(db, container).record_referral_update(
            domain,
            payload.referral_id,
            payload.affiliate_code,
            payload.status,
            metadata,
            context,
        )
    except GatewayError as exc:
        raise http_error(exc) from exc

    return ReferralUpdateResponse(success=True, event_id=event.event_id, received_at=event.created_at)


# ============================================================================
# Addons
# ============================================================================


@router.post("/addons/register", response_model=AddonRegisterResponse)
async def register_addon(
    request: AddonRegisterRequest,
    db: AsyncSession = Depends(get_write_db),
    caller: GatewayCaller = Depends(
        require_gateway(RateLimitTier.REGISTRATION, Permission.MANAGE_ADDONS)
    ),
) -> AddonRegisterResponse:
    try:
        addon = await AddonRegistry(db).register(
            caller.domain,
            request.addon_slug,
            request.addon_name,
            request.version,
            request.capabilities,
        )
    except GatewayError as exc:
        raise http_error(exc) from exc
    return AddonRegisterResponse(
        success=True,
        addon_slug=request.addon_slug,
        registered_at=addon.registered_at,
        message="Addon registered",
    )


@router.post("/addons/unregister", response_model=AddonUnregisterResponse)
async def unregister_addon(
    request: AddonUnregisterRequest,
    db: AsyncSession = Depends(get_write_db),
    caller: GatewayCaller = Depends(
        require_gateway(RateLimitTier.REGISTRATION, Permission.MANAGE_ADDONS)
    ),
) -> AddonUnregisterResponse:
    try:
        removed = await AddonRegistry(db).unregister(caller.domain, request.addon_slug)
    except GatewayError as exc:
        raise http_error(exc) from exc
    return AddonUnregisterResponse(
        success=True,
        addon_slug=request.addon_slug,
        message="Addon unregistered" if removed else "Addon was not registered",
    )


@router.get("/addons/status", response_model=AddonStatusResponse)
async def addon_status(
    addon_slug: str | None = None,
    db: AsyncSession = Depends(get_write_db),
    caller: GatewayCaller = Depends(require_gateway(RateLimitTier.DEFAULT, Permission.VIEW_ADDONS)),
) -> AddonStatusResponse:
    """One addon when ``addon_slug`` is given (404 if unknown), else a summary."""
    registry = AddonRegistry(db)
    try:
        addons = await registry.list_addons(caller.domain)
        if addon_slug is not None:
            addon = await registry.status(caller.domain, addon_slug)
            return AddonStatusResponse(
                success=True, addon_slug=addon_slug, addon=addon, total_addons=len(addons)
            )
    except GatewayError as exc:
        raise http_error(exc) from exc
    return AddonStatusResponse(success=True, total_addons=len(addons), registered_addons=addons)


@router.get("/addons/list", response_model=AddonListResponse)
async def list_addons(
    db: AsyncSession = Depends(get_write_db),
    caller: GatewayCaller = Depends(require_gateway(RateLimitTier.DEFAULT, Permission.VIEW_ADDONS)),
) -> AddonListResponse:
    try:
        addons = await AddonRegistry(db).list_addons(caller.domain)
    except GatewayError as exc:
        raise http_error(exc) from exc
    return AddonListResponse(
        success=True, domain=caller.domain.domain_url, addons=addons, total=len(addons)
    )


# ============================================================================
# Configuration
# ============================================================================


async def _client_config(
    db: AsyncSession, container: ServiceContainer, caller: GatewayCaller
) -> ClientConfig:
    try:
        return await DomainConfigService(db, container.cache).client_config(caller.domain)
    except GatewayError as exc:
        raise http_error(exc) from exc


@router.get("/config", response_model=ClientConfig)
async def get_client_config(
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    caller: GatewayCaller = Depends(
        require_gateway(RateLimitTier.CONFIGURATION, Permission.VIEW_CONFIGURATION)
    ),
) -> ClientConfig:
    return await _client_config(db, container, caller)


@router.get("/config/get", response_model=ClientConfigResponse)
async def get_config(
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    caller: GatewayCaller = Depends(
        require_gateway(RateLimitTier.CONFIGURATION, Permission.VIEW_CONFIGURATION)
    ),
) -> ClientConfigResponse:
    config = await _client_config(db, container, caller)
    return ClientConfigResponse(success=True, config=config, retrieved_at=datetime.now(UTC))


@router.post("/config/sync", response_model=ConfigurationResponse)
async def sync_config(
    request: ConfigUpdateRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    caller: GatewayCaller = Depends(
        require_gateway(RateLimitTier.CONFIGURATION, Permission.MANAGE_CONFIGURATION)
    ),
) -> ConfigurationResponse:
    """Preview the merged configuration; nothing is persisted."""
    try:
        merged = await DomainConfigService(db, container.cache).sync(caller.domain, request.config)
    except GatewayError as exc:
        raise http_error(exc) from exc
    return ConfigurationResponse(success=True, configuration=merged, timestamp=datetime.now(UTC))


@router.put("/config/update", response_model=ConfigurationResponse)
async def update_config(
    request: ConfigUpdateRequest,
    db: AsyncSession = Depends(get_write_db),
    container: ServiceContainer = Depends(get_container),
    caller: GatewayCaller = Depends(
        require_gateway(RateLimitTier.CONFIGURATION, Permission.MANAGE_CONFIGURATION)
    ),
) -> ConfigurationResponse:
    try:
        merged = await DomainConfigService(db, container.cache).update(caller.domain, request.config)
    except GatewayError as exc:
        raise http_error(exc) from exc
    return ConfigurationResponse(success=True, configuration=merged, timestamp=datetime.now(UTC))
