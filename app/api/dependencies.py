"""
FastAPI Dependencies - Gateway authentication chain and admin auth.

NO DICTIONARIES - All dependencies return typed objects.

Signed endpoints run, in order: client IP resolution, credential extraction,
timestamp freshness, credential lookup, signature check, rate limit, domain
authorization, endpoint permission. Key and signature failures all surface as
the same generic 401.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import NoReturn

import structlog
from fastapi import Depends, Header, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_write_db
from app.exceptions import (
    AuthenticationError,
    AuthorizationError,
    GatewayError,
    InvalidTimestampError,
)
from app.models.api import Permission, RateLimitTier
from app.models.domain import DomainRecord, RateLimitDecision, RequestContext
from app.observability.metrics import metrics
from app.services.admin_auth import AdminIdentity
from app.services.container import ServiceContainer
from app.services.credentials import CredentialStore, derive_signing_secret
from app.services.domains import authorize_domain
from app.services.rate_limiter import (
    RateLimiter,
    rate_limit_headers,
    rate_limit_identifier,
    resolve_client_ip,
)
from app.services.security_log import (
    API_KEY_INVALID,
    DOMAIN_UNAUTHORIZED,
    ENDPOINT_FORBIDDEN,
    SIGNATURE_INVALID,
    TIMESTAMP_INVALID,
    SecurityLogService,
    rejection_severity,
)
from app.services.signature import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    SignatureValidator,
    check_timestamp,
)

logger = get_logger(__name__)

signature_validator = SignatureValidator()

# The only message a caller sees for key or signature failures
GENERIC_FAILURE = "invalid credentials"


def get_container(request: Request) -> ServiceContainer:
    """The process-wide container built by the lifespan."""
    container: ServiceContainer = request.app.state.container
    return container


def get_request_context(request: Request) -> RequestContext:
    peer = request.client.host if request.client else None
    return RequestContext(
        ip_address=resolve_client_ip(request.headers, peer),
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer"),
        request_id=request.headers.get("x-request-id"),
    )


def extract_api_key(request: Request) -> str | None:
    """``Authorization: Bearer <key>`` wins over ``X-API-Key``."""
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    api_key = request.headers.get("x-api-key", "").strip()
    return api_key or None


def http_error(exc: GatewayError) -> HTTPException:
    """Map a domain error onto the HTTP error body rendered by the app handlers."""
    headers: dict[str, str] | None = None
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}
    return HTTPException(
        status_code=exc.http_status,
        detail={"error": exc.error_code, "message": exc.message},
        headers=headers,
    )


@dataclass
class GatewayCaller:
    """Authenticated satellite domain plus what the chain learned about the request."""

    domain: DomainRecord
    context: RequestContext
    rate_limit: RateLimitDecision


async def _authentication_failed(
    limiter: RateLimiter,
    security_log: SecurityLogService,
    context: RequestContext,
    event_type: str,
    reason: str,
    domain: DomainRecord | None = None,
    exc: AuthenticationError | None = None,
) -> NoReturn:
    """
    Audit the failure, count it against the caller IP and raise.

    The caller only ever sees ``exc`` (timestamp rejections, which do not
    depend on the key) or the generic invalid-credentials error; the real
    reason stays in the audit entry.
    """
    await security_log.log_event(
        event_type,
        rejection_severity(event_type),
        ip_address=context.ip_address,
        actor=f"key:{domain.api_key_prefix}" if domain else None,
        domain_id=domain.domain_id if domain else None,
        context={"reason": reason, "request_id": context.request_id},
    )
    await limiter.record_failure(context.ip_address)
    raise exc or AuthenticationError(GENERIC_FAILURE)


async def check_domain_authorized(
    security_log: SecurityLogService,
    context: RequestContext,
    domain: DomainRecord,
    path: str,
    permission: Permission | None = None,
) -> None:
    """authorize_domain(), auditing the rejection before it propagates."""
    try:
        authorize_domain(domain, permission)
    except AuthorizationError as exc:
        event_type = ENDPOINT_FORBIDDEN if exc.required_permission else DOMAIN_UNAUTHORIZED
        await security_log.log_event(
            event_type,
            rejection_severity(event_type),
            ip_address=context.ip_address,
            actor=f"key:{domain.api_key_prefix}",
            domain_id=domain.domain_id,
            context={"reason": exc.reason, "path": path},
        )
        raise


def require_gateway(
    tier: RateLimitTier, permission: Permission | None = None
) -> Callable[..., Awaitable[GatewayCaller]]:
    """
    FastAPI dependency factory for signed satellite endpoints.

    Usage:
        @router.post("/v1/track")
        async def track(
            caller: GatewayCaller = Depends(require_gateway(RateLimitTier.TRACKING, Permission.TRACK_EVENTS))
        ):
            ...

    Raises:
        AuthenticationError (401), RateLimitError (429), AuthorizationError (403)
    """

    async def gateway_checker(
        request: Request,
        response: Response,
        db: AsyncSession = Depends(get_write_db),
        container: ServiceContainer = Depends(get_container),
        context: RequestContext = Depends(get_request_context),
    ) -> GatewayCaller:
        security_log = SecurityLogService(db, container.bus)
        limiter = RateLimiter(db, security_log)

        api_key = extract_api_key(request)
        if api_key is None:
            await _authentication_failed(
                limiter, security_log, context, API_KEY_INVALID, "missing API key"
            )

        # Freshness is checked before the key is looked up
        timestamp = request.headers.get(TIMESTAMP_HEADER)
        if settings.signed_endpoints_required:
            try:
                check_timestamp(timestamp)
            except InvalidTimestampError as exc:
                metrics.record_signature_check("invalid_timestamp")
                await _authentication_failed(
                    limiter, security_log, context, TIMESTAMP_INVALID, exc.message, exc=exc
                )
            except AuthenticationError as exc:
                metrics.record_signature_check("invalid_timestamp")
                await _authentication_failed(
                    limiter, security_log, context, TIMESTAMP_INVALID, exc.message
                )

        domain = await CredentialStore(db, container.cache).find_by_api_key(api_key)
        if domain is None:
            await _authentication_failed(
                limiter, security_log, context, API_KEY_INVALID, "unknown API key"
            )

        if settings.signed_endpoints_required:
            body = await request.body()
            try:
                signature_validator.verify_request(
                    method=request.method,
                    route=request.url.path,
                    domain=domain.domain_url,
                    timestamp=timestamp,
                    body=body,
                    signature=request.headers.get(SIGNATURE_HEADER),
                    secret=derive_signing_secret(api_key),
                )
            except AuthenticationError as exc:
                metrics.record_signature_check("invalid")
                await _authentication_failed(
                    limiter, security_log, context, SIGNATURE_INVALID, exc.message, domain
                )
            metrics.record_signature_check("valid")

        decision = await limiter.check_and_record(
            rate_limit_identifier(domain.api_key_prefix, context.ip_address),
            tier,
            domain,
            context.ip_address,
        )
        headers = rate_limit_headers(decision)
        response.headers.update(headers)
        # Error handlers re-attach these when the route itself raises
        request.state.rate_limit_headers = headers

        await check_domain_authorized(security_log, context, domain, request.url.path, permission)

        structlog.contextvars.bind_contextvars(domain=domain.domain_url)
        return GatewayCaller(domain=domain, context=context, rate_limit=decision)

    return gateway_checker


async def require_admin(
    authorization: str | None = Header(None),
    container: ServiceContainer = Depends(get_container),
) -> AdminIdentity:
    """
    Admin JWT check for /v1/admin and /v1/diagnostics.

    Raises:
        AuthenticationError (401): no token or invalid token
        AuthorizationError (403): role is not admin
    """
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    return container.admin_auth.verify_token(token)
