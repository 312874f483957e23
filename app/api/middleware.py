"""
HTTP middleware - proxy headers, CORS allow-list and security headers.

CORS never fails a request: an unknown or missing Origin just gets no CORS
headers.
"""

from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware
from structlog import get_logger

from app.services.container import ServiceContainer
from app.services.cors import (
    ALLOWED_HEADERS,
    ALLOWED_METHODS,
    EXPOSED_HEADERS,
    MAX_AGE_SECONDS,
    CorsAllowlist,
    is_allowed,
)

logger = get_logger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}


# Proxy headers middleware - trust X-Forwarded-Proto from the reverse proxy
class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-* headers from reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto.split(",")[0].strip()
        return await call_next(request)


class GatewayCorsMiddleware(BaseHTTPMiddleware):
    """Reflects allowed origins and short-circuits preflights with 204."""

    async def _origin_allowed(self, request: Request, origin: str) -> bool:
        container: ServiceContainer | None = getattr(request.app.state, "container", None)
        if container is None:
            return False
        try:
            async with container.session_factory() as db:
                allowlist = await CorsAllowlist(db, container.cache).entries()
        except SQLAlchemyError as e:
            logger.warning("cors_allowlist_unavailable", error=str(e))
            return False
        return is_allowed(origin, allowlist, request.url.scheme)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        origin = request.headers.get("origin")
        allowed = bool(origin) and await self._origin_allowed(request, origin or "")

        preflight = (
            request.method == "OPTIONS" and "access-control-request-method" in request.headers
        )
        if preflight:
            response = Response(status_code=204)
            if allowed:
                response.headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS
                response.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS
                response.headers["Access-Control-Max-Age"] = str(MAX_AGE_SECONDS)
        else:
            response = await call_next(request)

        if allowed:
            response.headers["Access-Control-Allow-Origin"] = origin or ""
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Access-Control-Expose-Headers"] = EXPOSED_HEADERS
            response.headers.append("Vary", "Origin")
        elif origin:
            logger.debug("cors_origin_rejected", origin=origin)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers on every /v1 response."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        if request.url.path.startswith("/v1"):
            for name, value in SECURITY_HEADERS.items():
                response.headers.setdefault(name, value)
        return response
