"""
Main Application - FastAPI application setup.
"""

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.admin_routes import router as admin_router
from app.api.middleware import (
    GatewayCorsMiddleware,
    ProxyHeadersMiddleware,
    SecurityHeadersMiddleware,
)
from app.api.routes import router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines, get_read_engine, get_write_engine, get_write_session
from app.exceptions import AuthenticationError, GatewayError, RateLimitError
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from app.services.container import ServiceContainer

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the service container and, when enabled, the in-process sweep loop.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        sweeps_enabled=settings.sweeps_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    instrument_sqlalchemy(get_write_engine())
    instrument_sqlalchemy(get_read_engine())

    container = ServiceContainer.build(settings, get_write_session)
    app.state.container = container

    sweep_task: asyncio.Task[None] | None = None
    if settings.sweeps_enabled:
        sweep_task = asyncio.create_task(
            container.sweeps().run_forever(settings.sweep_interval_seconds),
            name="sweep_loop",
        )

    yield

    logger.info("application_shutting_down", pending_tasks=len(container.tasks))
    if sweep_task is not None:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
    await container.close()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


def _error_body(error: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"success": False, "error": error, "message": message, **extra}


def _rate_limit_headers(request: Request) -> dict[str, str]:
    """Headers the gateway dependency computed before the route raised."""
    return dict(getattr(request.state, "rate_limit_headers", None) or {})


def _gateway_error_headers(exc: GatewayError) -> dict[str, str]:
    if isinstance(exc, RateLimitError):
        return {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(int(exc.reset_at.timestamp())),
        }
    if isinstance(exc, AuthenticationError):
        return {"WWW-Authenticate": "Bearer"}
    return {}


@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render every domain error as {success: false, error, message}."""
    if exc.http_status >= 500:
        metrics.record_error(type(exc).__name__, request.url.path)
    return JSONResponse(
        status_code=exc.http_status,
        content=_error_body(exc.error_code, exc.message),
        headers={**_rate_limit_headers(request), **_gateway_error_headers(exc)},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routes raise HTTPException(detail={"error", "message"}) via http_error()."""
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = _error_body(str(exc.detail["error"]), str(exc.detail.get("message", "")))
    else:
        content = _error_body("http_error", str(exc.detail))
    headers = {**_rate_limit_headers(request), **(exc.headers or {})}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers or None)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Body/query validation failures are 400 with field-level details."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors = []
    for error in errors:
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=400,
        content=_error_body(
            "validation_error", "Request validation failed", details=sanitized_errors
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=500, content=_error_body("internal_error", "Internal server error")
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# Last added runs outermost; the logging middleware below wraps all three
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(GatewayCorsMiddleware)
app.add_middleware(ProxyHeadersMiddleware)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing and echo X-Request-ID."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    method = request.method
    structlog.contextvars.clear_contextvars()

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=request.url.path)

        # Track in-progress requests
        in_progress = metrics.http_requests_in_progress.labels(endpoint=request.url.path, method=method)
        in_progress.inc()

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            # Label by route template to keep ids out of the metric labels
            route = request.scope.get("route")
            endpoint = getattr(route, "path", request.url.path)
            metrics.record_http_request(endpoint, method, response.status_code, duration)

            logger.info(
                "request_completed",
                method=method,
                path=request.url.path,
                status_code=response.status_code,
                duration_seconds=duration,
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(request.url.path, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")

            logger.error(
                "request_failed",
                method=method,
                path=request.url.path,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            in_progress.dec()


# Register routes
app.include_router(router)  # Satellite gateway API
app.include_router(admin_router)  # Admin API + diagnostics


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
