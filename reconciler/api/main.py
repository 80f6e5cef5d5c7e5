"""
FastAPI application factory.

Wires structured logging, per-request trace ids, the error taxonomy to HTTP
mapping and the checkout, webhook, order, subscription and monitoring routers.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional, Sequence, Tuple, Type

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reconciler import __version__
from reconciler.config import Settings, get_settings
from reconciler.core.errors import (
    AuthenticationError,
    ConcurrentModification,
    ConflictError,
    GatewayNotConfigured,
    NotFound,
    ReconciliationError,
    UpstreamError,
    ValidationError,
)
from reconciler.database.connection import init_db
from reconciler.monitoring.logging import setup_logging

from .dependencies import Container, build_container
from .routes import (
    checkout_router,
    monitoring_router,
    order_router,
    subscription_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)

# First match wins; GatewayNotConfigured must precede its UpstreamError base
ERROR_STATUS: Sequence[Tuple[Type[ReconciliationError], int]] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ConcurrentModification, status.HTTP_409_CONFLICT),
    (GatewayNotConfigured, status.HTTP_503_SERVICE_UNAVAILABLE),
    (UpstreamError, status.HTTP_502_BAD_GATEWAY),
)

QUIET_PATHS = frozenset({"/metrics", "/health/live", "/health/ready"})


def status_for(error: ReconciliationError) -> int:
    """HTTP status code for a reconciliation error."""
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup when the app owns its engine; release resources on shutdown."""
    container: Container = app.state.container
    settings = container.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        gateway_configured=settings.gateway_configured,
        signatures_enforced=container.webhooks.enforce_signatures,
    )
    if not settings.webhook_secret:
        logger.warning("webhook_secret_missing", app_env=settings.app_env)

    if container.engine is not None:
        try:
            await init_db(container.engine)
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

    yield

    logger.info("application_shutdown")
    await container.close()


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    """Render taxonomy errors with their mapped status code."""
    code = status_for(exc)
    log = logger.error if code >= 500 else logger.info
    log("request_rejected", error=str(exc), error_type=type(exc).__name__, status_code=code)
    return JSONResponse(
        status_code=code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "InternalError", "detail": "An unexpected error occurred"},
    )


async def trace_requests(request: Request, call_next: Any) -> Response:
    """
    Bind a trace id to the logging context and echo it as X-Trace-ID.

    The trace id is ours; the gateway's X-Request-Id header belongs to the
    webhook signature and is left untouched.
    """
    trace_id = request.headers.get("X-Trace-ID") or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(trace_id=trace_id)
    started = time.perf_counter()
    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.clear_contextvars()

    response.headers["X-Trace-ID"] = trace_id
    log = logger.debug if request.url.path in QUIET_PATHS else logger.info
    log(
        "http_request",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


def create_app(
    settings: Optional[Settings] = None, container: Optional[Container] = None
) -> FastAPI:
    """
    Build the ASGI application.

    Every component, including signature enforcement and the database, is
    wired from ``settings``; a prebuilt ``container`` replaces that wiring.
    """
    if container is None:
        container = build_container(settings or get_settings())
    settings = container.settings

    app = FastAPI(
        title="Payment Reconciliation Service",
        description=(
            "Creates gateway checkouts for orders and subscriptions and reconciles "
            "their outcome from signed gateway notifications."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.middleware("http")(trace_requests)
    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    for router in (
        checkout_router,
        webhook_router,
        order_router,
        subscription_router,
        monitoring_router,
    ):
        app.include_router(router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "docs": "/docs",
        }

    return app


setup_logging()
app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "reconciler.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
