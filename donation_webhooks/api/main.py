"""
Main FastAPI application.

Serves the provider webhook endpoints plus health and Prometheus routes.
Every request gets an ``X-Request-ID`` (the caller's, when it sent one) that
is bound into the structlog context for the lifetime of the request.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from donation_webhooks import __version__
from donation_webhooks.config import Settings, get_settings
from donation_webhooks.database.connection import close_db, init_db
from donation_webhooks.monitoring.logging import setup_logging

from .routes import get_dispatcher, monitoring_router, webhook_router

setup_logging()
logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _warn_on_insecure_config(settings: Settings) -> None:
    if not settings.cloudpayments_verification_enabled:
        logger.warning(
            "cloudpayments_signature_verification_disabled",
            detail="CLOUDPAYMENTS_API_SECRET is unset; callbacks are accepted unauthenticated",
        )
    if settings.yookassa_secret_key is None:
        logger.error(
            "yookassa_secret_missing",
            detail="YOOKASSA_SECRET_KEY is unset; YooKassa callbacks will be answered with 500",
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup; drain notifications and dispose the engine on shutdown."""
    settings = get_settings()
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)
    _warn_on_insecure_config(settings)

    try:
        await init_db()
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise
    logger.info("database_initialized")

    yield

    logger.info("application_shutdown")
    # Pending notifications go out before the store they read from is closed
    try:
        await get_dispatcher().aclose()
    except Exception as e:
        logger.error("notification_dispatcher_shutdown_error", error=str(e))
    try:
        await close_db()
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))
    logger.info("application_stopped")


async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind request id, method and path into the log context and time the request."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    started = time.perf_counter()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.perf_counter() - started,
        )
        raise
    else:
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.perf_counter() - started,
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler. The body never carries exception details."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


def create_app() -> FastAPI:
    """Assemble the application."""
    settings = get_settings()
    application = FastAPI(
        title="Donation Webhook Reconciliation",
        description=(
            "Receives CloudPayments and YooKassa payment notifications and applies each "
            "one to donations, campaign/fund totals and subscriptions exactly once."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url=None,
    )
    application.middleware("http")(request_context_middleware)
    application.add_exception_handler(Exception, unhandled_exception_handler)
    application.include_router(webhook_router)
    application.include_router(monitoring_router)

    @application.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Service information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "webhooks": ["/webhooks/cloudpayments", "/webhooks/yookassa"],
            "health": "/health",
            "metrics": "/metrics",
        }

    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "donation_webhooks.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
