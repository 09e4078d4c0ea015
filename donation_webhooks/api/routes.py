"""
API routes for provider webhooks and monitoring.
"""
from functools import lru_cache
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from donation_webhooks.config import get_settings
from donation_webhooks.core.billing import BillingAdvancer
from donation_webhooks.core.events import PaymentProvider
from donation_webhooks.core.exceptions import WebhookError
from donation_webhooks.core.processor import WebhookProcessor
from donation_webhooks.core.signatures import SignatureVerifier
from donation_webhooks.core.transitions import TransitionEngine
from donation_webhooks.database.store import DonationStore
from donation_webhooks.integrations.notifications import NotificationDispatcher
from donation_webhooks.monitoring.health import HealthCheck

from .schemas import ErrorResponse, HealthCheckResponse, WebhookResponse

logger = structlog.get_logger(__name__)

# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

# CloudPayments treats any other code as a rejected notification
CLOUDPAYMENTS_ACK_CODE = 0

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Malformed payload"},
    401: {"model": ErrorResponse, "description": "Signature verification failed"},
    500: {"model": ErrorResponse, "description": "Webhook secret not configured"},
}


@lru_cache
def get_store() -> DonationStore:
    return DonationStore()


@lru_cache
def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(store=get_store())


@lru_cache
def get_processor() -> WebhookProcessor:
    """Build the webhook pipeline over the shared store and dispatcher."""
    store = get_store()
    dispatcher = get_dispatcher()
    return WebhookProcessor(
        verifier=SignatureVerifier(get_settings()),
        transitions=TransitionEngine(store, dispatcher=dispatcher),
        billing=BillingAdvancer(store, dispatcher=dispatcher),
    )


@lru_cache
def get_health_check() -> HealthCheck:
    return HealthCheck()


async def _handle_webhook(
    provider: PaymentProvider, request: Request, processor: WebhookProcessor
) -> Any:
    body = await request.body()
    try:
        result = await processor.handle(provider, body, request.headers)
    except WebhookError as e:
        return JSONResponse(status_code=e.http_status, content=e.to_dict())

    response = WebhookResponse(status=result.status, event_id=result.event_id)
    if provider is PaymentProvider.CLOUDPAYMENTS:
        response.code = CLOUDPAYMENTS_ACK_CODE
    return response.model_dump(exclude_none=True)


@webhook_router.post(
    "/cloudpayments",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
    summary="CloudPayments webhook endpoint",
    description="Pay/Fail/Refund/Recurrent notifications, HMAC-signed via Content-HMAC",
)
async def cloudpayments_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_processor),
) -> Any:
    """Handle a CloudPayments notification."""
    return await _handle_webhook(PaymentProvider.CLOUDPAYMENTS, request, processor)


@webhook_router.post(
    "/yookassa",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
    summary="YooKassa webhook endpoint",
    description="payment.succeeded / payment.canceled / refund.succeeded notifications",
)
async def yookassa_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_processor),
) -> Any:
    """Handle a YooKassa notification. The signature is mandatory."""
    return await _handle_webhook(PaymentProvider.YOOKASSA, request, processor)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Database, webhook secrets and notification channels",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Full report. Always 200; inspect ``status``."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    responses={503: {"model": HealthCheckResponse, "description": "Not ready"}},
    summary="Readiness probe",
    description="503 until the database answers and the YooKassa secret is set",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Any:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        logger.warning("readiness_check_failed", checks=result["checks"])
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Prometheus exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
