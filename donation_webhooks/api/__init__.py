"""FastAPI application and routes."""
from .main import app
from .schemas import ErrorResponse, HealthCheckResponse, WebhookResponse

__all__ = [
    "app",
    "ErrorResponse",
    "HealthCheckResponse",
    "WebhookResponse",
]
