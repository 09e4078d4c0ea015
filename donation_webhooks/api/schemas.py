"""
Pydantic schemas for API responses.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """Acknowledgement returned to a payment provider."""

    status: str = Field(..., description="Processing outcome")
    event_id: Optional[str] = Field(default=None, description="Provider transaction ID")
    code: Optional[int] = Field(
        default=None, description="Provider acknowledgement code (CloudPayments expects 0)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"status": "applied", "event_id": "2b7f5c1e-000f-5000-9000-1a2b3c4d5e6f"},
                {"status": "duplicate", "event_id": "2817436471", "code": 0},
            ]
        }
    }


class ErrorResponse(BaseModel):
    """Generic error body. Never carries internal details."""

    error: str = Field(..., description="Error message")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
