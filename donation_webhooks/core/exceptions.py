"""
Exception classes for webhook reconciliation.

Every exception carries:
- Error code (for logs and dashboards)
- User message (safe to return to the calling provider)
- HTTP status code (for the webhook response)

Errors raised before a donation is touched are returned to the provider.
ProcessingError is never surfaced: once a callback is authenticated and
parsed it is acknowledged with 200 regardless.
"""

from typing import Any, Dict, Optional


class WebhookError(Exception):
    """Base exception for all webhook errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        user_message: Optional[str] = None,
        http_status: int = 500,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.user_message = user_message or "Webhook processing failed"
        self.http_status = http_status
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for webhook responses."""
        return {"error": self.user_message}


class ValidationError(WebhookError):
    """
    Malformed body or missing identifying fields.

    The provider should not retry: the same payload can never succeed.
    """

    def __init__(self, message: str, user_message: str = "Invalid request format", **kwargs: Any):
        super().__init__(
            message=message,
            error_code="invalid_payload",
            user_message=user_message,
            http_status=400,
            **kwargs,
        )


class AuthenticationError(WebhookError):
    """Signature missing or mismatched."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="invalid_signature",
            user_message="Invalid signature",
            http_status=401,
            **kwargs,
        )


class ConfigurationError(WebhookError):
    """
    A mandatory provider secret is absent.

    Kept distinct from AuthenticationError so operators can tell
    "not authenticated" from "not deployable".
    """

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="webhook_misconfigured",
            user_message="Server configuration error",
            http_status=500,
            **kwargs,
        )


class ProcessingError(WebhookError):
    """
    Storage or downstream failure after authentication.

    Never mapped to a response: the processor logs it and acknowledges the
    callback with 200 and status ``error``. The ``http_status`` of 200 only
    records that acknowledgement.
    """

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="processing_failed",
            http_status=200,
            **kwargs,
        )
