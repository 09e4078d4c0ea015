"""
Structured logging configuration.

Logs are JSON lines emitted through structlog. Webhook handling binds the
provider and transaction id into contextvars so every line written while a
callback is processed, from any module, carries them. Values under
credential-like keys are masked before rendering.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from donation_webhooks.config import get_settings

REDACTED = "***"

SENSITIVE_KEYS = frozenset(
    {
        "signature",
        "secret",
        "api_key",
        "token",
        "authorization",
        "x-content-hmac",
        "content-hmac",
        "x-yookassa-signature",
    }
)


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Stamp every event with the service name and environment.

    Args:
        logger: Wrapped logger (unused)
        method_name: Log method name (unused)
        event_dict: Event dictionary being rendered

    Returns:
        dict: The event with ``app_name`` and ``app_env`` added
    """
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def redact_sensitive(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Mask signatures, secrets and tokens, including inside a ``headers`` dict.

    Keys are matched case-insensitively against SENSITIVE_KEYS.

    Args:
        logger: Wrapped logger (unused)
        method_name: Log method name (unused)
        event_dict: Event dictionary being rendered

    Returns:
        dict: The event with sensitive values replaced by REDACTED
    """
    for key in list(event_dict):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
    headers = event_dict.get("headers")
    if isinstance(headers, dict):
        event_dict["headers"] = {
            k: (REDACTED if k.lower() in SENSITIVE_KEYS else v) for k, v in headers.items()
        }
    return event_dict


def bind_webhook_context(provider: str, transaction_id: Optional[str] = None) -> None:
    """
    Attach webhook identifiers to all log lines for the current request.

    Args:
        provider: Provider name, e.g. ``cloudpayments``
        transaction_id: Provider transaction id, once the payload is parsed
    """
    structlog.contextvars.bind_contextvars(provider=provider)
    if transaction_id is not None:
        structlog.contextvars.bind_contextvars(transaction_id=transaction_id)


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root handler for JSON output.

    Safe to call more than once: existing root handlers are replaced.
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            redact_sensitive,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    # Outbound notification calls and SQL echo are noisy at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        cloudpayments_verification=settings.cloudpayments_verification_enabled,
    )
