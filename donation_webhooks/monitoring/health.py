"""
Health reporting for readiness/liveness probes.

Readiness requires the database and a usable YooKassa secret. Notification
channels and CloudPayments verification are reported but never make the
service unready: webhooks are still applied without them.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from donation_webhooks.config import Settings, get_settings
from donation_webhooks.database.connection import get_session_factory
from donation_webhooks.integrations.channels import default_channels

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
DEGRADED = "degraded"


class HealthCheckError(Exception):
    """Raised when a required dependency is unavailable."""

    pass


class HealthCheck:
    """Runs dependency checks and folds them into one status."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Round-trip ``SELECT 1`` through a fresh session.

        Raises:
            HealthCheckError: If the database cannot be reached
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {"status": HEALTHY, "service": "database"}

    async def check_webhook_secrets(self) -> Dict[str, Any]:
        """
        Report provider secret configuration.

        A missing YooKassa secret makes that endpoint answer 500 to every
        callback. A missing CloudPayments secret leaves that endpoint
        accepting unsigned callbacks.
        """
        yookassa_ready = self.settings.yookassa_secret_key is not None
        if not yookassa_ready:
            raise HealthCheckError("YOOKASSA_SECRET_KEY is not configured")
        return {
            "status": HEALTHY,
            "service": "webhook_secrets",
            "cloudpayments_verification_enabled": (
                self.settings.cloudpayments_verification_enabled
            ),
        }

    async def check_notification_channels(self) -> Dict[str, Any]:
        """Which delivery channels have credentials. Informational only."""
        configured = {
            channel.name: channel.is_configured for channel in default_channels(self.settings)
        }
        return {
            "status": HEALTHY if any(configured.values()) else DEGRADED,
            "service": "notifications",
            "channels": configured,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every check.

        Returns:
            Dict[str, Any]: ``status`` is unhealthy if a required check failed
        """
        required: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            "database": self.check_database,
            "webhook_secrets": self.check_webhook_secrets,
        }
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in required.items():
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": UNHEALTHY, "service": name, "error": str(e)}
                all_healthy = False

        checks["notifications"] = await self.check_notification_channels()

        return {
            "status": HEALTHY if all_healthy else UNHEALTHY,
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Process is up. Touches no dependency."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Ready to accept webhooks only when required checks pass."""
        return await self.check_all()
