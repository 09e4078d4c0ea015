"""
Best-effort notification dispatch.

``dispatch`` schedules delivery on the running event loop and returns at
once; the webhook response never waits for, or fails because of, a
notification. Every delivery step catches its own errors, logs them and
counts them.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import httpx
import structlog

from donation_webhooks.config import Settings, get_settings
from donation_webhooks.integrations.channels import (
    NotificationChannel,
    Recipient,
    RenderedMessage,
    default_channels,
)
from donation_webhooks.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ANONYMOUS_DONOR = "Anonymous donor"


class NotificationKind(str, Enum):
    """Notifications emitted by the reconciliation core."""

    DONATION_CONFIRMED = "donation_confirmed"
    CAMPAIGN_FUNDS_RECEIVED = "campaign_funds_received"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"


@dataclass(frozen=True)
class Notification:
    """
    A notification request.

    ``recipient_id`` is a profile id. For CAMPAIGN_FUNDS_RECEIVED it may be
    left empty and ``data["campaign_id"]`` is used to find the owner.
    """

    kind: NotificationKind
    recipient_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


def _format_amount(amount: Any, currency: Optional[str]) -> str:
    if isinstance(amount, Decimal):
        amount = amount.quantize(Decimal("0.01"))
    return f"{amount} {currency or ''}".strip()


def render(notification: Notification, recipient: Recipient) -> RenderedMessage:
    """Render ``notification`` for ``recipient``."""
    data = notification.data
    name = recipient.display_name or "friend"
    amount = _format_amount(data.get("amount"), data.get("currency"))
    kind = notification.kind

    if kind is NotificationKind.DONATION_CONFIRMED:
        target = data.get("target_name") or "our charity programs"
        subject = "Thank you for your donation"
        text = f"Dear {name}, your donation of {amount} to {target} was received."
    elif kind is NotificationKind.CAMPAIGN_FUNDS_RECEIVED:
        donor = data.get("donor_name") or ANONYMOUS_DONOR
        title = data.get("campaign_title") or "your campaign"
        subject = f"New donation to {title}"
        text = f"{donor} donated {amount} to {title}."
    elif kind is NotificationKind.SUBSCRIPTION_RENEWED:
        next_date = data.get("next_billing_date") or "the next period"
        subject = "Your recurring donation was renewed"
        text = (
            f"{name}, your recurring donation of {amount} was charged. "
            f"Next charge: {next_date}."
        )
    else:
        reason = data.get("reason") or "Payment failed"
        subject = "Recurring donation payment failed"
        text = (
            f"{name}, we could not charge your recurring donation of {amount}: {reason}. "
            "Please check your payment method."
        )

    html = f"<h2>{subject}</h2><p>{text}</p>"
    return RenderedMessage(subject=subject, text=text, html=html)


class NotificationDispatcher:
    """
    Fire-and-forget notification delivery.

    Resolves recipient contacts through the store, renders the message and
    sends it through each configured channel that can reach the recipient.
    """

    def __init__(
        self,
        store: Any = None,
        settings: Optional[Settings] = None,
        channels: Optional[List[NotificationChannel]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            store: DonationStore used for contact lookups
            settings: Optional settings (uses global settings if not provided)
            channels: Optional channel list (Telegram and email by default)
            http_client: Optional shared HTTP client
        """
        self.settings = settings or get_settings()
        self.store = store
        self.channels = channels if channels is not None else default_channels(self.settings)
        self._client = http_client
        self._owns_client = http_client is None
        self._tasks: Set["asyncio.Task[None]"] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.notification_timeout_seconds
            )
        return self._client

    def dispatch(self, notification: Notification) -> None:
        """Schedule delivery and return immediately. Never raises."""
        try:
            task = asyncio.get_running_loop().create_task(self._deliver_safely(notification))
        except Exception as e:
            logger.error(
                "notification_schedule_failed",
                kind=notification.kind.value,
                error=str(e),
            )
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver_safely(self, notification: Notification) -> None:
        try:
            await self.deliver(notification)
        except Exception as e:
            logger.error(
                "notification_delivery_failed",
                kind=notification.kind.value,
                recipient_id=notification.recipient_id,
                error=str(e),
            )

    async def deliver(self, notification: Notification) -> int:
        """
        Deliver a notification through every reachable channel.

        Returns:
            int: Number of channels that accepted the message
        """
        recipient = await self._resolve_recipient(notification)
        if recipient is None:
            logger.info(
                "notification_recipient_unresolved",
                kind=notification.kind.value,
                recipient_id=notification.recipient_id,
            )
            return 0

        notification = await self._enrich(notification)
        message = render(notification, recipient)

        sent = 0
        for channel in self.channels:
            if not channel.is_configured or not channel.accepts(recipient):
                metrics.record_notification(channel.name, "skipped")
                continue
            try:
                await channel.send(self._http_client(), recipient, message)
            except Exception as e:
                metrics.record_notification(channel.name, "failed")
                logger.warning(
                    "notification_channel_failed",
                    channel=channel.name,
                    kind=notification.kind.value,
                    recipient_id=recipient.profile_id,
                    error=str(e),
                )
                continue
            metrics.record_notification(channel.name, "sent")
            sent += 1

        logger.info(
            "notification_delivered",
            kind=notification.kind.value,
            recipient_id=recipient.profile_id,
            channels_sent=sent,
        )
        return sent

    async def _resolve_recipient(self, notification: Notification) -> Optional[Recipient]:
        if self.store is None:
            return None

        profile_id = notification.recipient_id
        if profile_id is None and notification.kind is NotificationKind.CAMPAIGN_FUNDS_RECEIVED:
            campaign_id = notification.data.get("campaign_id")
            campaign = await self.store.get_campaign(campaign_id) if campaign_id else None
            profile_id = campaign.owner_id if campaign else None
        if profile_id is None:
            return None

        profile = await self.store.get_profile(profile_id)
        if profile is None:
            return None
        return Recipient(
            profile_id=profile.id,
            display_name=profile.display_name,
            email=profile.email,
            telegram_id=profile.telegram_id,
        )

    async def _enrich(self, notification: Notification) -> Notification:
        """Fill in display names the message templates need."""
        data = dict(notification.data)

        if notification.kind is NotificationKind.CAMPAIGN_FUNDS_RECEIVED:
            campaign_id = data.get("campaign_id")
            if campaign_id and "campaign_title" not in data:
                campaign = await self.store.get_campaign(campaign_id)
                data["campaign_title"] = campaign.title if campaign else None
            if data.get("is_anonymous"):
                data["donor_name"] = ANONYMOUS_DONOR
            elif data.get("donor_id") and "donor_name" not in data:
                donor = await self.store.get_profile(data["donor_id"])
                data["donor_name"] = donor.display_name if donor else None

        elif notification.kind is NotificationKind.DONATION_CONFIRMED:
            if "target_name" not in data:
                if data.get("campaign_id"):
                    campaign = await self.store.get_campaign(data["campaign_id"])
                    data["target_name"] = campaign.title if campaign else None
                elif data.get("fund_id"):
                    fund = await self.store.get_fund(data["fund_id"])
                    data["target_name"] = fund.name if fund else None

        return Notification(
            kind=notification.kind, recipient_id=notification.recipient_id, data=data
        )

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Drain outstanding deliveries and close the owned HTTP client."""
        await self.drain()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
