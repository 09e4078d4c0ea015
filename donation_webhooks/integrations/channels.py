"""
Outbound notification channels.

Each channel decides whether it is configured and whether it can reach a
given recipient, then performs one HTTP call. Channels raise ChannelError on
any failure; isolating those failures is the dispatcher's job.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog

from donation_webhooks.config import Settings

logger = structlog.get_logger(__name__)


class ChannelError(Exception):
    """Raised when a channel fails to deliver a message."""

    pass


@dataclass(frozen=True)
class Recipient:
    """Contact details of a notification recipient."""

    profile_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    telegram_id: Optional[str] = None


@dataclass(frozen=True)
class RenderedMessage:
    """A notification rendered for delivery."""

    subject: str
    text: str
    html: str


class NotificationChannel(ABC):
    """Base class for delivery channels."""

    name: str = "channel"

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials for this channel are present."""

    @abstractmethod
    def accepts(self, recipient: Recipient) -> bool:
        """Whether the recipient has an address on this channel."""

    @abstractmethod
    async def send(
        self, client: httpx.AsyncClient, recipient: Recipient, message: RenderedMessage
    ) -> None:
        """Deliver ``message``. Raises ChannelError on failure."""


class TelegramChannel(NotificationChannel):
    """Telegram Bot API ``sendMessage``."""

    name = "telegram"

    def __init__(self, settings: Settings):
        self.bot_token = settings.telegram_bot_token
        self.api_base = settings.telegram_api_base.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    def accepts(self, recipient: Recipient) -> bool:
        return bool(recipient.telegram_id)

    async def send(
        self, client: httpx.AsyncClient, recipient: Recipient, message: RenderedMessage
    ) -> None:
        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        try:
            response = await client.post(
                url,
                json={"chat_id": recipient.telegram_id, "text": message.text},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChannelError(f"Telegram delivery failed: {e}") from e

        if not body.get("ok", False):
            raise ChannelError(f"Telegram rejected message: {body.get('description')}")


class EmailChannel(NotificationChannel):
    """Transactional email via Resend or SendGrid."""

    name = "email"

    ENDPOINTS: Dict[str, str] = {
        "resend": "https://api.resend.com/emails",
        "sendgrid": "https://api.sendgrid.com/v3/mail/send",
    }

    def __init__(self, settings: Settings):
        self.service = settings.email_service
        self.api_key = settings.email_api_key
        self.sender = settings.email_from

    @property
    def is_configured(self) -> bool:
        if not self.api_key:
            return False
        if self.service not in self.ENDPOINTS:
            logger.warning("email_service_unknown", service=self.service)
            return False
        return True

    def accepts(self, recipient: Recipient) -> bool:
        return bool(recipient.email)

    def _payload(self, recipient: Recipient, message: RenderedMessage) -> Dict[str, Any]:
        if self.service == "sendgrid":
            return {
                "personalizations": [
                    {"to": [{"email": recipient.email}], "subject": message.subject}
                ],
                "from": {"email": self.sender},
                "content": [{"type": "text/html", "value": message.html}],
            }
        return {
            "from": self.sender,
            "to": [recipient.email],
            "subject": message.subject,
            "html": message.html,
        }

    async def send(
        self, client: httpx.AsyncClient, recipient: Recipient, message: RenderedMessage
    ) -> None:
        try:
            response = await client.post(
                self.ENDPOINTS[self.service],
                json=self._payload(recipient, message),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChannelError(f"Email delivery via {self.service} failed: {e}") from e


def default_channels(settings: Settings) -> list[NotificationChannel]:
    """Channels enabled for a deployment, in delivery order."""
    return [TelegramChannel(settings), EmailChannel(settings)]
