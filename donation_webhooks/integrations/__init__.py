"""Outbound integrations: notification dispatch and delivery channels."""
from .channels import ChannelError, EmailChannel, Recipient, TelegramChannel
from .notifications import Notification, NotificationDispatcher, NotificationKind

__all__ = [
    "ChannelError",
    "EmailChannel",
    "Notification",
    "NotificationDispatcher",
    "NotificationKind",
    "Recipient",
    "TelegramChannel",
]
