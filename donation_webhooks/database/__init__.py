"""Database package for the donation webhook service."""
from .connection import close_db, create_session_factory, get_session_factory, init_db
from .models import (
    Base,
    Campaign,
    Donation,
    DonationEvent,
    DonationStatus,
    Fund,
    Profile,
    Subscription,
    SubscriptionStatus,
)

__all__ = [
    "Base",
    "Campaign",
    "Donation",
    "DonationEvent",
    "DonationStatus",
    "Fund",
    "Profile",
    "Subscription",
    "SubscriptionStatus",
    "close_db",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
