"""
Canonical payment event.

Every provider callback is normalized into a PaymentEvent before anything
touches storage. The status field is the tag: downstream code branches on
it and never on provider-specific payload shapes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class PaymentProvider(str, Enum):
    """Supported inbound webhook providers."""

    CLOUDPAYMENTS = "cloudpayments"
    YOOKASSA = "yookassa"


class PaymentStatus(str, Enum):
    """Resolved outcome of a provider callback."""

    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


class PaymentEvent(BaseModel):
    """
    Provider-independent view of a payment callback.

    ``correlation_key`` is the internal donation id. It may be absent for
    recurring charges, which are matched on ``recurring_id`` (or, for the
    first charge of a subscription, on ``subscription_id``) instead.
    """

    model_config = ConfigDict(frozen=True)

    provider: PaymentProvider
    event_type: str
    status: PaymentStatus
    transaction_id: Optional[str] = None
    correlation_key: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    recurring_id: Optional[str] = None
    subscription_id: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def is_actionable(self) -> bool:
        """Unknown events are acknowledged and ignored."""
        return self.status is not PaymentStatus.UNKNOWN

    @property
    def touches_subscription(self) -> bool:
        return bool(self.recurring_id or self.subscription_id)


def utcnow() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(timezone.utc)
