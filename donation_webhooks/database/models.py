"""SQLAlchemy database models for donation reconciliation."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Money columns: two decimal places is enough for every supported currency.
MONEY = Numeric(12, 2)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class DonationStatus:
    """Donation lifecycle states."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubscriptionStatus:
    """Subscription lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Donation(Base):
    """
    Donation records table.

    One row per payment attempt. Created ``pending`` when a checkout is
    initiated and moved forward exclusively by provider callbacks.
    """

    __tablename__ = "donations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    donor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    campaign_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    fund_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="RUB")
    donation_type: Mapped[str] = mapped_column(String(20), nullable=False, default="one_time")
    recurring_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DonationStatus.PENDING, index=True
    )
    payment_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payment_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="donation_positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="donation_valid_status",
        ),
        CheckConstraint(
            "donation_type IN ('one_time', 'recurring')",
            name="donation_valid_type",
        ),
        Index("idx_donations_donor_status", "donor_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Donation(id={self.id}, donor_id={self.donor_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Campaign(Base):
    """Fundraising campaign with its running total."""

    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    donor_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Campaign(id={self.id}, current_amount={self.current_amount})>"


class Fund(Base):
    """Charitable fund with its running total."""

    __tablename__ = "funds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    total_raised: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    donor_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Fund(id={self.id}, total_raised={self.total_raised})>"


class Profile(Base):
    """Donor profile: lifetime total plus the contacts used for notifications."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    telegram_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    total_donated: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, total_donated={self.total_donated})>"


class Subscription(Base):
    """
    Recurring donation agreement.

    ``recurring_id`` is the provider-side identifier of the recurring charge;
    renewal callbacks are matched on it.
    """

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tier: Mapped[str | None] = mapped_column(String(50), nullable=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="RUB")
    billing_frequency: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.ACTIVE, index=True
    )
    next_billing_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_payment_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_payment_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_payment_failed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_payment_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_payment_failure_transaction_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True
    )
    recurring_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'paused', 'cancelled', 'expired')",
            name="subscription_valid_status",
        ),
        CheckConstraint(
            "billing_frequency IN ('monthly', 'yearly')",
            name="subscription_valid_frequency",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, status={self.status}, "
            f"next_billing_date={self.next_billing_date})>"
        )


class DonationEvent(Base):
    """
    Donation audit trail table.

    One immutable row per genuine state change, written in the same
    transaction as the change itself.
    """

    __tablename__ = "donation_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    donation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    def __repr__(self) -> str:
        return (
            f"<DonationEvent(id={self.id}, donation_id={self.donation_id}, "
            f"type={self.event_type})>"
        )
