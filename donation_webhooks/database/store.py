"""
Storage collaborator for the reconciliation core.

Every method runs in its own short transaction and exposes only two kinds
of write: conditional updates (the caller inspects whether a row was
affected) and atomic ``col = col + n`` increments. Nothing here reads a
value and writes it back.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from donation_webhooks.core.exceptions import ProcessingError
from donation_webhooks.database.connection import get_session_factory
from donation_webhooks.database.models import (
    Campaign,
    Donation,
    DonationEvent,
    DonationStatus,
    Fund,
    Profile,
    Subscription,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)


class DonationStore:
    """Persistent store for donations, aggregates and subscriptions."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        """
        Initialize the store.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
        """
        self._session_factory = session_factory or get_session_factory()

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("store_operation_failed", operation=operation, error=str(e))
            raise ProcessingError(f"Storage operation '{operation}' failed: {e}") from e

    # ------------------------------------------------------------------
    # Donations
    # ------------------------------------------------------------------

    async def get_donation(self, donation_id: str) -> Optional[Donation]:
        """Fetch a donation by id, or None."""
        async with self._transaction("get_donation") as session:
            return await session.get(Donation, donation_id)

    async def transition_donation(
        self,
        donation_id: str,
        expected_status: str,
        target_status: str,
        values: Optional[Dict[str, Any]] = None,
        audit: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Compare-and-set a donation's status.

        Issues ``UPDATE donations SET status=:target ... WHERE id=:id AND
        status=:expected``. When a row is affected, an audit event is written
        in the same transaction.

        Args:
            donation_id: Donation identifier
            expected_status: Status the donation must currently have
            target_status: Status to move to
            values: Extra columns to set alongside the status
            audit: Audit payload (provider, transaction_id, event_data)

        Returns:
            bool: True if this call performed the transition
        """
        async with self._transaction("transition_donation") as session:
            stmt = (
                update(Donation)
                .where(Donation.id == donation_id, Donation.status == expected_status)
                .values(status=target_status, **(values or {}))
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return False

            audit = audit or {}
            session.add(
                DonationEvent(
                    donation_id=donation_id,
                    event_type=f"donation.{target_status}",
                    provider=audit.get("provider"),
                    transaction_id=audit.get("transaction_id"),
                    event_data=audit.get("event_data") or {},
                )
            )
            return True

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def _increment(
        self,
        operation: str,
        stmt: Any,
    ) -> bool:
        async with self._transaction(operation) as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            return result.rowcount == 1

    async def increment_donor_total(self, donor_id: str, amount: Decimal) -> bool:
        """Atomically add ``amount`` to a donor's lifetime total."""
        return await self._increment(
            "increment_donor_total",
            update(Profile)
            .where(Profile.id == donor_id)
            .values(total_donated=Profile.total_donated + amount),
        )

    async def increment_campaign_amount(self, campaign_id: str, amount: Decimal) -> bool:
        """Atomically add ``amount`` to a campaign's current amount."""
        return await self._increment(
            "increment_campaign_amount",
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(
                current_amount=Campaign.current_amount + amount,
                donor_count=Campaign.donor_count + 1,
            ),
        )

    async def increment_fund_amount(self, fund_id: str, amount: Decimal) -> bool:
        """Atomically add ``amount`` to a fund's total raised."""
        return await self._increment(
            "increment_fund_amount",
            update(Fund)
            .where(Fund.id == fund_id)
            .values(
                total_raised=Fund.total_raised + amount,
                donor_count=Fund.donor_count + 1,
            ),
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def find_active_subscription(self, recurring_id: str) -> Optional[Subscription]:
        """Find the active subscription bound to a provider recurring id."""
        async with self._transaction("find_active_subscription") as session:
            result = await session.execute(
                select(Subscription)
                .where(
                    Subscription.recurring_id == recurring_id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Fetch a subscription by id, or None."""
        async with self._transaction("get_subscription") as session:
            return await session.get(Subscription, subscription_id)

    @staticmethod
    def _advance_statement(
        subscription_id: str,
        eligible_statuses: Sequence[str],
        transaction_id: str,
        values: Dict[str, Any],
    ) -> Any:
        return (
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status.in_(list(eligible_statuses)),
                or_(
                    Subscription.last_payment_transaction_id.is_(None),
                    Subscription.last_payment_transaction_id != transaction_id,
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def activate_subscription(
        self,
        subscription_id: str,
        *,
        transaction_id: str,
        charged_at: datetime,
        next_billing_date: datetime,
        eligible_statuses: Sequence[str],
        recurring_id: Optional[str] = None,
    ) -> bool:
        """
        Activate a subscription on its first successful charge.

        Same transaction-id guard as a recurring charge. The provider's
        recurring id is stored when given; an existing one is kept otherwise.

        Returns:
            bool: True if this call activated the subscription
        """
        values: Dict[str, Any] = {
            "status": SubscriptionStatus.ACTIVE,
            "next_billing_date": next_billing_date,
            "last_payment_date": charged_at,
            "last_payment_transaction_id": transaction_id,
        }
        if recurring_id:
            values["recurring_id"] = recurring_id

        async with self._transaction("activate_subscription") as session:
            result = await session.execute(
                self._advance_statement(
                    subscription_id, eligible_statuses, transaction_id, values
                )
            )
            return result.rowcount == 1

    async def record_recurring_charge(
        self,
        subscription: Subscription,
        *,
        transaction_id: str,
        provider: str,
        charged_at: datetime,
        next_billing_date: datetime,
    ) -> Optional[Donation]:
        """
        Advance a subscription and materialize the charge as a donation.

        The advance is conditional on the subscription still being active and
        on ``transaction_id`` not being the last one recorded, so a replayed
        charge affects no row and creates nothing.

        Returns:
            Optional[Donation]: The created donation, or None if the charge
            was already recorded (or the subscription is no longer active)
        """
        async with self._transaction("record_recurring_charge") as session:
            result = await session.execute(
                self._advance_statement(
                    subscription.id,
                    (SubscriptionStatus.ACTIVE,),
                    transaction_id,
                    {
                        "next_billing_date": next_billing_date,
                        "last_payment_date": charged_at,
                        "last_payment_transaction_id": transaction_id,
                    },
                )
            )
            if result.rowcount != 1:
                return None

            donation = Donation(
                donor_id=subscription.user_id,
                subscription_id=subscription.id,
                amount=subscription.amount,
                currency=subscription.currency,
                donation_type="recurring",
                recurring_frequency=subscription.billing_frequency,
                status=DonationStatus.COMPLETED,
                payment_provider=provider,
                payment_transaction_id=transaction_id,
                is_anonymous=False,
                paid_at=charged_at,
            )
            session.add(donation)
            await session.flush()
            session.add(
                DonationEvent(
                    donation_id=donation.id,
                    event_type="donation.recurring_charge",
                    provider=provider,
                    transaction_id=transaction_id,
                    event_data={
                        "subscription_id": subscription.id,
                        "next_billing_date": next_billing_date.isoformat(),
                    },
                )
            )
            return donation

    async def record_subscription_failure(
        self,
        subscription_id: str,
        *,
        transaction_id: str,
        failed_at: datetime,
        reason: str,
    ) -> bool:
        """
        Stamp a declined charge on a subscription. Billing date is untouched.

        Conditional on ``transaction_id`` not being the last failure recorded,
        so a redelivered decline affects no row.

        Returns:
            bool: True if this call recorded the failure
        """
        async with self._transaction("record_subscription_failure") as session:
            result = await session.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    or_(
                        Subscription.last_payment_failure_transaction_id.is_(None),
                        Subscription.last_payment_failure_transaction_id != transaction_id,
                    ),
                )
                .values(
                    last_payment_failed_at=failed_at,
                    last_payment_failure_reason=reason,
                    last_payment_failure_transaction_id=transaction_id,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # Notification lookups
    # ------------------------------------------------------------------

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        """Fetch a donor profile by id, or None."""
        async with self._transaction("get_profile") as session:
            return await session.get(Profile, profile_id)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Fetch a campaign by id, or None."""
        async with self._transaction("get_campaign") as session:
            return await session.get(Campaign, campaign_id)

    async def get_fund(self, fund_id: str) -> Optional[Fund]:
        """Fetch a fund by id, or None."""
        async with self._transaction("get_fund") as session:
            return await session.get(Fund, fund_id)
