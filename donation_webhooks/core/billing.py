"""
Recurring subscription billing.

A successful recurring charge advances the subscription's billing date by
one calendar period and materializes the charge as a completed donation, in
a single conditional write keyed on the provider transaction id. A failed
charge only stamps the failure, once per transaction id; the billing date
stays where it was.

A first charge, referenced by subscription id in the invoice, activates the
subscription instead; the payment itself is recorded on the donation the
invoice names.
"""
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple

import structlog
from dateutil.relativedelta import relativedelta

from donation_webhooks.core.aggregates import AggregateUpdater
from donation_webhooks.core.events import PaymentEvent, PaymentStatus, utcnow
from donation_webhooks.database.models import Subscription, SubscriptionStatus
from donation_webhooks.database.store import DonationStore
from donation_webhooks.integrations.notifications import (
    Notification,
    NotificationDispatcher,
    NotificationKind,
)
from donation_webhooks.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_FAILURE_REASON = "Payment failed"

BILLING_PERIODS = {
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(years=1),
}

# A first charge may activate a paused subscription; cancelled and expired
# ones are never revived.
ACTIVATABLE_STATUSES: Tuple[str, ...] = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED)


class BillingOutcome(str, Enum):
    """Result of a recurring billing callback."""

    ADVANCED = "advanced"
    DUPLICATE = "duplicate"
    FAILED_RECORDED = "failed_recorded"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"


def next_billing_date(charged_at: datetime, frequency: str) -> datetime:
    """
    Billing date one calendar period after ``charged_at``.

    Month ends clamp: Jan 31 + 1 month is Feb 28 (or 29).
    """
    try:
        return charged_at + BILLING_PERIODS[frequency]
    except KeyError:
        raise ValueError(f"Unsupported billing frequency: {frequency}") from None


class BillingAdvancer:
    """Applies recurring-charge callbacks to subscriptions."""

    def __init__(
        self,
        store: DonationStore,
        aggregates: Optional[AggregateUpdater] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.aggregates = aggregates or AggregateUpdater(store, dispatcher)
        self.clock = clock

    async def _resolve(self, event: PaymentEvent) -> Tuple[Optional[Subscription], bool]:
        """Find the subscription and whether this is a first (activating) charge."""
        if event.subscription_id:
            subscription = await self.store.get_subscription(event.subscription_id)
            return subscription, True
        if event.recurring_id:
            return await self.store.find_active_subscription(event.recurring_id), False
        return None, False

    async def apply(self, event: PaymentEvent) -> BillingOutcome:
        """
        Apply a recurring charge outcome.

        Args:
            event: Normalized event carrying a recurring id or subscription id

        Returns:
            BillingOutcome: What happened to the subscription
        """
        if event.status not in (PaymentStatus.SUCCEEDED, PaymentStatus.DECLINED):
            return BillingOutcome.IGNORED

        subscription, first_charge = await self._resolve(event)
        if subscription is None:
            logger.warning(
                "subscription_not_found",
                recurring_id=event.recurring_id,
                subscription_id=event.subscription_id,
                transaction_id=event.transaction_id,
            )
            metrics.record_billing_event(BillingOutcome.NOT_FOUND.value)
            return BillingOutcome.NOT_FOUND

        if event.status is PaymentStatus.SUCCEEDED:
            outcome = await self._charge_succeeded(event, subscription, first_charge)
        else:
            outcome = await self._charge_failed(event, subscription)

        metrics.record_billing_event(outcome.value)
        return outcome

    async def _charge_succeeded(
        self, event: PaymentEvent, subscription: Subscription, first_charge: bool
    ) -> BillingOutcome:
        charged_at = self.clock()
        next_date = next_billing_date(charged_at, subscription.billing_frequency)

        if first_charge:
            return await self._activate(event, subscription, charged_at, next_date)

        donation = await self.store.record_recurring_charge(
            subscription,
            transaction_id=event.transaction_id,
            provider=event.provider.value,
            charged_at=charged_at,
            next_billing_date=next_date,
        )
        if donation is None:
            logger.info(
                "subscription_charge_skipped",
                subscription_id=subscription.id,
                status=subscription.status,
                transaction_id=event.transaction_id,
            )
            return BillingOutcome.DUPLICATE

        logger.info(
            "subscription_advanced",
            subscription_id=subscription.id,
            donation_id=donation.id,
            next_billing_date=next_date.isoformat(),
            transaction_id=event.transaction_id,
        )

        await self.aggregates.apply(donation)
        self._notify(
            NotificationKind.SUBSCRIPTION_RENEWED,
            subscription,
            next_billing_date=next_date.date().isoformat(),
        )
        return BillingOutcome.ADVANCED

    async def _activate(
        self,
        event: PaymentEvent,
        subscription: Subscription,
        charged_at: datetime,
        next_date: datetime,
    ) -> BillingOutcome:
        activated = await self.store.activate_subscription(
            subscription.id,
            transaction_id=event.transaction_id,
            charged_at=charged_at,
            next_billing_date=next_date,
            eligible_statuses=ACTIVATABLE_STATUSES,
            recurring_id=event.recurring_id,
        )
        if not activated:
            logger.info(
                "subscription_activation_skipped",
                subscription_id=subscription.id,
                status=subscription.status,
                transaction_id=event.transaction_id,
            )
            return BillingOutcome.DUPLICATE

        logger.info(
            "subscription_activated",
            subscription_id=subscription.id,
            recurring_id=event.recurring_id or subscription.recurring_id,
            next_billing_date=next_date.isoformat(),
            transaction_id=event.transaction_id,
        )
        return BillingOutcome.ADVANCED

    async def _charge_failed(
        self, event: PaymentEvent, subscription: Subscription
    ) -> BillingOutcome:
        reason = event.failure_reason or DEFAULT_FAILURE_REASON
        recorded = await self.store.record_subscription_failure(
            subscription.id,
            transaction_id=event.transaction_id,
            failed_at=self.clock(),
            reason=reason,
        )
        if not recorded:
            logger.info(
                "subscription_failure_already_recorded",
                subscription_id=subscription.id,
                transaction_id=event.transaction_id,
            )
            return BillingOutcome.DUPLICATE

        logger.warning(
            "subscription_payment_failed",
            subscription_id=subscription.id,
            reason=reason,
            transaction_id=event.transaction_id,
        )
        self._notify(NotificationKind.SUBSCRIPTION_PAYMENT_FAILED, subscription, reason=reason)
        return BillingOutcome.FAILED_RECORDED

    def _notify(self, kind: NotificationKind, subscription: Subscription, **extra: str) -> None:
        if self.dispatcher is None:
            return
        self.dispatcher.dispatch(
            Notification(
                kind=kind,
                recipient_id=subscription.user_id,
                data={
                    "subscription_id": subscription.id,
                    "amount": subscription.amount,
                    "currency": subscription.currency,
                    **extra,
                },
            )
        )
