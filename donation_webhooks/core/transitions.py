"""
Idempotent donation transitions.

Legal moves are pending -> completed, pending -> failed and
completed -> refunded. Each is a single compare-and-set write; whichever
delivery affects the row owns the side effects, every other delivery of the
same callback sees zero rows and is reported as a duplicate.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from donation_webhooks.core.aggregates import AggregateUpdater
from donation_webhooks.core.events import PaymentEvent, PaymentStatus, utcnow
from donation_webhooks.database.models import DonationStatus
from donation_webhooks.database.store import DonationStore
from donation_webhooks.integrations.notifications import (
    Notification,
    NotificationDispatcher,
    NotificationKind,
)
from donation_webhooks.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class TransitionOutcome(str, Enum):
    """Result of applying a payment event to a donation."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"


@dataclass(frozen=True)
class _Move:
    expected: str
    target: str


MOVES: Dict[PaymentStatus, _Move] = {
    PaymentStatus.SUCCEEDED: _Move(DonationStatus.PENDING, DonationStatus.COMPLETED),
    PaymentStatus.DECLINED: _Move(DonationStatus.PENDING, DonationStatus.FAILED),
    PaymentStatus.REFUNDED: _Move(DonationStatus.COMPLETED, DonationStatus.REFUNDED),
}


class TransitionEngine:
    """Applies normalized payment events to donation records exactly once."""

    def __init__(
        self,
        store: DonationStore,
        aggregates: Optional[AggregateUpdater] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the engine.

        Args:
            store: Storage collaborator
            aggregates: Fan-out updater run after a donation completes
            dispatcher: Notification dispatcher
            clock: Source of the current time
        """
        self.store = store
        self.dispatcher = dispatcher
        self.aggregates = aggregates or AggregateUpdater(store, dispatcher)
        self.clock = clock

    def _values_for(self, event: PaymentEvent) -> Dict[str, Any]:
        now = self.clock()
        if event.status is PaymentStatus.SUCCEEDED:
            return {
                "payment_provider": event.provider.value,
                "payment_transaction_id": event.transaction_id,
                "paid_at": now,
            }
        if event.status is PaymentStatus.DECLINED:
            return {
                "payment_provider": event.provider.value,
                "payment_transaction_id": event.transaction_id,
                "failure_reason": event.failure_reason or "Payment declined",
            }
        return {"refunded_at": now}

    async def apply(self, event: PaymentEvent) -> TransitionOutcome:
        """
        Apply ``event`` to the donation named by its correlation key.

        Args:
            event: Normalized payment event

        Returns:
            TransitionOutcome: What happened to the donation
        """
        move = MOVES.get(event.status)
        if move is None or event.correlation_key is None:
            return TransitionOutcome.IGNORED

        donation_id = event.correlation_key
        applied = await self.store.transition_donation(
            donation_id,
            expected_status=move.expected,
            target_status=move.target,
            values=self._values_for(event),
            audit={
                "provider": event.provider.value,
                "transaction_id": event.transaction_id,
                "event_data": event.model_dump(mode="json"),
            },
        )

        if not applied:
            return await self._classify_noop(event, move)

        metrics.record_transition(move.target)
        logger.info(
            "donation_transitioned",
            donation_id=donation_id,
            from_status=move.expected,
            to_status=move.target,
            provider=event.provider.value,
            transaction_id=event.transaction_id,
        )

        if event.status is PaymentStatus.SUCCEEDED:
            await self._on_completed(event)
        elif event.status is PaymentStatus.REFUNDED:
            logger.info(
                "donation_refunded_aggregates_unchanged",
                donation_id=donation_id,
                transaction_id=event.transaction_id,
            )
        return TransitionOutcome.APPLIED

    async def _classify_noop(self, event: PaymentEvent, move: _Move) -> TransitionOutcome:
        donation = await self.store.get_donation(event.correlation_key)
        if donation is None:
            logger.warning(
                "donation_not_found",
                donation_id=event.correlation_key,
                provider=event.provider.value,
                transaction_id=event.transaction_id,
            )
            return TransitionOutcome.NOT_FOUND

        logger.info(
            "donation_transition_skipped",
            donation_id=donation.id,
            current_status=donation.status,
            requested_status=move.target,
            transaction_id=event.transaction_id,
        )
        return TransitionOutcome.DUPLICATE

    async def _on_completed(self, event: PaymentEvent) -> None:
        # The status change is committed; nothing below may undo it.
        try:
            donation = await self.store.get_donation(event.correlation_key)
        except Exception as e:
            logger.error(
                "completed_donation_reload_failed",
                donation_id=event.correlation_key,
                error=str(e),
            )
            return
        if donation is None:
            return

        if event.amount is not None and event.amount != donation.amount:
            logger.warning(
                "donation_amount_mismatch",
                donation_id=donation.id,
                expected=str(donation.amount),
                reported=str(event.amount),
            )

        await self.aggregates.apply(donation)

        if self.dispatcher is not None:
            self.dispatcher.dispatch(
                Notification(
                    kind=NotificationKind.DONATION_CONFIRMED,
                    recipient_id=donation.donor_id,
                    data={
                        "donation_id": donation.id,
                        "amount": donation.amount,
                        "currency": donation.currency,
                        "campaign_id": donation.campaign_id,
                        "fund_id": donation.fund_id,
                    },
                )
            )
