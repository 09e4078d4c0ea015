"""
Aggregate fan-out after a donation completes.

Each increment runs in its own transaction and its own error boundary. A
failed step is logged with enough detail to reconcile it by hand and is
counted; it never aborts the remaining steps or the donation's status.
"""
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional

import structlog

from donation_webhooks.database.models import Donation
from donation_webhooks.database.store import DonationStore
from donation_webhooks.integrations.notifications import (
    Notification,
    NotificationDispatcher,
    NotificationKind,
)
from donation_webhooks.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class AggregateUpdater:
    """Applies a completed donation to donor, campaign and fund totals."""

    def __init__(
        self,
        store: DonationStore,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher

    async def _apply(
        self,
        aggregate: str,
        target_id: str,
        donation: Donation,
        increment: Callable[[str, Decimal], Awaitable[bool]],
    ) -> bool:
        try:
            updated = await increment(target_id, donation.amount)
        except Exception as e:
            metrics.record_aggregate_failure(aggregate)
            logger.error(
                "aggregate_update_failed",
                donation_id=donation.id,
                aggregate=aggregate,
                target_id=target_id,
                amount=str(donation.amount),
                error=str(e),
            )
            return False

        if not updated:
            metrics.record_aggregate_failure(aggregate)
            logger.warning(
                "aggregate_target_missing",
                donation_id=donation.id,
                aggregate=aggregate,
                target_id=target_id,
                amount=str(donation.amount),
            )
        return updated

    async def apply(self, donation: Donation) -> Dict[str, bool]:
        """
        Run every applicable increment for ``donation``.

        Args:
            donation: A donation that has just become completed

        Returns:
            Dict[str, bool]: Per-aggregate success flags
        """
        results: Dict[str, bool] = {}

        results["donor"] = await self._apply(
            "donor", donation.donor_id, donation, self.store.increment_donor_total
        )

        if donation.campaign_id:
            results["campaign"] = await self._apply(
                "campaign",
                donation.campaign_id,
                donation,
                self.store.increment_campaign_amount,
            )
            if results["campaign"] and self.dispatcher is not None:
                self.dispatcher.dispatch(
                    Notification(
                        kind=NotificationKind.CAMPAIGN_FUNDS_RECEIVED,
                        data={
                            "campaign_id": donation.campaign_id,
                            "donor_id": donation.donor_id,
                            "is_anonymous": donation.is_anonymous,
                            "amount": donation.amount,
                            "currency": donation.currency,
                        },
                    )
                )

        if donation.fund_id:
            results["fund"] = await self._apply(
                "fund", donation.fund_id, donation, self.store.increment_fund_amount
            )

        logger.info("aggregates_applied", donation_id=donation.id, results=results)
        return results
