"""
Tests for the idempotent donation transition engine.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from donation_webhooks.core.events import PaymentEvent, PaymentProvider, PaymentStatus
from donation_webhooks.core.transitions import TransitionEngine, TransitionOutcome
from donation_webhooks.database.models import DonationEvent, DonationStatus
from donation_webhooks.database.store import DonationStore
from tests.conftest import CAMPAIGN_ID, DONOR_ID, FIXED_NOW, naive


def make_event(
    status: PaymentStatus,
    donation_id: Optional[str],
    transaction_id: str = "tx-1",
    **extra: Any,
) -> PaymentEvent:
    return PaymentEvent(
        provider=PaymentProvider.YOOKASSA,
        event_type=f"test.{status.value}",
        status=status,
        transaction_id=transaction_id,
        correlation_key=donation_id,
        **extra,
    )


async def count_events(
    session_factory: async_sessionmaker[AsyncSession], donation_id: str
) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(DonationEvent).where(
                DonationEvent.donation_id == donation_id
            )
        )
        return result.scalar_one()


class TestTransitionEngine:
    """Compare-and-set transitions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_completes_and_fans_out(
        self,
        transitions: TransitionEngine,
        store: DonationStore,
        campaign_donation: Dict[str, Any],
    ) -> None:
        donation_id = campaign_donation["donation_id"]

        outcome = await transitions.apply(make_event(PaymentStatus.SUCCEEDED, donation_id))

        assert outcome is TransitionOutcome.APPLIED
        donation = await store.get_donation(donation_id)
        assert donation.status == DonationStatus.COMPLETED
        assert donation.payment_provider == "yookassa"
        assert donation.payment_transaction_id == "tx-1"
        assert naive(donation.paid_at) == naive(FIXED_NOW)

        campaign = await store.get_campaign(CAMPAIGN_ID)
        assert campaign.current_amount == Decimal("1500.00")
        assert campaign.donor_count == 1
        donor = await store.get_profile(DONOR_ID)
        assert donor.total_donated == Decimal("1500.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replay_is_duplicate_without_second_increment(
        self,
        transitions: TransitionEngine,
        store: DonationStore,
        session_factory: async_sessionmaker[AsyncSession],
        campaign_donation: Dict[str, Any],
    ) -> None:
        donation_id = campaign_donation["donation_id"]
        event = make_event(PaymentStatus.SUCCEEDED, donation_id)

        first = await transitions.apply(event)
        second = await transitions.apply(event)

        assert first is TransitionOutcome.APPLIED
        assert second is TransitionOutcome.DUPLICATE
        campaign = await store.get_campaign(CAMPAIGN_ID)
        assert campaign.current_amount == Decimal("1500.00")
        assert campaign.donor_count == 1
        assert await count_events(session_factory, donation_id) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_decline_stores_reason_without_fan_out(
        self,
        transitions: TransitionEngine,
        store: DonationStore,
        campaign_donation: Dict[str, Any],
    ) -> None:
        donation_id = campaign_donation["donation_id"]

        outcome = await transitions.apply(
            make_event(PaymentStatus.DECLINED, donation_id, failure_reason="card_expired")
        )

        assert outcome is TransitionOutcome.APPLIED
        donation = await store.get_donation(donation_id)
        assert donation.status == DonationStatus.FAILED
        assert donation.failure_reason == "card_expired"
        campaign = await store.get_campaign(CAMPAIGN_ID)
        assert campaign.current_amount == Decimal("0")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_success_after_failure_is_noop(
        self,
        transitions: TransitionEngine,
        store: DonationStore,
        campaign_donation: Dict[str, Any],
    ) -> None:
        donation_id = campaign_donation["donation_id"]
        await transitions.apply(make_event(PaymentStatus.DECLINED, donation_id))

        outcome = await transitions.apply(
            make_event(PaymentStatus.SUCCEEDED, donation_id, transaction_id="tx-2")
        )

        assert outcome is TransitionOutcome.DUPLICATE
        donation = await store.get_donation(donation_id)
        assert donation.status == DonationStatus.FAILED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_only_from_completed(
        self,
        transitions: TransitionEngine,
        store: DonationStore,
        campaign_donation: Dict[str, Any],
    ) -> None:
        donation_id = campaign_donation["donation_id"]

        early = await transitions.apply(make_event(PaymentStatus.REFUNDED, donation_id))
        assert early is TransitionOutcome.DUPLICATE

        await transitions.apply(make_event(PaymentStatus.SUCCEEDED, donation_id))
        refunded = await transitions.apply(make_event(PaymentStatus.REFUNDED, donation_id))

        assert refunded is TransitionOutcome.APPLIED
        donation = await store.get_donation(donation_id)
        assert donation.status == DonationStatus.REFUNDED
        assert donation.refunded_at is not None
        # Aggregates are not decremented on refund
        campaign = await store.get_campaign(CAMPAIGN_ID)
        assert campaign.current_amount == Decimal("1500.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_donation_is_not_found(
        self, transitions: TransitionEngine, store: DonationStore
    ) -> None:
        outcome = await transitions.apply(make_event(PaymentStatus.SUCCEEDED, "missing"))
        assert outcome is TransitionOutcome.NOT_FOUND
        assert await store.get_donation("missing") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_status_is_ignored(self, transitions: TransitionEngine) -> None:
        outcome = await transitions.apply(make_event(PaymentStatus.UNKNOWN, "d-1"))
        assert outcome is TransitionOutcome.IGNORED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_audit_event_records_transaction(
        self,
        transitions: TransitionEngine,
        session_factory: async_sessionmaker[AsyncSession],
        campaign_donation: Dict[str, Any],
    ) -> None:
        donation_id = campaign_donation["donation_id"]
        await transitions.apply(make_event(PaymentStatus.SUCCEEDED, donation_id))

        async with session_factory() as session:
            result = await session.execute(
                select(DonationEvent).where(DonationEvent.donation_id == donation_id)
            )
            audit = result.scalar_one()

        assert audit.event_type == "donation.completed"
        assert audit.provider == "yookassa"
        assert audit.transaction_id == "tx-1"
        assert audit.event_data["status"] == "succeeded"
