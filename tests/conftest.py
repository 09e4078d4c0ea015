"""
Pytest configuration and fixtures.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from donation_webhooks.api.main import app
from donation_webhooks.api.routes import get_health_check, get_processor
from donation_webhooks.config import Settings
from donation_webhooks.core.billing import BillingAdvancer
from donation_webhooks.core.processor import WebhookProcessor
from donation_webhooks.core.signatures import SignatureVerifier, compute_signature
from donation_webhooks.core.transitions import TransitionEngine
from donation_webhooks.database.connection import create_session_factory
from donation_webhooks.database.models import (
    Base,
    Campaign,
    Donation,
    DonationStatus,
    Fund,
    Profile,
    Subscription,
    SubscriptionStatus,
)
from donation_webhooks.database.store import DonationStore
from donation_webhooks.integrations.notifications import NotificationDispatcher
from donation_webhooks.monitoring.health import HealthCheck

CLOUDPAYMENTS_SECRET = "cp_test_secret"
YOOKASSA_SECRET = "yk_test_secret"

FIXED_NOW = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)

DONOR_ID = "donor-1"
OWNER_ID = "owner-1"
CAMPAIGN_ID = "campaign-1"
FUND_ID = "fund-1"


def naive(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; compare on the wall-clock UTC value."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def fixed_clock() -> datetime:
    return FIXED_NOW


def signed(body: Any, secret: str) -> tuple[bytes, str]:
    """Serialize ``body`` and sign it the way the providers do."""
    raw = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
    return raw, compute_signature(secret, raw)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        cloudpayments_api_secret=CLOUDPAYMENTS_SECRET,
        yookassa_secret_key=YOOKASSA_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'donations.db'}",
        app_name="donation-webhooks-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """File-backed SQLite database, one per test."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> DonationStore:
    return DonationStore(session_factory)


@pytest_asyncio.fixture
async def dispatcher(
    store: DonationStore, test_settings: Settings
) -> AsyncGenerator[NotificationDispatcher, Any]:
    """Dispatcher with no channels; deliveries resolve and render only."""
    dispatcher = NotificationDispatcher(store=store, settings=test_settings, channels=[])
    yield dispatcher
    await dispatcher.aclose()


@pytest.fixture
def transitions(store: DonationStore, dispatcher: NotificationDispatcher) -> TransitionEngine:
    return TransitionEngine(store, dispatcher=dispatcher, clock=fixed_clock)


@pytest.fixture
def billing(store: DonationStore, dispatcher: NotificationDispatcher) -> BillingAdvancer:
    return BillingAdvancer(store, dispatcher=dispatcher, clock=fixed_clock)


@pytest.fixture
def processor(
    test_settings: Settings, transitions: TransitionEngine, billing: BillingAdvancer
) -> WebhookProcessor:
    return WebhookProcessor(SignatureVerifier(test_settings), transitions, billing)


@pytest.fixture
def seed(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[None]]:
    """Insert rows in one committed transaction."""

    async def _seed(*rows: Any) -> None:
        async with session_factory() as session:
            async with session.begin():
                session.add_all(rows)

    return _seed


@pytest_asyncio.fixture
async def campaign_donation(seed: Callable[..., Awaitable[None]]) -> Dict[str, Any]:
    """A pending 1500 RUB donation to a campaign, plus donor and owner profiles."""
    donation_id = "donation-1"
    await seed(
        Profile(id=DONOR_ID, display_name="Amina", email="amina@example.org",
                total_donated=Decimal("0")),
        Profile(id=OWNER_ID, display_name="Campaign Owner", telegram_id="4242",
                total_donated=Decimal("0")),
        Campaign(id=CAMPAIGN_ID, owner_id=OWNER_ID, title="Winter Relief",
                 current_amount=Decimal("0"), donor_count=0),
        Donation(id=donation_id, donor_id=DONOR_ID, campaign_id=CAMPAIGN_ID,
                 amount=Decimal("1500.00"), currency="RUB",
                 status=DonationStatus.PENDING),
    )
    return {"donation_id": donation_id, "amount": Decimal("1500.00")}


@pytest_asyncio.fixture
async def fund_donation(seed: Callable[..., Awaitable[None]]) -> Dict[str, Any]:
    """A pending donation to a fund."""
    donation_id = "donation-fund-1"
    await seed(
        Profile(id=DONOR_ID, display_name="Amina", total_donated=Decimal("0")),
        Fund(id=FUND_ID, name="Water Wells", total_raised=Decimal("0"), donor_count=0),
        Donation(id=donation_id, donor_id=DONOR_ID, fund_id=FUND_ID,
                 amount=Decimal("700.00"), currency="RUB",
                 status=DonationStatus.PENDING),
    )
    return {"donation_id": donation_id, "amount": Decimal("700.00")}


@pytest_asyncio.fixture
async def monthly_subscription(seed: Callable[..., Awaitable[None]]) -> Dict[str, Any]:
    """An active monthly subscription bound to recurring id ``rec-1``."""
    subscription_id = "subscription-1"
    await seed(
        Profile(id=DONOR_ID, display_name="Amina", total_donated=Decimal("0")),
        Subscription(
            id=subscription_id,
            user_id=DONOR_ID,
            amount=Decimal("500.00"),
            currency="RUB",
            billing_frequency="monthly",
            status=SubscriptionStatus.ACTIVE,
            next_billing_date=datetime(2024, 1, 31, tzinfo=timezone.utc),
            recurring_id="rec-1",
        ),
    )
    return {"subscription_id": subscription_id, "recurring_id": "rec-1"}


@pytest_asyncio.fixture
async def client(
    processor: WebhookProcessor,
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client wired to the per-test database."""
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_health_check] = lambda: HealthCheck(
        test_settings, session_factory
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
