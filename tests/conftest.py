"""
Test configuration and fixtures for the billing API
"""
import os

# Settings are read once at import time
os.environ["ENVIRONMENT"] = "test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_MONTHLY_PRICE_ID"] = "price_monthly"
os.environ["STRIPE_ANNUAL_PRICE_ID"] = "price_annual"
os.environ["BETA_CODES"] = '{"EARLYBIRD": "2099-01-01T00:00:00+00:00", "CLOSED": "2020-01-01T00:00:00+00:00"}'
os.environ.pop("DOPPLER_TOKEN", None)

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_billing_service, get_event_ingestor, get_processor
from app.core.permissions import get_current_user_profile
from app.core.security import require_superadmin
from app.domain.schemas import PaymentMethodSummary, PlanType, SubscriptionStatus
from app.main import app
from app.repositories import billing_event as billing_event_repo
from app.repositories import subscription as subscription_repo
from app.repositories import user as user_repo
from app.repositories.subscription import SubscriptionRepository
from app.services import access_cache
from app.services.billing import BillingService
from app.services.billing_events import BillingEventIngestor
from app.services.processor import StripeProcessor
from tests.fakes import FakeProcessor, FakeRedis, FakeSupabase

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Storage
# =============================================================================

@pytest.fixture
def db(monkeypatch) -> FakeSupabase:
    """Fresh in-memory database wired into every repository"""
    fake = FakeSupabase()
    for module in (subscription_repo, billing_event_repo, user_repo):
        monkeypatch.setattr(module, "get_db", lambda: fake)
    return fake


@pytest.fixture(autouse=True)
def redis_cache(monkeypatch) -> FakeRedis:
    """In-memory Redis for the access snapshot cache"""
    fake = FakeRedis()
    monkeypatch.setattr(access_cache, "_redis", fake)
    return fake


# =============================================================================
# Domain data
# =============================================================================

@pytest.fixture
def user(db) -> dict:
    return db.insert_row("users", {
        "id": "user-1",
        "email": "writer@example.com",
        "stripe_customer_id": None,
        "beta_access_code": None,
        "beta_expires_at": None,
    })


@pytest.fixture
def make_record(db, user):
    """Factory creating a subscription record for the test user"""
    counter = {"n": 0}

    def _make(
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: str | None = None,
        external_id: str | None = None,
        plan_type: PlanType = PlanType.MONTHLY,
        cancel_at_period_end: bool = False,
        last_event_at: datetime | None = None,
    ):
        counter["n"] += 1
        start = start or NOW - timedelta(days=10)
        end = end or start + timedelta(days=30)
        return SubscriptionRepository.create(
            user_id=user_id or user["id"],
            external_subscription_id=external_id or f"sub_{counter['n']}",
            plan_type=plan_type,
            status=status,
            current_period_start=start,
            current_period_end=end,
            price_id="price_annual" if plan_type == PlanType.ANNUAL else "price_monthly",
            cancel_at_period_end=cancel_at_period_end,
            payment_method=PaymentMethodSummary(brand="visa", last4="4242", exp_month=12, exp_year=2030),
            last_event_at=last_event_at,
        )

    return _make


# =============================================================================
# Services
# =============================================================================

@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def billing(processor, db) -> BillingService:
    return BillingService(processor=processor, clock=lambda: NOW)


@pytest.fixture
def ingestor(db) -> BillingEventIngestor:
    return BillingEventIngestor(notify=False)


# =============================================================================
# API
# =============================================================================

@pytest.fixture
def client(db, user, billing, ingestor):
    """Test client authenticated as the test user"""
    app.dependency_overrides[get_current_user_profile] = lambda: user_repo.UserRepository.get_by_id(user["id"])
    app.dependency_overrides[get_billing_service] = lambda: billing
    app.dependency_overrides[get_event_ingestor] = lambda: ingestor
    app.dependency_overrides[get_processor] = lambda: StripeProcessor(
        api_key="sk_test_123",
        webhook_secret="whsec_test_secret",
    )
    app.dependency_overrides[require_superadmin] = lambda: {"sub": "admin", "app_metadata": {"is_superadmin": True}}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
