"""
Shared fixtures: in-memory database, a seeded plan catalog and a fake
payment gateway.
"""
import json
from datetime import datetime
from decimal import Decimal

import bcrypt
import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from resumekit.core.auth_dependency import get_db
from resumekit.core.billing_dependency import get_payment_gateway, get_region_resolver, get_subscription_service
from resumekit.core.errors import PaymentError
from resumekit.core.plan_tables import cycle_end
from resumekit.core.security import create_access_token
from resumekit.db.base import Base
from resumekit.db.models.billing_details import UserBillingDetails
from resumekit.db.models.plan import SubscriptionPlan, PlanPricing, Feature, PlanFeature
from resumekit.db.models.subscription import UserSubscription
from resumekit.db.models.user import User
from resumekit.main import app
from resumekit.services.payment_gateway import CheckoutSessionInfo, PaymentEvent, PaymentGatewayAdapter
from resumekit.services.region_resolver import RegionResolver
from resumekit.services.subscription_service import SubscriptionService


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

VALID_SIGNATURE = "t=1,v1=valid"


def hash_password(password: str) -> str:
    """Hash a fixture password the way the account service stores it."""
    return bcrypt.hashpw(password.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


# April 2026 has 30 days: April 1 -> May 1 is a 30-day monthly cycle
CYCLE_START = datetime(2026, 4, 1)
MID_CYCLE = datetime(2026, 4, 16)
CYCLE_END = datetime(2026, 5, 1)


class FakePaymentGateway(PaymentGatewayAdapter):
    """
    In-memory gateway.

    Checkout creation is idempotent per key, like the real gateway. ``on_create``
    runs once inside the next checkout call, and ``on_charge`` once inside the
    next renewal charge, to simulate work that happens while a caller waits on
    the gateway.
    """

    def __init__(self):
        self.sessions = []
        self.charges = []
        self.fail_checkout = False
        self.fail_charges = False
        self.on_create = None
        self.on_charge = None

    def create_checkout_session(self, amount, currency, idempotency_key, description, expires_at,
                                customer_email=None, customer_ref=None, metadata=None):
        if self.fail_checkout:
            raise PaymentError("Failed to create checkout session: gateway unavailable")
        if self.on_create is not None:
            hook, self.on_create = self.on_create, None
            hook()
        for session in self.sessions:
            if session["idempotency_key"] == idempotency_key:
                return CheckoutSessionInfo(session["session_id"], session["url"])
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({
            "session_id": session_id,
            "url": f"https://checkout.example.test/{session_id}",
            "idempotency_key": idempotency_key,
            "amount": Decimal(amount),
            "currency": currency,
            "metadata": metadata or {},
        })
        return CheckoutSessionInfo(session_id, f"https://checkout.example.test/{session_id}")

    def charge_renewal(self, amount, currency, idempotency_key, customer_ref, description):
        if self.on_charge is not None:
            hook, self.on_charge = self.on_charge, None
            hook()
        if self.fail_charges:
            raise PaymentError("Renewal charge failed: card declined")
        self.charges.append({"amount": Decimal(amount), "currency": currency, "idempotency_key": idempotency_key})
        return f"pi_test_{len(self.charges)}"

    def parse_webhook(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise PaymentError("Invalid webhook signature")
        event = json.loads(payload)
        if event.get("kind") is None:
            return None
        return PaymentEvent(
            kind=event["kind"],
            session_id=event["session_id"],
            idempotency_key=event.get("idempotency_key"),
            customer_ref=event.get("customer"),
        )


@pytest.fixture(scope="function", autouse=True)
def setup_db():
    """Create and drop tables for each test."""
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db_session():
    """Provide a database session for tests."""
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def test_user(db_session):
    """Create a test user."""
    user = User(
        full_name="Test User",
        email="test@example.com",
        password_hash=hash_password("testpass123"),
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def test_user_token(test_user):
    """Create JWT token for test user."""
    return create_access_token({"sub": test_user.email})


@pytest.fixture
def auth_headers(test_user_token):
    return {"Authorization": f"Bearer {test_user_token}"}


def _plan(db, name, price, cycle="MONTHLY", freemium=False, inr=None, active=True):
    plan = SubscriptionPlan(
        name=name,
        description=f"{name} plan",
        price=Decimal(price),
        billing_cycle=cycle,
        is_freemium=freemium,
        active=active,
    )
    db.add(plan)
    db.flush()
    if not freemium:
        db.add(PlanPricing(plan_id=plan.id, target_region="GLOBAL", currency="USD", price=Decimal(price)))
        if inr is not None:
            db.add(PlanPricing(plan_id=plan.id, target_region="INDIA", currency="INR", price=Decimal(inr)))
    return plan


@pytest.fixture
def plans(db_session):
    """Free, Basic (10 USD / 799 INR), Pro (25 USD / 1999 INR), Pro Yearly (100 USD), and a retired plan."""
    seeded = {
        "free": _plan(db_session, "Free", "0", freemium=True),
        "basic": _plan(db_session, "Basic", "10.00", inr="799"),
        "pro": _plan(db_session, "Pro", "25.00", inr="1999"),
        "pro_yearly": _plan(db_session, "Pro Yearly", "100.00", cycle="YEARLY"),
        "legacy": _plan(db_session, "Legacy", "50.00", active=False),
    }

    downloads = Feature(code="resume_download", name="Resume downloads", description="")
    templates = Feature(code="premium_templates", name="Premium templates", description="")
    ai_letters = Feature(code="ai_cover_letter", name="AI cover letters", description="")
    db_session.add_all([downloads, templates, ai_letters])
    db_session.flush()

    db_session.add_all([
        PlanFeature(plan_id=seeded["free"].id, feature_id=downloads.id, limit_type="COUNT", limit_value=2,
                    reset_frequency="MONTHLY"),
        PlanFeature(plan_id=seeded["free"].id, feature_id=templates.id, limit_type="BOOLEAN", limit_value=0,
                    is_enabled=False),
        PlanFeature(plan_id=seeded["basic"].id, feature_id=downloads.id, limit_type="COUNT", limit_value=10,
                    reset_frequency="MONTHLY"),
        PlanFeature(plan_id=seeded["basic"].id, feature_id=ai_letters.id, limit_type="COUNT", limit_value=5,
                    reset_frequency="DAILY"),
        PlanFeature(plan_id=seeded["pro"].id, feature_id=downloads.id, limit_type="UNLIMITED", limit_value=None),
        PlanFeature(plan_id=seeded["pro"].id, feature_id=templates.id, limit_type="BOOLEAN", limit_value=1),
    ])
    db_session.commit()
    for plan in seeded.values():
        db_session.refresh(plan)
    return seeded


def make_subscription(db, user, plan, start=CYCLE_START, status="ACTIVE", auto_renew=True,
                      region="GLOBAL", currency="USD", **extra):
    subscription = UserSubscription(
        user_id=user.id,
        plan_id=plan.id,
        status=status,
        start_date=start,
        end_date=cycle_end(start, plan.billing_cycle),
        auto_renew=auto_renew,
        region=region,
        currency=currency,
        version=1,
        **extra,
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


def add_billing_country(db, user, country, customer_ref=None):
    details = UserBillingDetails(user_id=user.id, country=country, gateway_customer_id=customer_ref)
    db.add(details)
    db.commit()
    return details


def fixed_clock(moment):
    return lambda: moment


@pytest.fixture
def make_service(db_session, gateway):
    """Build a SubscriptionService on the test session with a fixed clock."""
    def _make(now=MID_CYCLE, db=None):
        return SubscriptionService(db or db_session, gateway, now_fn=fixed_clock(now))
    return _make


@pytest.fixture
def client(gateway):
    """TestClient on the test database, fake gateway, no IP lookups and a fixed clock."""
    def override_get_db():
        db = TestSessionLocal()
        try:
            yield db
        finally:
            db.close()

    def override_region_resolver(db=Depends(get_db)):
        return RegionResolver(db, geolocate=lambda ip: None)

    def override_subscription_service(db=Depends(get_db)):
        return SubscriptionService(db, gateway, now_fn=fixed_clock(MID_CYCLE))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_region_resolver] = override_region_resolver
    app.dependency_overrides[get_subscription_service] = override_subscription_service
    yield TestClient(app)
    app.dependency_overrides.clear()
