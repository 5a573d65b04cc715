import hashlib
import hmac
import itertools
import os
import uuid
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import event

# Settings are read at import time, so the environment goes first.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key-with-at-least-32-characters"
os.environ["PAYMENT_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["GOCARDLESS_ACCESS_TOKEN"] = "sandbox_test_token"
os.environ["GOCARDLESS_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["FRONTEND_URL"] = "https://club.example.test"

from clubpay.clock import FixedClock  # noqa: E402
from clubpay.db import Base, engine  # noqa: E402
from clubpay.errors import ProviderError  # noqa: E402
from clubpay.models.billing import MembershipTier  # noqa: E402
from clubpay.models.club import UserChild  # noqa: E402
from clubpay.models.payment import (  # noqa: E402
    MandateStatus,
    PaymentCustomer,
    PaymentMandate,
    PaymentMethod,
    PaymentMethodStatus,
    PaymentMethodType,
)
from clubpay.providers.base import (  # noqa: E402
    PaymentProvider,
    ProviderCustomer,
    ProviderEvent,
    ProviderMandate,
    ProviderPaymentResult,
    SetupFlow,
)
from clubpay.schemas.billing import SubscriptionCreate  # noqa: E402
from clubpay.services.billing import SubscriptionService  # noqa: E402


# pysqlite needs these for SAVEPOINT (Session.begin_nested) to work
@event.listens_for(engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


Base.metadata.create_all(engine)

WEBHOOK_SECRET = "test-webhook-secret"
START = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)


class FakeProvider(PaymentProvider):
    """In-memory provider that records calls and signs webhooks like GoCardless."""

    name = "fake"
    signature_header = "webhook-signature"

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET) -> None:
        self.webhook_secret = webhook_secret
        self.calls: list[tuple[str, tuple]] = []
        self.fail_on: set[str] = set()
        self.mandate_status = "active"
        self.payment_status = "pending_submission"
        self._ids = itertools.count(1)

    def _call(self, method: str, *args) -> int:
        self.calls.append((method, args))
        if method in self.fail_on:
            raise ProviderError(f"{method} rejected", provider=self.name, http_status=422)
        return next(self._ids)

    def called(self, method: str) -> list[tuple]:
        return [args for name, args in self.calls if name == method]

    def create_customer(self, data):
        n = self._call("create_customer", data)
        return ProviderCustomer(provider_customer_id=f"CU{n:04d}")

    def update_customer(self, provider_customer_id, data):
        self._call("update_customer", provider_customer_id, data)

    def create_mandate_setup_flow(self, provider_customer_id, redirect_urls, *, scheme, currency):
        n = self._call("create_mandate_setup_flow", provider_customer_id, redirect_urls, scheme)
        return SetupFlow(
            flow_id=f"BRQ{n:04d}",
            authorisation_url=f"https://pay.example.test/flow/BRQ{n:04d}",
        )

    def complete_mandate_setup(self, flow_id):
        n = self._call("complete_mandate_setup", flow_id)
        return ProviderMandate(
            provider_mandate_id=f"MD{n:04d}",
            status=self.mandate_status,
            reference=f"REF{n:04d}",
        )

    def get_mandate(self, provider_mandate_id):
        self._call("get_mandate", provider_mandate_id)
        return ProviderMandate(provider_mandate_id=provider_mandate_id, status=self.mandate_status)

    def cancel_mandate(self, provider_mandate_id):
        self._call("cancel_mandate", provider_mandate_id)

    def create_payment(
        self,
        provider_mandate_id,
        amount,
        *,
        currency,
        description=None,
        charge_date=None,
        metadata=None,
        idempotency_key=None,
    ):
        n = self._call("create_payment", provider_mandate_id, amount, idempotency_key)
        return ProviderPaymentResult(
            provider_payment_id=f"PM{n:04d}",
            status=self.payment_status,
            amount=amount,
            charge_date=charge_date,
        )

    def sign(self, raw_body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()

    def verify_webhook_signature(self, raw_body, signature):
        if not signature:
            return False
        return hmac.compare_digest(self.sign(raw_body), signature)

    def parse_webhook_events(self, payload):
        events = []
        for item in payload.get("events") or []:
            links = item.get("links") or {}
            resource_type = item["resource_type"]
            events.append(
                ProviderEvent(
                    id=item["id"],
                    resource_type=resource_type,
                    action=item["action"],
                    resource_id=links.get(resource_type.rstrip("s")),
                    details=item.get("details") or {},
                    links=links,
                    raw=item,
                )
            )
        return events


@pytest.fixture(scope="session")
def db_engine():
    return engine


@pytest.fixture()
def db_session(db_engine):
    """Session on the shared in-memory database; every table is emptied afterwards."""
    from clubpay.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with db_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture()
def clock():
    return FixedClock(START)


@pytest.fixture()
def provider():
    return FakeProvider()


@pytest.fixture()
def providers(provider):
    return {provider.name: provider}


@pytest.fixture()
def subscriptions(db_session, clock):
    return SubscriptionService(db_session, clock)


@pytest.fixture()
def club_id():
    return uuid.uuid4()


@pytest.fixture()
def parent_id():
    return uuid.uuid4()


@pytest.fixture()
def child_id(db_session, club_id, parent_id):
    child = uuid.uuid4()
    db_session.add(UserChild(parent_user_id=parent_id, child_user_id=child, club_id=club_id))
    db_session.commit()
    return child


def _tier(db_session, club_id, name, monthly, annual, sort_order):
    tier = MembershipTier(
        club_id=club_id,
        name=name,
        monthly_price=Decimal(monthly),
        annual_price=Decimal(annual),
        features=["training"],
        is_active=True,
        sort_order=sort_order,
    )
    db_session.add(tier)
    db_session.commit()
    db_session.refresh(tier)
    return tier


@pytest.fixture()
def tier(db_session, club_id):
    return _tier(db_session, club_id, "Junior", "30.00", "300.00", 1)


@pytest.fixture()
def premium_tier(db_session, club_id):
    return _tier(db_session, club_id, "Senior", "60.00", "600.00", 2)


@pytest.fixture()
def customer(db_session, club_id, parent_id, provider):
    customer = PaymentCustomer(
        user_id=parent_id,
        club_id=club_id,
        provider=provider.name,
        provider_customer_id="CU_EXISTING",
        email="parent@example.com",
        given_name="Pat",
        family_name="Parent",
    )
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture()
def make_mandate(db_session, customer, provider):
    def _make(status=MandateStatus.active, provider_mandate_id=None, with_method=False):
        mandate = PaymentMandate(
            customer_id=customer.id,
            provider=provider.name,
            provider_mandate_id=provider_mandate_id or f"MD_{uuid.uuid4().hex[:10]}",
            status=status,
            reference="REF-TEST",
        )
        db_session.add(mandate)
        db_session.flush()
        if with_method:
            db_session.add(
                PaymentMethod(
                    user_id=customer.user_id,
                    type=PaymentMethodType.direct_debit,
                    mandate_id=mandate.id,
                    is_default=False,
                    display_name="Direct Debit REF-TEST",
                    status=PaymentMethodStatus.active,
                )
            )
        db_session.commit()
        db_session.refresh(mandate)
        return mandate

    return _make


@pytest.fixture()
def mandate(make_mandate):
    return make_mandate()


@pytest.fixture()
def make_subscription(db_session, subscriptions, club_id, parent_id, tier):
    """Create a subscription for a fresh child of ``parent_id``."""

    def _make(mandate=None, tier_id=None, billing_frequency="monthly", billing_day=None):
        child = uuid.uuid4()
        db_session.add(
            UserChild(parent_user_id=parent_id, child_user_id=child, club_id=club_id)
        )
        db_session.flush()
        subscription = subscriptions.create(
            SubscriptionCreate(
                club_id=club_id,
                parent_user_id=parent_id,
                child_user_id=child,
                tier_id=tier_id or tier.id,
                billing_frequency=billing_frequency,
                billing_day=billing_day,
                payment_mandate_id=mandate.id if mandate else None,
            )
        )
        db_session.commit()
        return subscription

    return _make


@pytest.fixture()
def subscription(make_subscription, mandate):
    return make_subscription(mandate=mandate)


@pytest.fixture()
def pending_subscription(make_subscription):
    return make_subscription()


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, clock, providers):
    """Test client whose dependencies use the test session, clock and provider."""
    from clubpay.api.deps import get_clock, get_db, get_providers
    from clubpay.main import app

    def override_get_db():
        try:
            yield db_session
        finally:
            db_session.rollback()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_providers] = lambda: providers
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def user_headers(parent_id):
    return {"X-User-Id": str(parent_id)}
