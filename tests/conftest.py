import os

os.environ.setdefault("SECRET_KEY", "billing-test-secret-key")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SUBSCRIPTION_JOBS_ENABLED"] = "false"
os.environ.pop("RESEND_API_KEY", None)

import itertools
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models
from app.auth import create_access_token
from app.database import Base, get_db
from app.exceptions import PaymentGatewayError, PaymentGatewayUnavailable
from app.main import create_app
from app.utils.signatures import compute_signature, payment_signature_payload

KEY_ID = "rzp_test_key"
KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test_secret"


class FakeRazorpayClient:
    """In-memory stand-in for RazorpayClient with the same public methods."""

    def __init__(self, key_id: str = KEY_ID, key_secret: str = KEY_SECRET):
        self.key_id = key_id
        self.key_secret = key_secret
        self.orders: dict[str, dict] = {}
        self.payments: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self.calls: list[tuple] = []
        self.unavailable = False
        self._order_seq = itertools.count(1)

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def close(self) -> None:
        pass

    def _check_available(self) -> None:
        if self.unavailable:
            raise PaymentGatewayUnavailable("Payment gateway timed out. Please try again.")

    def create_order(self, amount_paise, currency, receipt, notes=None):
        self._check_available()
        self.calls.append(("create_order", amount_paise, currency, receipt))
        order_id = f"order_Test{next(self._order_seq):06d}"
        order = {
            "id": order_id,
            "amount": amount_paise,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": notes or {},
        }
        self.orders[order_id] = order
        return dict(order)

    def fetch_order(self, order_id):
        self._check_available()
        self.calls.append(("fetch_order", order_id))
        if order_id not in self.orders:
            raise PaymentGatewayError("Payment gateway error: order not found")
        return dict(self.orders[order_id])

    def fetch_payment(self, payment_id):
        self._check_available()
        self.calls.append(("fetch_payment", payment_id))
        if payment_id not in self.payments:
            raise PaymentGatewayError("Payment gateway error: payment not found")
        return dict(self.payments[payment_id])

    def refund_payment(self, payment_id, amount_paise, notes=None):
        self._check_available()
        self.calls.append(("refund_payment", payment_id, amount_paise))
        refund = {"id": f"rfnd_Test{len(self.refunds) + 1:04d}", "payment_id": payment_id, "amount": amount_paise}
        self.refunds.append(refund)
        return refund

    def verify_credentials(self) -> bool:
        return True

    def add_payment(self, payment_id, order_id, amount, status="captured", currency="INR", method="upi"):
        self.payments[payment_id] = {
            "id": payment_id,
            "order_id": order_id,
            "amount": amount,
            "currency": currency,
            "status": status,
            "method": method,
        }

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


def sign_payment(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return compute_signature(payment_signature_payload(order_id, payment_id), secret)


@pytest.fixture()
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def razorpay():
    return FakeRazorpayClient()


def _make_user(db, email: str, is_admin: bool = False) -> models.User:
    user = models.User(email=email, full_name=email.split("@")[0].title(), is_active=True, is_admin=is_admin)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def user(db):
    return _make_user(db, "asha@example.com")


@pytest.fixture()
def other_user(db):
    return _make_user(db, "ravi@example.com")


@pytest.fixture()
def admin_user(db):
    return _make_user(db, "admin@example.com", is_admin=True)


@pytest.fixture()
def app(razorpay, session_factory):
    application = create_app(
        razorpay_client=razorpay,
        session_factory=session_factory,
        webhook_secret=WEBHOOK_SECRET,
        start_scheduler=False,
    )

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def auth_headers(user: models.User) -> dict:
    token = create_access_token({"sub": user.email}, expires_delta=timedelta(minutes=10))
    return {"Authorization": f"Bearer {token}"}


def make_active_subscription(
    db,
    user: models.User,
    plan: str = "pro",
    billing_cycle: str = "monthly",
    amount_paise: int = 49900,
    expiry_date: datetime | None = None,
) -> models.Subscription:
    from app.subscriptions import get_or_create_user_subscription

    subscription = get_or_create_user_subscription(db, user.id)
    now = datetime.utcnow()
    subscription.plan = plan
    subscription.status = "active"
    subscription.billing_cycle = billing_cycle
    subscription.amount_paise = amount_paise
    subscription.start_date = now
    subscription.expiry_date = expiry_date or now + timedelta(days=30)
    subscription.ai_credits_total = 100 if plan == "pro" else -1
    subscription.ai_credits_used = 0
    subscription.ai_credits_remaining = 100 if plan == "pro" else -1
    subscription.resume_limit = -1
    db.commit()
    db.refresh(subscription)
    return subscription
