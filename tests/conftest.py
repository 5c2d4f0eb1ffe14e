"""
Pytest configuration and fixtures for the billing test suite

- in-memory SQLite (StaticPool, shared across threads for TestClient)
- settings with known PayPal plan ids and a JWT secret
- a scripted PayPal gateway and recording notifier / broadcaster
"""
import os

os.environ.setdefault("FR_TESTING", "true")
os.environ.setdefault("FR_LOGGING_ENABLED", "false")

from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from FinalRound.config.settings import Settings, set_settings
from FinalRound.database.models import Base, User
from FinalRound.infrastructure.paypal.gateway import (
    ProcessorGateway,
    ProcessorSubscription,
    RefundResult,
    WebhookSignature,
)
from FinalRound.services.billing import BillingReconciliationService
from FinalRound.services.entitlements import set_plans_loader
from FinalRound.utils.exceptions import GatewayError

PLAN_PRO = "P-PRO-MONTHLY"
PLAN_PRO_PLUS = "P-PROPLUS-MONTHLY"
JWT_SECRET = "test-secret-key"

SIGNED_HEADERS = {
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-time": "2026-01-01T00:00:00Z",
    "paypal-transmission-sig": "sig",
    "paypal-cert-url": "https://api.paypal.com/cert.pem",
    "paypal-auth-algo": "SHA256withRSA",
}


class FakeGateway(ProcessorGateway):
    """Scripted processor: subscriptions are looked up from a dict, every call is recorded."""

    def __init__(self):
        self.subscriptions: Dict[str, ProcessorSubscription] = {}
        self.verify_result = True
        self.verify_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.cancel_calls: List[tuple] = []
        self.refund_calls: List[tuple] = []
        self.refund_results: List[RefundResult] = []
        self.orders: List[Dict[str, Any]] = []
        self.capture_result: Dict[str, Any] = {}

    def add_subscription(
        self,
        subscription_id: str,
        status: str = "ACTIVE",
        plan_id: Optional[str] = PLAN_PRO,
        email: str = "buyer@example.com",
        next_billing_time: Optional[datetime] = datetime(2026, 2, 1, 10, 0, 0),
    ) -> ProcessorSubscription:
        sub = ProcessorSubscription(
            id=subscription_id,
            status=status,
            plan_id=plan_id,
            subscriber_email=email,
            next_billing_time=next_billing_time,
        )
        self.subscriptions[subscription_id] = sub
        return sub

    async def fetch_subscription(self, subscription_id: str) -> ProcessorSubscription:
        if subscription_id not in self.subscriptions:
            raise GatewayError("RESOURCE_NOT_FOUND", status_code=404)
        return self.subscriptions[subscription_id]

    async def verify_webhook_signature(self, signature: WebhookSignature, event: Dict[str, Any]) -> bool:
        if self.verify_error is not None:
            raise self.verify_error
        return self.verify_result

    async def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> None:
        self.cancel_calls.append((subscription_id, reason))
        if self.cancel_error is not None:
            raise self.cancel_error

    async def refund_capture(self, capture_id, amount=None, currency_code="USD", note=None) -> RefundResult:
        self.refund_calls.append((capture_id, amount, currency_code, note))
        return self.refund_results.pop(0)

    async def create_order(self, cart=None, custom_id=None) -> Dict[str, Any]:
        order = {"id": f"ORDER-{len(self.orders) + 1}", "status": "CREATED", "custom_id": custom_id}
        self.orders.append(order)
        return order

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        return self.capture_result


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent: List[tuple] = []
        self.fail = fail

    async def send_template(self, to, template, params=None) -> bool:
        if self.fail:
            raise RuntimeError("mail provider down")
        self.sent.append((to, template, dict(params or {})))
        return True

    def templates(self) -> List[str]:
        return [t for _, t, _ in self.sent]


class RecordingBroadcaster:
    def __init__(self):
        self.updates: List[tuple] = []

    async def broadcast_plan_update(self, user_id, state) -> int:
        self.updates.append((user_id, state))
        return 1


def webhook_payload(
    event_type: str,
    resource: Dict[str, Any],
    event_id: str = "WH-1",
    create_time: str = "2026-01-10T12:00:00Z",
) -> Dict[str, Any]:
    return {
        "id": event_id,
        "event_type": event_type,
        "create_time": create_time,
        "resource_type": "subscription",
        "resource": resource,
    }


def subscription_resource(
    subscription_id: str = "I-SUB1",
    status: str = "ACTIVE",
    plan_id: Optional[str] = PLAN_PRO,
    next_billing_time: Optional[str] = "2026-02-10T10:00:00Z",
) -> Dict[str, Any]:
    resource: Dict[str, Any] = {
        "id": subscription_id,
        "status": status,
        "subscriber": {"email_address": "buyer@example.com"},
    }
    if plan_id:
        resource["plan_id"] = plan_id
    if next_billing_time:
        resource["billing_info"] = {"next_billing_time": next_billing_time}
    return resource


@pytest.fixture
def settings():
    s = Settings()
    s.jwt_secret_key = JWT_SECRET
    s.paypal.client_id = "client-id"
    s.paypal.client_secret = "client-secret"
    s.paypal.webhook_id = "WH-ID"
    s.paypal.plan_id_pro = PLAN_PRO
    s.paypal.plan_id_pro_plus = PLAN_PRO_PLUS
    s.billing.write_retries = 3
    set_settings(s)
    set_plans_loader(None)
    yield s
    set_settings(None)
    set_plans_loader(None)


@pytest.fixture
def engine(settings):
    """
    Fresh in-memory database per test; all tables created up front.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_user(db, email: str, is_admin: bool = False) -> User:
    user = User(email=email, name=email.split("@")[0], is_admin=is_admin)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def user(db):
    return make_user(db, "alice@example.com")


@pytest.fixture
def other_user(db):
    return make_user(db, "bob@example.com")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def service(db, gateway, notifier, broadcaster, settings):
    return BillingReconciliationService(
        db, gateway, broadcaster=broadcaster, notifier=notifier, settings=settings
    )


@pytest.fixture
def make_service(session_factory, gateway, notifier, broadcaster, settings):
    """Service bound to its own session, as two concurrent requests would be."""
    sessions = []

    def _make():
        session = session_factory()
        sessions.append(session)
        return BillingReconciliationService(
            session, gateway, broadcaster=broadcaster, notifier=notifier, settings=settings
        )

    yield _make
    for session in sessions:
        session.close()


@pytest.fixture
def signed_headers():
    return dict(SIGNED_HEADERS)

