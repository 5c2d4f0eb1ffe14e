"""
Email (Mailgun) and live-update broadcaster tests
"""
import asyncio
from datetime import datetime
from urllib.parse import parse_qs

import httpx
import pytest

from FinalRound.config.settings import EmailConfig
from FinalRound.services.billing import SubscriptionState
from FinalRound.services.email_service import TEMPLATES, EmailService, render_template
from FinalRound.services.live_updates import LiveUpdateBroadcaster, build_plan_update_message


def email_config(**overrides) -> EmailConfig:
    config = EmailConfig()
    config.api_key = "key-123"
    config.domain = "mg.finalround.app"
    config.base_url = "https://api.mailgun.net"
    config.max_retries = 0
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


class TestEmailService:
    def test_every_template_renders(self):
        for template in TEMPLATES:
            subject, body = render_template(template, {"planName": "Pro"})
            assert "{" not in subject + body

    def test_unknown_template(self):
        with pytest.raises(KeyError):
            render_template("welcome_back")

    async def test_send_template_posts_form(self):
        requests = []

        def mailgun(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "<msg@mg>", "message": "Queued"})

        service = EmailService(email_config(), transport=httpx.MockTransport(mailgun))
        ok = await service.send_template("alice@example.com", "subscription_activated", {"planName": "Pro"})
        await service.aclose()

        assert ok is True
        request = requests[0]
        assert request.url.path == "/v3/mg.finalround.app/messages"
        assert request.headers["Authorization"].startswith("Basic ")
        form = parse_qs(request.content.decode())
        assert form["to"] == ["alice@example.com"]
        assert form["subject"] == ["Welcome to FinalRound Pro!"]

    async def test_rejection_is_reported_not_raised(self):
        service = EmailService(email_config(), transport=httpx.MockTransport(lambda r: httpx.Response(401)))
        assert await service.send_template("alice@example.com", "payment_failed", {"planName": "Pro"}) is False

    async def test_transport_failure_is_reported_not_raised(self):
        def down(request):
            raise httpx.ConnectTimeout("timeout", request=request)

        service = EmailService(email_config(), transport=httpx.MockTransport(down))
        assert await service.send_template("alice@example.com", "payment_failed") is False

    async def test_disabled_or_no_recipient(self):
        calls = []
        transport = httpx.MockTransport(lambda r: calls.append(r) or httpx.Response(200))
        assert await EmailService(email_config(api_key=""), transport=transport).send_template(
            "alice@example.com", "subscription_expired"
        ) is False
        assert await EmailService(email_config(), transport=transport).send_template(
            None, "subscription_expired"
        ) is False
        assert calls == []


class FakeSocket:
    def __init__(self, delay: float = 0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.accepted = False
        self.messages = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.messages.append(message)


@pytest.fixture
def live_broadcaster(settings):
    LiveUpdateBroadcaster._instance = None
    manager = LiveUpdateBroadcaster(send_timeout=0.05)
    yield manager
    LiveUpdateBroadcaster._instance = None


STATE = SubscriptionState(
    tier="pro",
    subscription_id="I-1",
    status="active",
    next_billing_time=datetime(2026, 2, 1, 10, 0),
    cancel_at_period_end=True,
    cancel_scheduled_at=datetime(2026, 1, 15, 9, 0),
)


class TestLiveUpdates:
    def test_message_shape(self):
        message = build_plan_update_message(STATE)
        assert message["type"] == "plan_update"
        assert message["plan"] == "pro"
        assert message["subscription"] == {
            "subscriptionId": "I-1",
            "status": "active",
            "nextBillingTime": "2026-02-01T10:00:00Z",
            "cancelAtPeriodEnd": True,
            "cancelScheduledAt": "2026-01-15T09:00:00Z",
        }

    def test_singleton(self, live_broadcaster):
        assert LiveUpdateBroadcaster() is live_broadcaster

    async def test_broadcast_reaches_every_session_of_user(self, live_broadcaster):
        a, b, other = FakeSocket(), FakeSocket(), FakeSocket()
        await live_broadcaster.connect(a, 1)
        await live_broadcaster.connect(b, 1)
        await live_broadcaster.connect(other, 2)

        sent = await live_broadcaster.broadcast_plan_update(1, STATE)

        assert sent == 2
        assert a.accepted and len(a.messages) == 1 and len(b.messages) == 1
        assert other.messages == []

    async def test_slow_or_broken_sockets_are_dropped(self, live_broadcaster):
        good, slow, broken = FakeSocket(), FakeSocket(delay=1), FakeSocket(fail=True)
        for socket in (good, slow, broken):
            await live_broadcaster.connect(socket, 1)

        sent = await live_broadcaster.broadcast_plan_update(1, STATE)

        assert sent == 1
        assert live_broadcaster.connection_count(1) == 1

    async def test_no_sessions(self, live_broadcaster):
        assert await live_broadcaster.broadcast_plan_update(42, STATE) == 0
        live_broadcaster.disconnect(FakeSocket(), 42)
