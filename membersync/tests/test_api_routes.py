"""
Tests for the HTTP boundary: health, member lists and the Stripe webhook.
"""

import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from main import create_app
from membersync.models.member import Tier


def _signed(event: dict, secret: str):
    body = json.dumps(event)
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{body}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return body, {"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"}


@pytest.fixture
def client(components):
    with TestClient(create_app(components)) as test_client:
        yield test_client


@pytest.fixture
def post_event(client, config, build_event):
    def _post(event_id, event_type, obj):
        body, headers = _signed(build_event(event_id, event_type, obj), config.stripe_webhook_secret)
        return client.post("/webhooks/stripe", content=body, headers=headers)

    return _post


class TestHealth:
    def test_health_ok(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": "ok"}


class TestMemberLists:
    def test_lists(self, client, make_member, now):
        paid = make_member(tier=Tier.PAID, subscription_ends_at=now + timedelta(days=30))
        grace = make_member(tier=Tier.GRACE, grace_ends_at=now + timedelta(days=2))
        make_member()

        subscribed = client.get("/api/lists/subscribed").json()
        in_grace = client.get("/api/lists/grace").json()
        everyone = client.get("/api/lists/all").json()

        assert subscribed["count"] == 1
        assert subscribed["members"][0]["member_id"] == paid
        assert subscribed["members"][0]["subscription_ends_at"] == (now + timedelta(days=30)).isoformat()
        assert in_grace["members"][0]["member_id"] == grace
        assert everyone["count"] == 2


class TestStripeWebhook:
    def test_valid_delivery_is_applied(
        self, post_event, make_member, load_member, add_billing_subscription
    ):
        member_id = make_member(customer_id="cus_X")
        add_billing_subscription("sub_S", "cus_X")
        checkout = {"id": "cs_1", "customer": "cus_X", "subscription": "sub_S", "metadata": {}}

        response = post_event("evt_1", "checkout.session.completed", checkout)

        assert response.status_code == 200
        assert response.json() == {"received": True, "applied": True}
        member, _ = load_member(member_id)
        assert member.tier == Tier.PAID

    def test_redelivery_is_acknowledged_not_applied(
        self, post_event, make_member, add_billing_subscription
    ):
        make_member(customer_id="cus_X")
        add_billing_subscription("sub_S", "cus_X")
        checkout = {"id": "cs_1", "customer": "cus_X", "subscription": "sub_S", "metadata": {}}

        post_event("evt_1", "checkout.session.completed", checkout)
        response = post_event("evt_1", "checkout.session.completed", checkout)

        assert response.status_code == 200
        assert response.json() == {"received": True, "applied": False}

    def test_invalid_signature_rejected(self, client, components, build_event):
        body = json.dumps(build_event("evt_1", "invoice.payment_succeeded", {"customer": "cus_X"}))

        response = client.post(
            "/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": f"t={int(time.time())},v1=deadbeef"},
        )

        assert response.status_code == 400
        assert components.ledger.is_processed("evt_1") is False

    def test_missing_signature_rejected(self, client):
        response = client.post("/webhooks/stripe", content=b"{}")

        assert response.status_code == 400

    def test_unknown_member_returns_500_for_redelivery(self, post_event, components, build_subscription):
        response = post_event(
            "evt_1", "customer.subscription.updated", build_subscription("sub_S", "cus_nobody")
        )

        assert response.status_code == 500
        body = response.json()
        assert body["applied"] is False
        assert body["error"]["kind"] == "unknown_member"
        assert components.ledger.is_processed("evt_1") is False

    def test_unconfigured_verifier_returns_503(self, components):
        components.verifier = None
        with TestClient(create_app(components)) as test_client:
            response = test_client.post("/webhooks/stripe", content=b"{}")

        assert response.status_code == 503
