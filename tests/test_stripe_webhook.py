"""
Stripe webhook endpoint tests, using real Stripe-Signature headers
computed with the test signing secret.
"""

import dataclasses
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import WEBHOOK_SECRET

PERIOD_END = int((datetime.now(timezone.utc) + timedelta(days=30)).timestamp())


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_payload(event_type="customer.subscription.created", event_id="evt_1", obj=None) -> bytes:
    obj = obj or {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_user",
        "status": "active",
        "current_period_end": PERIOD_END,
        "items": {"data": [{"price": {"id": "price_pro"}}]},
    }
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": obj},
        }
    ).encode()


def post(client, payload: bytes, signature: str | None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return client.post("/api/stripe/webhook", content=payload, headers=headers)


class TestSignature:
    def test_missing_signature(self, client):
        resp = post(client, event_payload(), None)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "MPX-WHK-001"

    def test_wrong_secret(self, client):
        payload = event_payload()
        resp = post(client, payload, sign(payload, secret="whsec_other"))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "MPX-WHK-002"

    def test_tampered_payload(self, client):
        payload = event_payload()
        signature = sign(payload)
        resp = post(client, payload.replace(b"price_pro", b"price_premium"), signature)
        assert resp.status_code == 400

    def test_expired_timestamp(self, client):
        payload = event_payload()
        resp = post(client, payload, sign(payload, timestamp=int(time.time()) - 3600))
        assert resp.status_code == 400

    def test_signed_garbage(self, client):
        payload = b"not json"
        resp = post(client, payload, sign(payload))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "MPX-WHK-003"

    def test_unconfigured_secret(self, client, app):
        app.state.settings.stripe_webhook_secret = None
        payload = event_payload()
        resp = post(client, payload, sign(payload))
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "MPX-CFG-003"


class TestDelivery:
    def test_applies_event(self, client, app, api_user):
        user, _ = api_user
        payload = event_payload()
        resp = post(client, payload, sign(payload))
        assert resp.status_code == 200
        assert resp.json() == {"received": True}

        sub = app.state.store.find_active_for_user(user.id)
        assert (sub.stripe_subscription_id, sub.tier, sub.quota) == ("sub_1", "pro", 50_000)

    def test_redelivery_acknowledged(self, client, app, api_user):
        user, _ = api_user
        payload = event_payload()
        assert post(client, payload, sign(payload)).status_code == 200
        assert post(client, payload, sign(payload)).status_code == 200
        assert len(app.state.store.list_for_user(user.id)) == 1

    def test_unlinked_event_acknowledged(self, client, app):
        payload = event_payload(obj={"id": "sub_9", "customer": "cus_unknown", "status": "active", "current_period_end": PERIOD_END, "items": {"data": []}})
        resp = post(client, payload, sign(payload))
        assert resp.status_code == 200
        assert app.state.store.get_by_external_id("sub_9") is None

    def test_unhandled_type_acknowledged(self, client):
        payload = event_payload(event_type="charge.refunded", obj={"id": "ch_1"})
        assert post(client, payload, sign(payload)).status_code == 200

    def test_handler_failure_returns_500(self, client, app):
        payload = event_payload()
        with patch.object(app.state.reconciler, "apply_lifecycle_event", side_effect=RuntimeError("db down")):
            resp = post(client, payload, sign(payload))
        assert resp.status_code == 500
        assert resp.json() == {"error": "Webhook handler failed"}

    def test_payment_succeeded_resets_usage(self, client, app, api_user):
        user, _ = api_user
        created = event_payload()
        post(client, created, sign(created))
        sub = app.state.store.find_active_for_user(user.id)
        app.state.store.update_with_retry(sub.id, lambda s: dataclasses.replace(s, used=900))

        invoice = event_payload(
            event_type="invoice.payment_succeeded",
            event_id="evt_2",
            obj={"id": "in_1", "subscription": {"id": "sub_1"}, "lines": {"data": []}},
        )
        assert post(client, invoice, sign(invoice)).status_code == 200
        assert app.state.store.get(sub.id).used == 0
