"""Tests for Shopify and Telnyx webhook endpoints.

WHAT: Signature verification and event routing for
      POST /webhooks/shopify/orders/paid and POST /webhooks/telnyx
WHY: Forged orders would create conversions; forged receipts would open
     the recovery window early

REFERENCES:
  - winback/routers/shopify_webhooks.py
  - winback/routers/telnyx_webhooks.py
"""

import base64
import hashlib
import hmac
import json
import time

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from winback.models import MessageStatusEnum, SubscriberStatusEnum
from winback.routers.shopify_webhooks import verify_shopify_webhook
from winback.routers.telnyx_webhooks import verify_telnyx_webhook


# ============================================================================
# Shopify
# ============================================================================

def _shopify_hmac(body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _paid_order(order_id, codes, total="40.00"):
    return {
        "id": order_id,
        "name": f"#{order_id}",
        "total_price": total,
        "subtotal_price": total,
        "currency": "USD",
        "discount_codes": [{"code": c, "amount": "8.00", "type": "percentage"} for c in codes],
        "line_items": [{"product_id": 11, "variant_id": 22, "title": "Hot Pickles", "quantity": 1, "price": total}],
        "created_at": "2026-06-10T16:00:00-04:00",
        "email": "buyer@example.com",
    }


class TestShopifyOrdersPaid:

    @pytest.fixture
    def post_order(self, client, test_settings):
        def _post(payload, signature=None):
            body = json.dumps(payload).encode()
            sig = signature if signature is not None else _shopify_hmac(body, test_settings.SHOPIFY_API_SECRET)
            return client.post(
                "/webhooks/shopify/orders/paid",
                content=body,
                headers={"X-Shopify-Hmac-SHA256": sig, "Content-Type": "application/json"},
            )
        return _post

    def test_invalid_signature_rejected(self, post_order):
        response = post_order(_paid_order(1, ["JP-AAAAA"]), signature="bogus")
        assert response.status_code == 401

    def test_order_without_codes_acknowledged(self, post_order):
        response = post_order(_paid_order(2, []))
        assert response.status_code == 200
        assert response.json()["order_id"] == "2"
        assert "No discount codes" in response.json()["message"]

    def test_conversion_and_replay(self, post_order, make_subscriber, store):
        sub = make_subscriber(primary_code="JP-WEBHK")

        first = post_order(_paid_order(3, ["jp-webhk"]))
        replay = post_order(_paid_order(3, ["jp-webhk"]))

        assert first.status_code == 200
        assert first.json()["converted"] is True
        assert first.json()["attributions"][0]["outcome"] == "converted"
        assert first.json()["attributions"][0]["subscriber_id"] == str(sub.id)
        assert replay.status_code == 200
        assert replay.json()["attributions"][0]["outcome"] == "already_converted"
        assert store.get(sub.id).conversion_order_id == "3"

    def test_verify_helper(self):
        body = b'{"id": 1}'
        assert verify_shopify_webhook(body, _shopify_hmac(body, "s3cret"), "s3cret") is True
        assert verify_shopify_webhook(body, _shopify_hmac(body, "other"), "s3cret") is False
        assert verify_shopify_webhook(body, None, "s3cret") is False
        assert verify_shopify_webhook(body, _shopify_hmac(body, "s3cret"), None) is False


# ============================================================================
# Telnyx
# ============================================================================

@pytest.fixture
def signing_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def public_key_b64(signing_key):
    raw = signing_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return base64.b64encode(raw).decode()


def _sign(key, body: bytes, timestamp: str) -> str:
    return base64.b64encode(key.sign(timestamp.encode() + b"|" + body)).decode()


class TestTelnyxSignature:

    def test_valid_signature(self, signing_key, public_key_b64):
        body = b'{"data": {}}'
        ts = "1781100000"
        assert verify_telnyx_webhook(body, _sign(signing_key, body, ts), ts, public_key_b64, now=1781100010) is True

    def test_tampered_body(self, signing_key, public_key_b64):
        ts = "1781100000"
        sig = _sign(signing_key, b'{"data": {}}', ts)
        assert verify_telnyx_webhook(b'{"data": {"x": 1}}', sig, ts, public_key_b64, now=1781100000) is False

    def test_stale_timestamp(self, signing_key, public_key_b64):
        body = b"{}"
        ts = "1781100000"
        assert verify_telnyx_webhook(body, _sign(signing_key, body, ts), ts, public_key_b64, now=1781100301) is False

    def test_missing_key_or_headers(self, signing_key, public_key_b64):
        body = b"{}"
        ts = "1781100000"
        sig = _sign(signing_key, body, ts)
        assert verify_telnyx_webhook(body, sig, ts, None, now=1781100000) is False
        assert verify_telnyx_webhook(body, None, ts, public_key_b64, now=1781100000) is False
        assert verify_telnyx_webhook(body, sig, "not-a-number", public_key_b64, now=1781100000) is False


class TestTelnyxEndpoint:

    @pytest.fixture
    def post_event(self, client, test_settings, signing_key, public_key_b64):
        test_settings.TELNYX_PUBLIC_KEY = public_key_b64

        def _post(event_type, payload, sign=True):
            body = json.dumps({"data": {"event_type": event_type, "payload": payload}}).encode()
            ts = str(int(time.time()))
            headers = {"telnyx-timestamp": ts, "Content-Type": "application/json"}
            headers["telnyx-signature-ed25519"] = _sign(signing_key, body, ts) if sign else "AAAA"
            return client.post("/webhooks/telnyx", content=body, headers=headers)

        return _post

    def test_unsigned_request_rejected(self, post_event):
        assert post_event("message.finalized", {}, sign=False).status_code == 401

    def test_delivery_receipt(self, post_event, make_subscriber, store):
        sub = make_subscriber(first_message_status=MessageStatusEnum.sent, first_message_id="tx-1")

        response = post_event("message.finalized", {"id": "tx-1", "to": [{"status": "delivered"}]})

        assert response.status_code == 200
        assert response.json()["updated"] == "first"
        assert store.get(sub.id).first_message_status == MessageStatusEnum.delivered

    def test_inbound_stop(self, post_event, make_subscriber, store):
        sub = make_subscriber(phone="+12015550177")

        response = post_event("message.received", {"from": {"phone_number": "+12015550177"}, "text": "STOP"})

        assert response.json()["outcome"] == "unsubscribed"
        assert store.get(sub.id).status == SubscriberStatusEnum.unsubscribed

    def test_other_events_ignored(self, post_event):
        response = post_event("message.something_else", {})
        assert response.status_code == 200
        assert response.json()["ignored"] is True
