"""Tests for the Telnyx and Shopify HTTP clients.

WHAT: Request shape, response parsing, retry on 429 and error mapping
WHY: Both clients must turn provider failures into result values, never
     exceptions, so a single bad response cannot abort a batch

REFERENCES:
  - winback/services/telnyx_client.py
  - winback/services/shopify_discount_client.py
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx

from winback.services.shopify_discount_client import ShopifyDiscountClient
from winback.services.telnyx_client import TelnyxClient


def _telnyx(handler, **kwargs):
    return TelnyxClient(
        api_key="KEY_TEST",
        from_number="+12015550000",
        messaging_profile_id="profile-1",
        webhook_url="https://example.com/webhooks/telnyx",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestTelnyxClient:

    def test_send_success(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": {"id": "msg-abc", "to": [{"status": "queued"}]}})

        result = asyncio.run(_telnyx(handler).send("(201) 555-0123", "hello"))

        assert result.success is True
        assert result.message_id == "msg-abc"
        assert result.status == "queued"

        request = seen[0]
        assert request.url.path == "/v2/messages"
        assert request.headers["Authorization"] == "Bearer KEY_TEST"
        body = json.loads(request.content)
        assert body["to"] == "+12015550123"
        assert body["from"] == "+12015550000"
        assert body["text"] == "hello"
        assert body["messaging_profile_id"] == "profile-1"
        assert body["webhook_url"] == "https://example.com/webhooks/telnyx"

    def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(422, json={"errors": [{"code": "40310", "detail": "Invalid 'to' address"}]})

        result = asyncio.run(_telnyx(handler).send("2015550123", "hello"))

        assert result.success is False
        assert "Invalid 'to' address" in result.error
        assert len(calls) == 1

    def test_rate_limit_retried(self):
        responses = iter([
            httpx.Response(429, headers={"Retry-After": "0"}),
            httpx.Response(200, json={"data": {"id": "msg-2", "to": [{"status": "sent"}]}}),
        ])

        result = asyncio.run(_telnyx(lambda request: next(responses)).send("2015550123", "hello"))

        assert result.success is True
        assert result.message_id == "msg-2"

    def test_missing_message_id(self):
        result = asyncio.run(_telnyx(lambda request: httpx.Response(200, json={"data": {}})).send("2015550123", "x"))
        assert result.success is False

    def test_invalid_phone_never_calls_api(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        result = asyncio.run(_telnyx(handler).send("12345", "hello"))

        assert result.success is False
        assert calls == []


class TestShopifyDiscountClient:

    STARTS = datetime(2026, 6, 10, 18, 0, tzinfo=timezone.utc)

    def _client(self, handler):
        return ShopifyDiscountClient(
            "pickles.myshopify.com",
            "shpat_test",
            transport=httpx.MockTransport(handler),
        )

    def test_create_code(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path.endswith("/price_rules.json"):
                return httpx.Response(201, json={"price_rule": {"id": 555}})
            return httpx.Response(201, json={"discount_code": {"id": 777, "code": "JP2-AB3K9"}})

        result = asyncio.run(
            self._client(handler).create_code("JP2-AB3K9", 28, self.STARTS, self.STARTS + timedelta(hours=4))
        )

        assert result.success is True
        assert result.id == "777"
        assert result.price_rule_id == "555"

        rule_request, code_request = seen
        assert rule_request.url.path == "/admin/api/2024-01/price_rules.json"
        assert rule_request.headers["X-Shopify-Access-Token"] == "shpat_test"
        rule = json.loads(rule_request.content)["price_rule"]
        assert rule["value"] == "-28"
        assert rule["value_type"] == "percentage"
        assert rule["usage_limit"] == 1
        assert rule["once_per_customer"] is True
        assert rule["ends_at"] == "2026-06-10T22:00:00+00:00"

        assert code_request.url.path == "/admin/api/2024-01/price_rules/555/discount_codes.json"
        assert json.loads(code_request.content) == {"discount_code": {"code": "JP2-AB3K9"}}

    def test_validation_error(self):
        result = asyncio.run(
            self._client(lambda request: httpx.Response(422, json={"errors": {"code": ["must be unique"]}}))
            .create_code("JP2-AB3K9", 20, self.STARTS, None)
        )

        assert result.success is False
        assert "422" in result.error

    def test_unexpected_response_shape(self):
        result = asyncio.run(
            self._client(lambda request: httpx.Response(201, json={"unexpected": True}))
            .create_code("JP2-AB3K9", 20, self.STARTS, None)
        )

        assert result.success is False
        assert "Unexpected" in result.error
