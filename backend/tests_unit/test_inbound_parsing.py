"""
Inbound Parsing Tests (Unit)
============================

WHAT: Phone normalisation and Shopify order payload normalisation.
WHY: Both feed exact-match lookups (phone -> subscriber, code -> subscriber);
     a formatting difference silently drops an enrollment or a conversion.

REFERENCES:
- backend/winback/services/telnyx_client.py:normalize_phone
- backend/winback/schemas.py:OrderEvent.from_shopify_payload
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from winback.schemas import MAX_LINE_ITEMS, OrderEvent
from winback.services.telnyx_client import normalize_phone


@pytest.mark.parametrize("raw,expected", [
    ("(201) 555-0123", "+12015550123"),
    ("201.555.0123", "+12015550123"),
    ("12015550123", "+12015550123"),
    ("+1 201 555 0123", "+12015550123"),
    ("+442071234567", "+442071234567"),
    ("555-0123", None),
    ("+123", None),
    ("", None),
    (None, None),
])
def test_normalize_phone(raw, expected) -> None:
    assert normalize_phone(raw) == expected


def test_order_event_from_shopify_payload() -> None:
    order = OrderEvent.from_shopify_payload({
        "id": 5551234,
        "order_number": 1042,
        "total_price": "40.00",
        "subtotal_price": "48.00",
        "currency": "USD",
        "discount_codes": [{"code": " jp2-ab3k9 ", "amount": "11.20"}, {"code": ""}],
        "line_items": [{"product_id": 1, "title": "Dill", "quantity": 2, "price": "24.00"}],
        "created_at": "2026-06-10T16:00:00-04:00",
        "email": "buyer@example.com",
    })

    assert order.order_id == "5551234"
    assert order.order_name == "1042"
    assert [dc.code for dc in order.discount_codes] == ["JP2-AB3K9"]
    assert order.discount_codes[0].amount == Decimal("11.20")
    assert order.total == Decimal("40.00")
    assert order.subtotal == Decimal("48.00")
    assert order.line_items[0].product_id == "1"
    assert order.created_at == datetime(2026, 6, 10, 20, 0, tzinfo=timezone.utc)


def test_order_event_bounds_line_items() -> None:
    order = OrderEvent.from_shopify_payload({
        "id": 1,
        "total_price": "1.00",
        "line_items": [{"title": f"Item {i}", "quantity": 1, "price": "1.00"} for i in range(50)],
        "created_at": "2026-06-10T16:00:00Z",
    })
    assert len(order.line_items) == MAX_LINE_ITEMS


def test_order_event_falls_back_to_processed_at() -> None:
    order = OrderEvent.from_shopify_payload({"id": 2, "processed_at": "2026-06-10T16:00:00Z"})
    assert order.created_at == datetime(2026, 6, 10, 16, 0, tzinfo=timezone.utc)
    assert order.discount_codes == []
    assert order.subtotal == Decimal("0")
