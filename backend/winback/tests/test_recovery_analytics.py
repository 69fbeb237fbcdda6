"""Tests for the recovery conversion breakdown.

REFERENCES:
  - winback/services/recovery_analytics.py
"""

from datetime import timedelta
from decimal import Decimal

from winback.models import CodeNamespaceEnum, MessageStatusEnum, RecoveryStateEnum
from winback.services.recovery_analytics import RecoveryAnalytics


def test_conversion_breakdown(store, make_subscriber):
    make_subscriber(
        converted=True,
        converted_with=CodeNamespaceEnum.primary,
        recovery_state=RecoveryStateEnum.converted,
        conversion_order_total=Decimal("30.00"),
        conversion_discount_amount=Decimal("4.50"),
        time_to_convert_minutes=100,
    )
    make_subscriber(
        recovery_sent=True,
        recovery_message_id="r-1",
        recovery_status=MessageStatusEnum.delivered,
        converted=True,
        converted_with=CodeNamespaceEnum.recovery,
        recovery_state=RecoveryStateEnum.converted,
        conversion_order_total=Decimal("40.00"),
        conversion_discount_amount=Decimal("11.20"),
        time_to_convert_minutes=59,
    )
    make_subscriber(
        recovery_sent=True,
        recovery_status=MessageStatusEnum.failed,
        recovery_state=RecoveryStateEnum.failed,
    )
    make_subscriber()

    stats = RecoveryAnalytics(store).conversion_breakdown()

    assert stats["total_subscribers"] == 4
    assert stats["first_sms"] == {"sent": 4, "delivered": 4}
    assert stats["second_sms"] == {"sent": 1, "delivered": 1, "failed": 1, "pending": 1}
    assert stats["conversions"] == {"first": 1, "second": 1, "none": 2}
    assert stats["revenue"] == {"first": 30.0, "second": 40.0, "total": 70.0, "discounts": 15.7}
    assert stats["avg_time_to_convert_minutes"] == 79.5
    assert stats["rates"] == {"first_conversion": 25.0, "second_conversion": 100.0, "recovery": 100.0}


def test_breakdown_respects_date_range(store, make_subscriber, clock):
    make_subscriber()
    clock.advance(days=2)
    make_subscriber()

    stats = RecoveryAnalytics(store).conversion_breakdown(since=clock.now() - timedelta(days=1))

    assert stats["total_subscribers"] == 1


def test_empty_breakdown_has_zero_rates(store):
    stats = RecoveryAnalytics(store).conversion_breakdown()

    assert stats["total_subscribers"] == 0
    assert stats["avg_time_to_convert_minutes"] is None
    assert stats["rates"]["recovery"] == 0.0


def test_lifecycle_counts(store, make_subscriber):
    make_subscriber()
    make_subscriber(recovery_state=RecoveryStateEnum.scheduled)
    make_subscriber(recovery_state=RecoveryStateEnum.scheduled)

    counts = RecoveryAnalytics(store).lifecycle_counts()

    assert counts["pending"] == 1
    assert counts["scheduled"] == 2
    assert counts["converted"] == 0
