"""
Recovery Analytics.

WHAT:
    Read-only aggregations over sms_subscribers: how many first and recovery
    messages went out, how many converted through each, and the revenue.

WHY:
    The point of the recovery message is incremental revenue. The breakdown
    separates conversions by the code that caused them, which is only
    meaningful because attribution writes each conversion exactly once.

RATES:
    first_conversion   = first conversions / first messages delivered
    second_conversion  = recovery conversions / recovery messages delivered
    recovery           = recovery conversions / recovery messages sent
    All are percentages rounded to one decimal, 0.0 when the base is zero.

REFERENCES:
    - winback/routers/recovery.py (GET /recovery/stats)
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import case, func

from ..models import CodeNamespaceEnum, MessageStatusEnum, RecoveryStateEnum, Subscriber
from .subscriber_store import SubscriberStore


def _rate(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator * 100.0 / denominator, 1)


def _count_if(condition):
    return func.sum(case((condition, 1), else_=0))


def _sum_if(condition, column):
    return func.sum(case((condition, column), else_=0))


class RecoveryAnalytics:
    """
    Usage:
        breakdown = RecoveryAnalytics(store).conversion_breakdown()
    """

    def __init__(self, store: SubscriberStore):
        self.store = store

    def conversion_breakdown(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        criteria = []
        if since is not None:
            criteria.append(Subscriber.created_at >= since)
        if until is not None:
            criteria.append(Subscriber.created_at <= until)

        recovery_sent = Subscriber.recovery_state.in_([
            RecoveryStateEnum.sent,
            RecoveryStateEnum.converted,
        ]) & Subscriber.recovery_message_id.isnot(None)
        converted_first = Subscriber.converted.is_(True) & (Subscriber.converted_with == CodeNamespaceEnum.primary)
        converted_second = Subscriber.converted.is_(True) & (Subscriber.converted_with == CodeNamespaceEnum.recovery)

        row = self.store.aggregate(
            {
                "total": func.count(Subscriber.id),
                "first_sent": _count_if(Subscriber.first_message_sent.is_(True)),
                "first_delivered": _count_if(Subscriber.first_message_status == MessageStatusEnum.delivered),
                "second_sent": _count_if(recovery_sent),
                "second_delivered": _count_if(Subscriber.recovery_status == MessageStatusEnum.delivered),
                "second_failed": _count_if(
                    Subscriber.recovery_status.in_([MessageStatusEnum.failed, MessageStatusEnum.undelivered])
                ),
                "second_pending": _count_if(
                    Subscriber.recovery_state.in_([RecoveryStateEnum.pending, RecoveryStateEnum.scheduled])
                    & Subscriber.converted.is_(False)
                    & Subscriber.first_message_sent.is_(True)
                ),
                "conversions_first": _count_if(converted_first),
                "conversions_second": _count_if(converted_second),
                "revenue_first": _sum_if(converted_first, Subscriber.conversion_order_total),
                "revenue_second": _sum_if(converted_second, Subscriber.conversion_order_total),
                "discount_total": _sum_if(Subscriber.converted.is_(True), Subscriber.conversion_discount_amount),
                "avg_time_to_convert": func.avg(Subscriber.time_to_convert_minutes),
            },
            *criteria,
        )

        def n(key) -> int:
            return int(row.get(key) or 0)

        revenue_first = float(row.get("revenue_first") or 0)
        revenue_second = float(row.get("revenue_second") or 0)
        avg = row.get("avg_time_to_convert")

        conversions_first = n("conversions_first")
        conversions_second = n("conversions_second")

        return {
            "total_subscribers": n("total"),
            "first_sms": {
                "sent": n("first_sent"),
                "delivered": n("first_delivered"),
            },
            "second_sms": {
                "sent": n("second_sent"),
                "delivered": n("second_delivered"),
                "failed": n("second_failed"),
                "pending": n("second_pending"),
            },
            "conversions": {
                "first": conversions_first,
                "second": conversions_second,
                "none": n("total") - conversions_first - conversions_second,
            },
            "revenue": {
                "first": round(revenue_first, 2),
                "second": round(revenue_second, 2),
                "total": round(revenue_first + revenue_second, 2),
                "discounts": round(float(row.get("discount_total") or 0), 2),
            },
            "avg_time_to_convert_minutes": round(float(avg), 1) if avg is not None else None,
            "rates": {
                "first_conversion": _rate(conversions_first, n("first_delivered")),
                "second_conversion": _rate(conversions_second, n("second_delivered")),
                "recovery": _rate(conversions_second, n("second_sent")),
            },
        }

    def lifecycle_counts(self) -> Dict[str, int]:
        """Number of subscribers in each recovery_state."""
        counts = {state.value: 0 for state in RecoveryStateEnum}
        rows = self.store.db.query(Subscriber.recovery_state, func.count(Subscriber.id)).group_by(
            Subscriber.recovery_state
        )
        for state, count in rows:
            counts[state.value if hasattr(state, "value") else str(state)] = int(count)
        return counts
