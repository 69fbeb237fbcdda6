"""
Conversion Attributor.

WHAT:
    Credits a paid order to the SMS (first or recovery) whose discount code
    it used, exactly once per subscriber.

WHY:
    Shopify delivers order webhooks at least once; the same order can arrive
    twice, and two different orders can race for the same subscriber. The
    write is a conditional update on converted = false, so replays and
    losers of the race change nothing. Revenue reports read these fields
    directly, so a double write would double-count revenue.

CLASSIFICATION:
    Codes are upper-cased and trimmed, then matched by prefix. The recovery
    prefix is checked first because it shares the primary prefix's letters
    (JP2- vs JP-). Only the first code per namespace in an order counts.

REFERENCES:
    - winback/routers/shopify_webhooks.py (orders/paid handler)
    - winback/schemas.py (OrderEvent)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..deps import RecoveryConfig
from ..models import CodeNamespaceEnum, RecoveryStateEnum, Subscriber
from ..schemas import OrderDiscountCode, OrderEvent
from .clock import ensure_utc
from .lifecycle import sources_for
from .subscriber_store import SubscriberStore

logger = logging.getLogger(__name__)


@dataclass
class CodeAttribution:
    """Outcome for one code found on an order."""

    code: str
    namespace: Optional[CodeNamespaceEnum]
    outcome: str  # converted, unmatched, already_converted, lost_race, duplicate_namespace, not_sms_code
    subscriber_id: Optional[Any] = None
    time_to_convert_minutes: Optional[int] = None


@dataclass
class AttributionResult:
    order_id: str
    attributions: List[CodeAttribution] = field(default_factory=list)

    @property
    def converted(self) -> List[CodeAttribution]:
        return [a for a in self.attributions if a.outcome == "converted"]

    @property
    def any_converted(self) -> bool:
        return bool(self.converted)


def _minutes_between(start: Optional[datetime], end: datetime) -> Optional[int]:
    if start is None:
        return None
    return int(round((ensure_utc(end) - ensure_utc(start)).total_seconds() / 60))


class ConversionAttributor:
    """
    Usage:
        attributor = ConversionAttributor(store, config)
        result = attributor.attribute(OrderEvent.from_shopify_payload(payload))
    """

    def __init__(self, store: SubscriberStore, config: Optional[RecoveryConfig] = None):
        self.store = store
        self.config = config or RecoveryConfig()

    def classify(self, code: str) -> Optional[CodeNamespaceEnum]:
        normalized = code.strip().upper()
        if normalized.startswith(f"{self.config.recovery_prefix.upper()}-"):
            return CodeNamespaceEnum.recovery
        if normalized.startswith(f"{self.config.primary_prefix.upper()}-"):
            return CodeNamespaceEnum.primary
        return None

    def _message_time(self, subscriber: Subscriber, namespace: CodeNamespaceEnum, code: str) -> Optional[datetime]:
        if namespace == CodeNamespaceEnum.recovery:
            sent_at = subscriber.recovery_at
            if subscriber.recovery_code != code:
                # Code from an attempt an operator released for resend
                retired = self.store.find_retired_code(code, namespace)
                sent_at = retired.sent_at if retired is not None else None
        else:
            sent_at = subscriber.first_message_at
        return sent_at or subscriber.created_at

    def _conversion_data(self, order: OrderEvent, discount: OrderDiscountCode, minutes: Optional[int]) -> Dict:
        products = [
            {
                "product_id": item.product_id,
                "variant_id": item.variant_id,
                "title": item.title,
                "quantity": item.quantity,
                "price": float(item.price),
            }
            for item in order.line_items
        ]
        return {
            "order_id": order.order_id,
            "order_name": order.order_name,
            "order_total": float(order.total),
            "subtotal": float(order.subtotal),
            "discount_amount": float(discount.amount),
            "currency": order.currency,
            "converted_at": ensure_utc(order.created_at).isoformat(),
            "time_to_convert_minutes": minutes,
            "products": products,
            "item_count": sum(p["quantity"] for p in products),
            "customer_email": order.customer_email,
        }

    def _attribute_code(
        self, order: OrderEvent, discount: OrderDiscountCode, namespace: CodeNamespaceEnum
    ) -> CodeAttribution:
        code = discount.code.strip().upper()
        owner = self.store.find_by_code(code, namespace)
        if owner is None:
            logger.info(f"[ATTRIBUTION] No subscriber for code {code}")
            return CodeAttribution(code=code, namespace=namespace, outcome="unmatched")

        if owner.converted:
            logger.info(f"[ATTRIBUTION] {owner.id} already converted with order {owner.conversion_order_id}")
            return CodeAttribution(code=code, namespace=namespace, outcome="already_converted", subscriber_id=owner.id)

        minutes = _minutes_between(self._message_time(owner, namespace, code), order.created_at)
        row = self.store.transition(
            owner.id,
            from_states=sorted(sources_for(RecoveryStateEnum.converted), key=lambda s: s.value),
            to_state=RecoveryStateEnum.converted,
            expected={"converted": False},
            fields={
                "converted": True,
                "converted_with": namespace,
                "conversion_order_id": order.order_id,
                "conversion_order_total": Decimal(order.total),
                "conversion_discount_amount": Decimal(discount.amount),
                "conversion_code": code,
                "converted_at": ensure_utc(order.created_at),
                "time_to_convert_minutes": minutes,
                "conversion_data": self._conversion_data(order, discount, minutes),
            },
        )
        if row is None:
            # A concurrent delivery of this or another order got there first
            logger.info(f"[ATTRIBUTION] Lost conversion race for {owner.id} (order {order.order_id})")
            return CodeAttribution(code=code, namespace=namespace, outcome="lost_race", subscriber_id=owner.id)

        logger.info(
            f"[ATTRIBUTION] Order {order.order_name or order.order_id} converted {owner.id} "
            f"via {namespace.value} code {code} (${order.total}, {minutes} min)"
        )
        return CodeAttribution(
            code=code,
            namespace=namespace,
            outcome="converted",
            subscriber_id=owner.id,
            time_to_convert_minutes=minutes,
        )

    def attribute(self, order: OrderEvent) -> AttributionResult:
        result = AttributionResult(order_id=order.order_id)
        seen_namespaces = set()

        for discount in order.discount_codes:
            namespace = self.classify(discount.code)
            if namespace is None:
                result.attributions.append(
                    CodeAttribution(code=discount.code, namespace=None, outcome="not_sms_code")
                )
                continue
            if namespace in seen_namespaces:
                result.attributions.append(
                    CodeAttribution(code=discount.code, namespace=namespace, outcome="duplicate_namespace")
                )
                continue
            seen_namespaces.add(namespace)
            result.attributions.append(self._attribute_code(order, discount, namespace))

        return result
