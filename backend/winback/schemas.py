"""Pydantic schemas for webhook payloads and API responses."""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import CodeNamespaceEnum, MessageStatusEnum, RecoveryStateEnum, SubscriberStatusEnum

# Bound on line items copied into conversion_data
MAX_LINE_ITEMS = 20


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal("0")
    except (InvalidOperation, ValueError):
        return Decimal("0")


# =============================================================================
# INBOUND ORDERS
# =============================================================================

class OrderDiscountCode(BaseModel):
    """One discount code applied to an order."""

    code: str
    amount: Decimal = Decimal("0")


class OrderLineItem(BaseModel):
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    title: Optional[str] = None
    quantity: int = 0
    price: Decimal = Decimal("0")


class OrderEvent(BaseModel):
    """A paid order, normalised from the Shopify orders/paid payload.

    WHAT: Conversion input for the attributor
    WHY: The webhook handler and tests build the same value without
         depending on the raw Shopify shape.
    """

    order_id: str
    order_name: Optional[str] = None
    discount_codes: List[OrderDiscountCode] = Field(default_factory=list)
    total: Decimal = Decimal("0")
    subtotal: Decimal = Decimal("0")
    currency: str = "USD"
    line_items: List[OrderLineItem] = Field(default_factory=list)
    created_at: datetime
    customer_email: Optional[str] = None

    @classmethod
    def from_shopify_payload(cls, payload: Dict[str, Any]) -> "OrderEvent":
        codes = [
            OrderDiscountCode(code=str(dc.get("code") or "").strip().upper(), amount=_decimal(dc.get("amount")))
            for dc in payload.get("discount_codes") or []
            if dc.get("code")
        ]
        items = [
            OrderLineItem(
                product_id=str(item["product_id"]) if item.get("product_id") is not None else None,
                variant_id=str(item["variant_id"]) if item.get("variant_id") is not None else None,
                title=item.get("title"),
                quantity=int(item.get("quantity") or 0),
                price=_decimal(item.get("price")),
            )
            for item in (payload.get("line_items") or [])[:MAX_LINE_ITEMS]
        ]
        total = _decimal(payload.get("total_price"))
        order_name = payload.get("name") or (
            str(payload["order_number"]) if payload.get("order_number") is not None else None
        )
        return cls(
            order_id=str(payload.get("id")),
            order_name=order_name,
            discount_codes=codes,
            total=total,
            subtotal=_decimal(payload.get("subtotal_price")) if payload.get("subtotal_price") else total,
            currency=payload.get("currency") or "USD",
            line_items=items,
            created_at=payload.get("created_at") or payload.get("processed_at") or datetime.now(timezone.utc),
            customer_email=payload.get("email"),
        )


# =============================================================================
# SUBSCRIBERS
# =============================================================================

class SubscriberCreate(BaseModel):
    """Payload for popup enrollment."""

    phone: str = Field(description="Phone number, any common US format", examples=["(201) 555-0123"])
    email: Optional[str] = None
    first_name: Optional[str] = None
    source: str = "popup"


class SubscriberOut(BaseModel):
    id: UUID
    phone: str
    status: SubscriberStatusEnum
    first_message_status: MessageStatusEnum
    primary_code: Optional[str] = None
    primary_percent: Optional[int] = None
    recovery_state: RecoveryStateEnum
    recovery_status: Optional[MessageStatusEnum] = None
    recovery_code: Optional[str] = None
    recovery_scheduled_for: Optional[datetime] = None
    converted: bool
    converted_with: Optional[CodeNamespaceEnum] = None
    created_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# RECOVERY
# =============================================================================

class RecoveryCycleResult(BaseModel):
    """Summary of one recovery cycle."""

    skipped: bool = False
    reason: Optional[str] = None
    next_window: Optional[datetime] = None
    scheduled: int = 0
    processed: int = 0
    sent: int = 0
    transport_failed: int = 0
    issuance_failed: int = 0
    claim_lost: int = 0
    not_eligible: int = 0
    errors: int = 0
    expired_claims: int = 0


class RecoveryStatus(BaseModel):
    quiet_hours: Dict[str, Any]
    pending: int
    scheduled: int
    ready: int
    claimed: int
    failed: int


class AttributionOut(BaseModel):
    code: str
    namespace: Optional[CodeNamespaceEnum] = None
    outcome: str
    subscriber_id: Optional[UUID] = None
    time_to_convert_minutes: Optional[int] = None
