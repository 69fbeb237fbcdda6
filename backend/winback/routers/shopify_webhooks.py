"""Shopify webhooks for conversion attribution.

WHAT:
    Receives orders/paid and credits the order to the SMS whose discount
    code it carried.

WHY:
    orders/paid means real revenue (not an abandoned checkout). Shopify
    retries until it gets a 2xx, so the handler must be idempotent: the
    attributor only writes when the owning subscriber has not converted yet,
    and a replay of the same order is acknowledged without changes.

WEBHOOKS:
    orders/paid - Order payment confirmed (TRIGGERS ATTRIBUTION)

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - winback/services/attribution_service.py
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import RecoveryConfig, Settings, get_recovery_config, get_settings
from ..schemas import AttributionOut, OrderEvent
from ..services.attribution_service import ConversionAttributor
from ..services.subscriber_store import SubscriberStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["Shopify Webhooks"])


# =============================================================================
# HMAC VERIFICATION
# =============================================================================

def verify_shopify_webhook(request_body: bytes, hmac_header: Optional[str], secret: Optional[str]) -> bool:
    """Verify that webhook request came from Shopify using HMAC.

    WHAT: Validates webhook signature using the app's shared secret
    WHY: Prevent forged orders from creating conversions

    Args:
        request_body: Raw request body bytes
        hmac_header: X-Shopify-Hmac-SHA256 header value
        secret: SHOPIFY_API_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret:
        logger.error("[SHOPIFY_WEBHOOK] SHOPIFY_API_SECRET not configured")
        return False

    if not hmac_header:
        logger.warning("[SHOPIFY_WEBHOOK] Missing HMAC header")
        return False

    computed_hmac = base64.b64encode(
        hmac.new(secret.encode("utf-8"), request_body, hashlib.sha256).digest()
    ).decode("utf-8")

    # Constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(computed_hmac, hmac_header)

    if not is_valid:
        logger.warning("[SHOPIFY_WEBHOOK] Invalid HMAC signature")

    return is_valid


# =============================================================================
# ORDERS
# =============================================================================

@router.post("/orders/paid")
async def handle_orders_paid(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    config: RecoveryConfig = Depends(get_recovery_config),
):
    """Handle orders/paid webhook - attributes SMS conversions.

    FLOW:
        1. Verify HMAC signature
        2. Normalise payload into an OrderEvent
        3. Attribute each SMS code (first per namespace wins)

    Store errors surface as 500 so Shopify redelivers.
    """
    body = await request.body()
    hmac_header = request.headers.get("X-Shopify-Hmac-SHA256")

    if not verify_shopify_webhook(body, hmac_header, settings.SHOPIFY_API_SECRET):
        logger.warning("[SHOPIFY_WEBHOOK] orders/paid - Invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        payload = await request.json()
        order = OrderEvent.from_shopify_payload(payload)
    except ValueError as e:
        logger.error(f"[SHOPIFY_WEBHOOK] Failed to parse payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    logger.info(
        f"[SHOPIFY_WEBHOOK] orders/paid received",
        extra={
            "order_id": order.order_id,
            "order_name": order.order_name,
            "discount_codes": [dc.code for dc in order.discount_codes],
            "total_price": str(order.total),
        }
    )

    if not order.discount_codes:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"message": "No discount codes, webhook acknowledged", "order_id": order.order_id},
        )

    attributor = ConversionAttributor(SubscriberStore(db), config)
    result = attributor.attribute(order)

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "message": "Order processed",
            "order_id": order.order_id,
            "converted": result.any_converted,
            "attributions": [
                AttributionOut(
                    code=a.code,
                    namespace=a.namespace,
                    outcome=a.outcome,
                    subscriber_id=a.subscriber_id,
                    time_to_convert_minutes=a.time_to_convert_minutes,
                ).model_dump(mode="json")
                for a in result.attributions
            ],
        },
    )
