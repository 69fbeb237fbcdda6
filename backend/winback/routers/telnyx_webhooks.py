"""Telnyx messaging webhooks.

WHAT:
    Receives delivery receipts (message.sent / message.finalized) and inbound
    messages (message.received) from Telnyx.

WHY:
    Delivery receipts decide whether a subscriber's first message counts as
    delivered, which starts the recovery window. Inbound STOP replies must
    unsubscribe before the next cycle runs.

SIGNATURE:
    Telnyx signs "{telnyx-timestamp}|{raw body}" with Ed25519. The public key
    (base64, from the Mission Control portal) is TELNYX_PUBLIC_KEY. Requests
    older than SIGNATURE_TOLERANCE_SECONDS are rejected to limit replays.

REFERENCES:
    - https://developers.telnyx.com/docs/messaging/messages/receiving-webhooks
    - winback/services/subscriber_events.py
"""

import base64
import binascii
import logging
import time
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_settings, get_transport
from ..services.subscriber_events import SubscriberEventService
from ..services.subscriber_store import SubscriberStore
from ..services.telnyx_client import TelnyxClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/telnyx", tags=["Telnyx Webhooks"])

SIGNATURE_TOLERANCE_SECONDS = 300

DELIVERY_EVENTS = {"message.sent", "message.finalized"}
INBOUND_EVENTS = {"message.received"}


def verify_telnyx_webhook(
    request_body: bytes,
    signature_header: Optional[str],
    timestamp_header: Optional[str],
    public_key: Optional[str],
    now: Optional[float] = None,
) -> bool:
    """Verify a Telnyx webhook signature (Ed25519).

    Args:
        request_body: Raw request body bytes
        signature_header: telnyx-signature-ed25519 header (base64)
        timestamp_header: telnyx-timestamp header (unix seconds)
        public_key: TELNYX_PUBLIC_KEY (base64 raw 32-byte key)

    Returns:
        True if signature is valid and fresh, False otherwise
    """
    if not public_key:
        logger.error("[TELNYX_WEBHOOK] TELNYX_PUBLIC_KEY not configured")
        return False

    if not signature_header or not timestamp_header:
        logger.warning("[TELNYX_WEBHOOK] Missing signature headers")
        return False

    try:
        sent_at = int(timestamp_header)
    except ValueError:
        logger.warning("[TELNYX_WEBHOOK] Malformed timestamp header")
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > SIGNATURE_TOLERANCE_SECONDS:
        logger.warning("[TELNYX_WEBHOOK] Stale webhook timestamp")
        return False

    try:
        key = Ed25519PublicKey.from_public_bytes(base64.b64decode(public_key))
        signature = base64.b64decode(signature_header)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"[TELNYX_WEBHOOK] Could not decode key or signature: {e}")
        return False

    signed_payload = timestamp_header.encode("utf-8") + b"|" + request_body
    try:
        key.verify(signature, signed_payload)
    except InvalidSignature:
        logger.warning("[TELNYX_WEBHOOK] Invalid signature")
        return False
    return True


@router.post("")
async def handle_telnyx_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    transport: Optional[TelnyxClient] = Depends(get_transport),
):
    """Handle Telnyx messaging events.

    Unknown event types and unknown message ids are acknowledged with 200 so
    Telnyx does not retry them.
    """
    body = await request.body()
    if not verify_telnyx_webhook(
        body,
        request.headers.get("telnyx-signature-ed25519"),
        request.headers.get("telnyx-timestamp"),
        settings.TELNYX_PUBLIC_KEY,
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        envelope = await request.json()
    except ValueError as e:
        logger.error(f"[TELNYX_WEBHOOK] Failed to parse JSON: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    data = envelope.get("data") or {}
    event_type = data.get("event_type")
    payload = data.get("payload") or {}
    events = SubscriberEventService(SubscriberStore(db), transport)

    if event_type in DELIVERY_EVENTS:
        recipients = payload.get("to") or [{}]
        errors = payload.get("errors") or []
        error = errors[0].get("detail") if errors else None
        updated = events.apply_delivery_status(payload.get("id"), recipients[0].get("status"), error)
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"event_type": event_type, "updated": updated},
        )

    if event_type in INBOUND_EVENTS:
        from_phone = (payload.get("from") or {}).get("phone_number")
        outcome = await events.handle_inbound(from_phone, payload.get("text") or "")
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"event_type": event_type, "outcome": outcome},
        )

    logger.debug(f"[TELNYX_WEBHOOK] Ignored event type {event_type}")
    return JSONResponse(status_code=status.HTTP_200_OK, content={"event_type": event_type, "ignored": True})
