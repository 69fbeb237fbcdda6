"""Subscriber enrollment endpoint.

WHAT:
    POST /subscribers - popup signup: creates the subscriber, issues the
    primary code and sends the welcome SMS.

REFERENCES:
    - winback/services/enrollment_service.py
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import RecoveryConfig, get_discount_client, get_recovery_config, get_transport
from ..schemas import SubscriberCreate, SubscriberOut
from ..services.code_issuer import CodeIssuer
from ..services.enrollment_service import EnrollmentService
from ..services.errors import InvalidPhoneError, IssuanceError
from ..services.shopify_discount_client import ShopifyDiscountClient
from ..services.subscriber_store import SubscriberStore
from ..services.telnyx_client import TelnyxClient
from ..telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscribers", tags=["Subscribers"])


@router.post("")
async def enroll_subscriber(
    payload: SubscriberCreate,
    db: Session = Depends(get_db),
    config: RecoveryConfig = Depends(get_recovery_config),
    transport: Optional[TelnyxClient] = Depends(get_transport),
    discount_client: Optional[ShopifyDiscountClient] = Depends(get_discount_client),
):
    """Enroll a phone number.

    Returns 201 for a new subscriber, 200 when the phone is already enrolled.
    """
    if transport is None or discount_client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="SMS or discount provider not configured",
        )

    store = SubscriberStore(db)
    service = EnrollmentService(store, CodeIssuer(store, discount_client, config), transport)

    try:
        result = await service.enroll(
            payload.phone,
            email=payload.email,
            first_name=payload.first_name,
            source=payload.source,
        )
    except InvalidPhoneError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid phone number. Please enter a valid 10-digit US phone number.",
        )
    except IssuanceError as e:
        logger.error(f"[SUBSCRIBERS] Primary code issuance failed: {e.message}")
        capture_exception(e, extra={"operation": "enroll", "subscriber_id": e.subscriber_id})
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not create your discount code, please try again",
        )

    body = {
        "subscriber": SubscriberOut.model_validate(result.subscriber).model_dump(mode="json"),
        "already_subscribed": result.already_subscribed,
        "sms_sent": result.sms_sent,
        "sms_error": result.error,
    }
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK,
        content=body,
    )
