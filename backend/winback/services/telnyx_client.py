"""Telnyx Messaging API client.

WHAT:
    Sends SMS through Telnyx Messaging API v2 and normalises the outcome
    into a TransportResult.

WHY:
    The dispatcher must never see an exception from the transport: a failed
    send is recorded on the subscriber and the lock is kept, so errors are
    mapped to TransportResult(success=False, ...) here. 429s are retried
    after Retry-After, connection errors after a short backoff.

REFERENCES:
    - Telnyx send message: https://developers.telnyx.com/api/messaging/send-message
    - winback/services/dispatcher.py (consumer)
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.telnyx.com/v2"


@dataclass
class TransportResult:
    """Outcome of one send attempt."""

    success: bool
    message_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Normalise a North American number to E.164, None when unusable.

    Examples:
        "(201) 555-0123" -> "+12015550123"
        "12015550123"    -> "+12015550123"
        "+442071234567"  -> "+442071234567"
    """
    if not phone:
        return None

    cleaned = re.sub(r"[^\d+]", "", str(phone))

    if cleaned.startswith("+1") and len(cleaned) == 12:
        return cleaned
    if cleaned.startswith("+"):
        return cleaned if len(cleaned) >= 11 else None
    if cleaned.startswith("1") and len(cleaned) == 11:
        return "+" + cleaned
    if len(cleaned) == 10:
        return "+1" + cleaned
    return None


class TelnyxClient:
    """HTTP client for Telnyx Messaging API v2.

    Usage:
        client = TelnyxClient(api_key="KEY...", from_number="+12015550000",
                              messaging_profile_id="uuid")
        result = await client.send("+12015550123", "Hello")
    """

    def __init__(
        self,
        api_key: str,
        from_number: str,
        messaging_profile_id: Optional[str] = None,
        webhook_url: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 15.0,
        retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.from_number = from_number
        self.messaging_profile_id = messaging_profile_id
        self.webhook_url = webhook_url
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = max(1, retries)
        # Injected in tests (httpx.MockTransport)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "TelnyxClient":
        if not settings.TELNYX_API_KEY or not settings.TELNYX_FROM_NUMBER:
            raise RuntimeError("Telnyx credentials not configured (TELNYX_API_KEY, TELNYX_FROM_NUMBER)")
        return cls(
            api_key=settings.TELNYX_API_KEY,
            from_number=settings.TELNYX_FROM_NUMBER,
            messaging_profile_id=settings.TELNYX_MESSAGING_PROFILE_ID,
            webhook_url=settings.TELNYX_WEBHOOK_URL,
        )

    def _build_payload(self, to: str, text: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "from": self.from_number,
            "to": to,
            "text": text,
        }
        if self.messaging_profile_id:
            payload["messaging_profile_id"] = self.messaging_profile_id
        if self.webhook_url:
            payload["webhook_url"] = self.webhook_url
            payload["webhook_failover_url"] = self.webhook_url
        return payload

    async def _post_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST /messages with retry on 429 and connection errors.

        Raises:
            TransportError: On 4xx/5xx responses or when retries are exhausted
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        last_error: Optional[Exception] = None

        for attempt in range(self.retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.post(f"{self.base_url}/messages", json=payload, headers=headers)

                if response.status_code == 429:
                    retry_after = float(response.headers.get("Retry-After", 1))
                    logger.warning(
                        f"[TELNYX] Rate limited, waiting {retry_after}s (attempt {attempt + 1}/{self.retries})"
                    )
                    last_error = TransportError("Rate limited", status_code=429)
                    await asyncio.sleep(retry_after)
                    continue

                if response.status_code >= 400:
                    errors = []
                    try:
                        errors = response.json().get("errors", [])
                    except ValueError:
                        pass
                    detail = errors[0].get("detail") if errors else response.text[:200]
                    # Client errors (invalid number, blocked) are not retried
                    raise TransportError(
                        f"Telnyx {response.status_code}: {detail}",
                        status_code=response.status_code,
                        errors=errors,
                    )

                return response.json()

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"[TELNYX] Request error: {e} (attempt {attempt + 1}/{self.retries})")
                if attempt < self.retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

        raise TransportError(f"Failed after {self.retries} attempts: {last_error}")

    async def send(self, to: str, text: str) -> TransportResult:
        """Send one SMS. Never raises for transport-level problems."""
        formatted = normalize_phone(to)
        if not formatted:
            return TransportResult(success=False, error="Invalid phone number format")

        try:
            body = await self._post_message(self._build_payload(formatted, text))
        except TransportError as e:
            logger.error(f"[TELNYX] Send to {formatted} failed: {e.message}")
            return TransportResult(success=False, error=e.message)

        data = body.get("data") or {}
        recipients = data.get("to") or [{}]
        message_id = data.get("id")
        if not message_id:
            return TransportResult(success=False, error="Telnyx response missing message id")

        status = recipients[0].get("status") or "queued"
        logger.info(f"[TELNYX] SMS queued - ID: {message_id}, status: {status}")
        return TransportResult(success=True, message_id=message_id, status=status)
