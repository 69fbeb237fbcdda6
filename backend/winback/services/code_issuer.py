"""
Incentive Code Issuer.

WHAT:
    Generates globally unique discount codes, reserves them on the subscriber
    row and registers them with the store's discount API.

WHY:
    Codes are the attribution key: an order is credited to a message only
    through the exact code it carried. They must therefore never collide,
    across both namespaces (primary JP-, recovery JP2-). The pre-check
    against both columns keeps retries cheap; the unique indexes on
    primary_code / recovery_code are the final arbiter when two workers draw
    the same code at the same time.

FLOW:
    generate_unique_code -> reserve on row (conditional update) ->
    draw percent -> register with Shopify -> record discount id.
    A failed registration raises IssuanceError; the caller unlocks.

REFERENCES:
    - winback/services/shopify_discount_client.py
    - winback/services/claim_manager.py (unlock on IssuanceError)
"""

import logging
import random
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError

from ..deps import RecoveryConfig
from ..models import CodeNamespaceEnum, RecoveryStateEnum
from .clock import Clock
from .errors import IssuanceError
from .shopify_discount_client import ShopifyDiscountClient
from .subscriber_store import SubscriberStore

logger = logging.getLogger(__name__)

# No I, O, 0, 1 to avoid confusion when typed from an SMS
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 5
MAX_GENERATION_ATTEMPTS = 10
MAX_RESERVATION_ATTEMPTS = 3

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_code(prefix: str) -> str:
    """Draw one candidate code, e.g. 'JP2-AB3K9'."""
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    return f"{prefix}-{suffix}"


def fallback_code(prefix: str) -> str:
    """Timestamp-derived code used after repeated collisions."""
    return f"{prefix}-{_to_base36(int(time.time() * 1000))[-CODE_LENGTH:]}"


@dataclass
class IssuedCode:
    """A code reserved on a subscriber and registered with the store."""

    code: str
    percent: int
    namespace: CodeNamespaceEnum
    starts_at: datetime
    ends_at: Optional[datetime]
    discount_id: Optional[str] = None
    price_rule_id: Optional[str] = None


class CodeIssuer:
    """
    Usage:
        issuer = CodeIssuer(store, discount_client, config)
        issued = await issuer.issue_code(subscriber.id, CodeNamespaceEnum.recovery)
    """

    def __init__(
        self,
        store: SubscriberStore,
        discount_client: ShopifyDiscountClient,
        config: Optional[RecoveryConfig] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.discount_client = discount_client
        self.config = config or RecoveryConfig()
        self.clock = clock or store.clock
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def prefix_for(self, namespace: CodeNamespaceEnum) -> str:
        if namespace == CodeNamespaceEnum.recovery:
            return self.config.recovery_prefix
        return self.config.primary_prefix

    def generate_unique_code(self, prefix: str) -> str:
        """Return a code not present in either code column."""
        for _ in range(MAX_GENERATION_ATTEMPTS):
            code = generate_code(prefix)
            if not self.store.code_exists(code):
                return code
        code = fallback_code(prefix)
        logger.warning(f"[ISSUER] {MAX_GENERATION_ATTEMPTS} collisions, using fallback code {code}")
        return code

    def draw_percent(self, namespace: CodeNamespaceEnum) -> int:
        if namespace == CodeNamespaceEnum.primary:
            return self.config.primary_percent
        low, high = self.config.recovery_percent_min, self.config.recovery_percent_max
        if low == high:
            return low
        return self.rng.randint(low, high)

    def expiration_for(self, namespace: CodeNamespaceEnum) -> timedelta:
        if namespace == CodeNamespaceEnum.recovery:
            return timedelta(hours=self.config.recovery_expiration_hours)
        return timedelta(hours=self.config.primary_expiration_hours)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def _columns(self, namespace: CodeNamespaceEnum) -> Dict[str, str]:
        p = "recovery" if namespace == CodeNamespaceEnum.recovery else "primary"
        return {
            "code": f"{p}_code",
            "percent": f"{p}_percent",
            "expires_at": f"{p}_expires_at",
            "discount_id": f"{p}_discount_id",
        }

    def _reservation_guard(self, namespace: CodeNamespaceEnum, code_column: str) -> Dict:
        guard = {code_column: None}
        if namespace == CodeNamespaceEnum.recovery:
            # Only the worker holding the dispatch lock may reserve a recovery code
            guard["recovery_state"] = [RecoveryStateEnum.claimed]
            guard["recovery_sent"] = True
        return guard

    def _reserve(self, subscriber_id, namespace: CodeNamespaceEnum, percent: int, ends_at: datetime) -> str:
        cols = self._columns(namespace)
        prefix = self.prefix_for(namespace)

        for attempt in range(MAX_RESERVATION_ATTEMPTS):
            code = self.generate_unique_code(prefix)
            try:
                row = self.store.conditional_update(
                    subscriber_id,
                    expected=self._reservation_guard(namespace, cols["code"]),
                    fields={
                        cols["code"]: code,
                        cols["percent"]: percent,
                        cols["expires_at"]: ends_at,
                    },
                )
            except IntegrityError:
                # Another subscriber took the same code between check and write
                logger.warning(f"[ISSUER] Code {code} taken concurrently (attempt {attempt + 1})")
                continue

            if row is None:
                raise IssuanceError(
                    f"Cannot reserve {namespace.value} code: subscriber not in a reservable state",
                    subscriber_id=str(subscriber_id),
                    code=code,
                )
            return code

        raise IssuanceError(
            f"Could not reserve a unique {namespace.value} code after {MAX_RESERVATION_ATTEMPTS} attempts",
            subscriber_id=str(subscriber_id),
        )

    async def issue_code(self, subscriber_id, namespace: CodeNamespaceEnum) -> IssuedCode:
        """Reserve and register a code for the subscriber.

        Raises:
            IssuanceError: If the code could not be reserved or registered
        """
        starts_at = self.clock.now()
        ends_at = starts_at + self.expiration_for(namespace)
        percent = self.draw_percent(namespace)

        code = self._reserve(subscriber_id, namespace, percent, ends_at)

        result = await self.discount_client.create_code(code, percent, starts_at, ends_at)
        if not result.success:
            raise IssuanceError(
                f"Shopify: {result.error}",
                subscriber_id=str(subscriber_id),
                code=code,
            )

        cols = self._columns(namespace)
        self.store.conditional_update(
            subscriber_id,
            expected={cols["code"]: code},
            fields={cols["discount_id"]: result.id},
        )

        logger.info(f"[ISSUER] Issued {code} ({percent}%) expiring {ends_at.isoformat()}")
        return IssuedCode(
            code=code,
            percent=percent,
            namespace=namespace,
            starts_at=starts_at,
            ends_at=ends_at,
            discount_id=result.id,
            price_rule_id=result.price_rule_id,
        )
