"""Shopify Admin REST discount client.

WHAT:
    Registers single-use percentage discount codes in Shopify: one price
    rule per code, then the discount code attached to it.

WHY:
    Every incentive code sent by SMS must exist in the store before the
    message goes out, with its own expiry and a usage limit of one.
    Failures are returned as DiscountResult(success=False) so the issuer
    can turn them into IssuanceError and release the claim.

REFERENCES:
    - Price rules: https://shopify.dev/docs/api/admin-rest/2024-01/resources/pricerule
    - Discount codes: https://shopify.dev/docs/api/admin-rest/2024-01/resources/discountcode
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from .errors import DiscountIssuerError

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-01"


@dataclass
class DiscountResult:
    """Outcome of registering a code."""

    success: bool
    id: Optional[str] = None
    price_rule_id: Optional[str] = None
    error: Optional[str] = None


class ShopifyDiscountClient:
    """REST client for Shopify price rules and discount codes.

    Usage:
        client = ShopifyDiscountClient("mystore.myshopify.com", "shpat_xxx")
        result = await client.create_code("JP2-AB3K9", 20, starts_at, ends_at)
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"
        self.timeout = timeout
        self.retries = max(1, retries)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "ShopifyDiscountClient":
        if not settings.SHOPIFY_STORE_DOMAIN or not settings.SHOPIFY_ADMIN_ACCESS_TOKEN:
            raise RuntimeError("Shopify credentials not configured")
        return cls(
            shop_domain=settings.SHOPIFY_STORE_DOMAIN,
            access_token=settings.SHOPIFY_ADMIN_ACCESS_TOKEN,
            api_version=settings.SHOPIFY_API_VERSION,
        )

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST to the Admin REST API with retry on 429 and transient errors.

        Raises:
            DiscountIssuerError: If the request fails after all retries
        """
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }
        last_error = None

        for attempt in range(self.retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.post(f"{self.base_url}/{path}", json=payload, headers=headers)

                if response.status_code == 429:
                    retry_after = float(response.headers.get("Retry-After", 2))
                    logger.warning(
                        f"[SHOPIFY_DISCOUNT] Rate limited, waiting {retry_after}s (attempt {attempt + 1}/{self.retries})"
                    )
                    last_error = "rate limited"
                    await asyncio.sleep(retry_after)
                    continue

                if 400 <= response.status_code < 500:
                    # Validation errors (e.g. duplicate code) will not succeed on retry
                    errors = []
                    try:
                        errors = response.json().get("errors", [])
                    except ValueError:
                        pass
                    raise DiscountIssuerError(
                        f"Shopify {response.status_code} on {path}: {errors or response.text[:200]}",
                        status_code=response.status_code,
                        errors=errors if isinstance(errors, list) else [errors],
                    )

                response.raise_for_status()
                return response.json()

            except httpx.HTTPStatusError as e:
                last_error = e
                logger.warning(
                    f"[SHOPIFY_DISCOUNT] HTTP error {e.response.status_code} (attempt {attempt + 1}/{self.retries})"
                )
                if attempt < self.retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"[SHOPIFY_DISCOUNT] Request error: {e} (attempt {attempt + 1}/{self.retries})")
                if attempt < self.retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

        raise DiscountIssuerError(f"Failed after {self.retries} attempts: {last_error}")

    async def create_code(
        self,
        code: str,
        percent: int,
        starts_at: datetime,
        ends_at: Optional[datetime],
    ) -> DiscountResult:
        """Create a price rule and its discount code.

        Args:
            code: Code customers type at checkout
            percent: Whole-number percentage off
            starts_at: Start of validity (aware datetime)
            ends_at: End of validity (aware datetime), None for open-ended

        Returns:
            DiscountResult with the discount code id and price rule id
        """
        price_rule: Dict[str, Any] = {
            "title": code,
            "target_type": "line_item",
            "target_selection": "all",
            "allocation_method": "across",
            "value_type": "percentage",
            "value": f"-{percent}",
            "customer_selection": "all",
            "usage_limit": 1,
            "once_per_customer": True,
            "starts_at": starts_at.isoformat(),
        }
        if ends_at is not None:
            price_rule["ends_at"] = ends_at.isoformat()

        try:
            rule_data = await self._post("price_rules.json", {"price_rule": price_rule})
            price_rule_id = str(rule_data["price_rule"]["id"])

            code_data = await self._post(
                f"price_rules/{price_rule_id}/discount_codes.json",
                {"discount_code": {"code": code}},
            )
            discount_id = str(code_data["discount_code"]["id"])
        except DiscountIssuerError as e:
            logger.error(f"[SHOPIFY_DISCOUNT] Failed to create {code}: {e.message}")
            return DiscountResult(success=False, error=e.message)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"[SHOPIFY_DISCOUNT] Unexpected response creating {code}: {e}")
            return DiscountResult(success=False, error=f"Unexpected Shopify response: {e}")

        logger.info(f"[SHOPIFY_DISCOUNT] Created {code} ({percent}% until {price_rule.get('ends_at')})")
        return DiscountResult(success=True, id=discount_id, price_rule_id=price_rule_id)
