"""Dependency providers and settings management."""

import hmac
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.shopify_discount_client import ShopifyDiscountClient
from .services.telnyx_client import TelnyxClient


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Redis Configuration (arq)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Sentry
    SENTRY_DSN: Optional[str] = None

    # Operator endpoints
    ADMIN_API_TOKEN: Optional[str] = None

    # Send window, evaluated in the business timezone
    BUSINESS_TIMEZONE: str = "America/New_York"
    SEND_WINDOW_START_HOUR: int = 9
    SEND_WINDOW_END_HOUR: int = 21
    SEND_BUFFER_SECONDS: int = 60

    # Recovery eligibility window (hours since the first message)
    RECOVERY_MIN_HOURS: float = 6
    RECOVERY_MAX_HOURS: float = 24

    # Incentive codes
    PRIMARY_CODE_PREFIX: str = "JP"
    PRIMARY_DISCOUNT_PERCENT: int = 15
    PRIMARY_CODE_EXPIRATION_DAYS: int = 30
    RECOVERY_CODE_PREFIX: str = "JP2"
    RECOVERY_DISCOUNT_MIN: int = 20
    RECOVERY_DISCOUNT_MAX: int = 20
    RECOVERY_CODE_EXPIRATION_HOURS: float = 2

    # Batching / throttling
    BATCH_SIZE: int = 50
    MAX_PER_RUN: int = 500
    SEND_DELAY_SECONDS: float = 1.2
    STALE_CLAIM_MINUTES: int = 30
    RECOVERY_CRON_MINUTES: int = 5

    # Shopify
    SHOPIFY_STORE_DOMAIN: Optional[str] = None
    SHOPIFY_ADMIN_ACCESS_TOKEN: Optional[str] = None
    SHOPIFY_API_SECRET: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-01"

    # Telnyx
    TELNYX_API_KEY: Optional[str] = None
    TELNYX_MESSAGING_PROFILE_ID: Optional[str] = None
    TELNYX_FROM_NUMBER: Optional[str] = None
    TELNYX_WEBHOOK_URL: Optional[str] = None
    TELNYX_PUBLIC_KEY: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


@dataclass(frozen=True)
class RecoveryConfig:
    """Plain configuration consumed by the recovery services.

    WHAT: Flattened subset of Settings with defaults matching production
    WHY: Services and tests build this directly without touching the environment
    """

    timezone: str = "America/New_York"
    window_start_hour: int = 9
    window_end_hour: int = 21
    send_buffer_seconds: int = 60

    min_hours: float = 6
    max_hours: float = 24

    primary_prefix: str = "JP"
    primary_percent: int = 15
    primary_expiration_hours: float = 30 * 24
    recovery_prefix: str = "JP2"
    recovery_percent_min: int = 20
    recovery_percent_max: int = 20
    recovery_expiration_hours: float = 2

    batch_size: int = 50
    max_per_run: int = 500
    send_delay_seconds: float = 1.2
    stale_claim_minutes: int = 30

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RecoveryConfig":
        s = settings or get_settings()
        return cls(
            timezone=s.BUSINESS_TIMEZONE,
            window_start_hour=s.SEND_WINDOW_START_HOUR,
            window_end_hour=s.SEND_WINDOW_END_HOUR,
            send_buffer_seconds=s.SEND_BUFFER_SECONDS,
            min_hours=s.RECOVERY_MIN_HOURS,
            max_hours=s.RECOVERY_MAX_HOURS,
            primary_prefix=s.PRIMARY_CODE_PREFIX,
            primary_percent=s.PRIMARY_DISCOUNT_PERCENT,
            primary_expiration_hours=s.PRIMARY_CODE_EXPIRATION_DAYS * 24,
            recovery_prefix=s.RECOVERY_CODE_PREFIX,
            recovery_percent_min=s.RECOVERY_DISCOUNT_MIN,
            recovery_percent_max=s.RECOVERY_DISCOUNT_MAX,
            recovery_expiration_hours=s.RECOVERY_CODE_EXPIRATION_HOURS,
            batch_size=s.BATCH_SIZE,
            max_per_run=s.MAX_PER_RUN,
            send_delay_seconds=s.SEND_DELAY_SECONDS,
            stale_claim_minutes=s.STALE_CLAIM_MINUTES,
        )


def get_recovery_config(settings: Settings = Depends(get_settings)) -> RecoveryConfig:
    return RecoveryConfig.from_settings(settings)


def require_admin_token(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard operator endpoints with a shared admin token.

    Operator endpoints are disabled entirely when ADMIN_API_TOKEN is unset.
    """
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin API disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def get_transport(settings: Settings = Depends(get_settings)) -> Optional[TelnyxClient]:
    """Telnyx client, or None when credentials are not configured."""
    if not settings.TELNYX_API_KEY or not settings.TELNYX_FROM_NUMBER:
        return None
    return TelnyxClient.from_settings(settings)


def get_discount_client(settings: Settings = Depends(get_settings)) -> Optional[ShopifyDiscountClient]:
    """Shopify discount client, or None when credentials are not configured."""
    if not settings.SHOPIFY_STORE_DOMAIN or not settings.SHOPIFY_ADMIN_ACCESS_TOKEN:
        return None
    return ShopifyDiscountClient.from_settings(settings)
