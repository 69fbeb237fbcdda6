"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import shopify_webhooks as shopify_webhooks_router  # Order attribution
from .routers import telnyx_webhooks as telnyx_webhooks_router  # Delivery receipts + inbound STOP/HELP
from .routers import subscribers as subscribers_router  # Popup enrollment
from .routers import recovery as recovery_router  # Operator endpoints
from .telemetry import init_observability

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    app = FastAPI(
        title="winback API",
        description="""
        winback sends a single recovery SMS with a fresh discount code to
        subscribers who received a welcome offer but did not buy.

        This API provides endpoints for:
        - Popup enrollment (welcome SMS + primary code)
        - Telnyx delivery receipts and inbound STOP/HELP keywords
        - Shopify paid-order attribution
        - Operator status, statistics and manual recovery runs

        ## Authentication

        Webhooks are verified by provider signature (Shopify HMAC-SHA256,
        Telnyx Ed25519). Operator endpoints under /recovery require the
        X-Admin-Token header.
        """,
        version="1.0.0",
        license_info={
            "name": "Proprietary",
        },
    )

    # Trust X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list: "https://shop.example,http://localhost:3000"
    allowed_origins = [
        origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()
    ]
    logger.info(f"[MAIN] CORS allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    observability = init_observability()
    logger.info(f"[MAIN] Observability: {observability}")

    @app.get("/health", tags=["Health"])
    def health():
        """Liveness check."""
        return {"status": "ok"}

    app.include_router(subscribers_router.router)
    app.include_router(shopify_webhooks_router.router)
    app.include_router(telnyx_webhooks_router.router)
    app.include_router(recovery_router.router)

    return app


app = create_app()
