"""FastAPI application entrypoint.

Configures logging, Sentry and CORS, includes routers, and exposes a
healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import mamopay_webhooks as mamopay_webhooks_router
from .telemetry import init_sentry

# Import models so metadata is registered
from . import models  # noqa: F401


def create_app() -> FastAPI:
    sentry_enabled = init_sentry()

    app = FastAPI(
        title="Funnels Billing API",
        description="""
        Payment webhook processing and affiliate commission settlement.

        - MamoPay charge webhooks (plans, add-ons, renewals, payment-first signups)
        - Affiliate commissions with a hold period before release
        """,
        version="1.0.0",
    )

    settings = get_settings()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(mamopay_webhooks_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    logger.info(f"[STARTUP] App created (sentry={'on' if sentry_enabled else 'off'})")
    return app


app = create_app()
