"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import SessionLocal, get_db


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:3000"

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    RESEND_FROM_EMAIL: str = "Funnels <billing@funnels.app>"

    # MamoPay gateway management API (subscriber lookup)
    MAMOPAY_API_URL: str = "https://business.mamopay.com"
    MAMOPAY_API_KEY: Optional[str] = None

    # Monday.com CRM board for payment-first signups
    MONDAY_API_URL: str = "https://api.monday.com/v2"
    MONDAY_API_TOKEN: Optional[str] = None
    MONDAY_BOARD_ID: Optional[str] = None
    MONDAY_GROUP_ID: Optional[str] = None
    MONDAY_INVITED_BY_USER_ID: Optional[int] = None

    # Affiliate commissions
    COMMISSION_HOLD_DAYS: int = 30

    # Redis Configuration (ARQ)
    REDIS_URL: str = "redis://localhost:6379/0"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# =============================================================================
# BILLING COLLABORATORS
# =============================================================================
# Imported lazily so importing deps doesn't pull the whole service graph.


def get_notification_service(settings: Settings = Depends(get_settings)):
    from .services.notification_service import BillingNotificationService

    return BillingNotificationService.from_settings(settings)


def get_subscriber_registry(settings: Settings = Depends(get_settings)):
    from .services.mamopay_client import MamoPaySubscriberRegistry

    return MamoPaySubscriberRegistry.from_settings(settings)


def get_crm_client(settings: Settings = Depends(get_settings)):
    from .services.monday_client import MondayCrmClient

    return MondayCrmClient.from_settings(settings)


def get_workspace_cloner():
    from .services.workspace_cloner import WorkspaceCloner

    return WorkspaceCloner(session_factory=SessionLocal)


def get_payment_webhook_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier=Depends(get_notification_service),
    subscriber_registry=Depends(get_subscriber_registry),
    crm=Depends(get_crm_client),
    cloner=Depends(get_workspace_cloner),
):
    """Build the webhook engine for one request."""
    from .services.billing.webhook_service import PaymentWebhookService

    return PaymentWebhookService(
        db=db,
        settings=settings,
        notifier=notifier,
        subscriber_registry=subscriber_registry,
        crm=crm,
        cloner=cloner,
        session_factory=SessionLocal,
    )
