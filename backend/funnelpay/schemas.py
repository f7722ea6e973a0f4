"""Pydantic schemas for webhook payloads and responses."""

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from .models import AddOnTypeEnum
from .services.billing.periods import MAX_FREQUENCY_INTERVAL, FrequencyConverter


SUPPORTED_EVENT_TYPE = "charge.succeeded"
CAPTURED_STATUS = "captured"


# =============================================================================
# MAMOPAY WEBHOOK PAYLOAD
# =============================================================================


class PaymentDetails(BaseModel):
    """`custom_data.details` set by our checkout when the payment link is created."""

    model_config = ConfigDict(extra="allow")

    email: EmailStr
    paymentType: str = Field(description="PLAN_PURCHASE or ADDON_PURCHASE")
    frequency: str = Field(description="monthly, annually, weekly, daily (and aliases)")
    frequencyInterval: int = Field(default=1, ge=1, le=MAX_FREQUENCY_INTERVAL)
    planType: Optional[str] = None
    addonType: Optional[AddOnTypeEnum] = None
    workspaceId: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None

    @field_validator("frequency")
    @classmethod
    def frequency_supported(cls, value: str) -> str:
        if not FrequencyConverter.is_supported(value):
            raise ValueError(f"Unsupported billing frequency '{value}'")
        return value

    @model_validator(mode="after")
    def addon_type_required(self):
        if self.paymentType == "ADDON_PURCHASE" and self.addonType is None:
            raise ValueError("addonType is required for ADDON_PURCHASE payments")
        return self


class AffiliateLinkRef(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str
    userId: Optional[str] = None
    token: Optional[str] = None


class CustomData(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    details: PaymentDetails
    userId: Optional[str] = None
    affiliateLink: Optional[AffiliateLinkRef] = None
    workspace: Optional[str] = None
    isPartnerPlan: Optional[bool] = None
    isBusinessPlan: Optional[bool] = None
    plan: Optional[str] = None
    registrationSource: Optional[str] = None


class CustomerDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    email: EmailStr
    phone_number: Optional[str] = None


class MamoPayWebhookPayload(BaseModel):
    """`charge.succeeded` notification from MamoPay."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(description="Gateway transaction id (idempotency key)")
    status: str
    event_type: str
    amount: Decimal = Field(gt=0)
    amount_currency: str
    subscription_id: Optional[str] = None
    next_payment_date: Optional[str] = Field(default=None, description="DD/MM/YYYY")
    custom_data: CustomData
    customer_details: CustomerDetails

    @field_validator("subscription_id", mode="before")
    @classmethod
    def blank_subscription_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def details(self) -> PaymentDetails:
        return self.custom_data.details


# =============================================================================
# RESPONSES
# =============================================================================


class WebhookResponse(BaseModel):
    """Standard webhook response.

    WHAT: Acknowledges webhook receipt
    WHY: MamoPay only needs a 2xx; ignored events carry a reason for debugging
    """

    received: bool = Field(default=True, description="Webhook received successfully")
    ignored: Optional[bool] = Field(None, description="Event was not applied")
    reason: Optional[str] = Field(None, description="Why the event was ignored")
    message: Optional[str] = Field(None, description="Processing summary")
    data: Optional[Dict[str, Any]] = Field(None, description="Ids of created records")
