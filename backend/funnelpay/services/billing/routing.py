"""Event screening and route classification for gateway webhooks.

WHAT:
    - screen_raw_event: cheap checks on the raw payload (shape, event type,
      status, transaction id) before anything touches the database
    - validate_event: full schema validation with a readable failure reason
    - classify: one RouteDecision per validated event

WHY:
    The payment markers overlap (an affiliate link can ride along a partner
    signup, a plan purchase can carry AD as its source). Resolving them once,
    in a fixed precedence, means exactly one processor ever runs.

PRECEDENCE:
    partner signup -> business signup -> plan purchase (no affiliate)
    -> plan purchase with affiliate -> add-on purchase -> unknown
"""

import enum
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from pydantic import ValidationError

from ...schemas import CAPTURED_STATUS, SUPPORTED_EVENT_TYPE, MamoPayWebhookPayload


PLAN_PURCHASE = "PLAN_PURCHASE"
ADDON_PURCHASE = "ADDON_PURCHASE"
AD_REGISTRATION_SOURCE = "AD"


class RouteDecision(str, enum.Enum):
    partner_signup = "partner_signup"
    business_signup = "business_signup"
    plan_purchase = "plan_purchase"
    affiliate_plan_purchase = "affiliate_plan_purchase"
    addon_purchase = "addon_purchase"
    unknown = "unknown"


@dataclass(frozen=True)
class EventMarkers:
    payment_type: str
    has_affiliate_link: bool
    is_partner_plan_flow: bool
    is_business_plan_flow: bool


def screen_raw_event(payload: Any) -> Optional[str]:
    """Return an ignore reason, or None if the event should go further."""
    if not isinstance(payload, dict):
        return "Invalid payload format"
    if payload.get("event_type") != SUPPORTED_EVENT_TYPE:
        return f"Unsupported event type: {payload.get('event_type')}"
    if payload.get("status") != CAPTURED_STATUS:
        return f"Payment status is not captured: {payload.get('status')}"
    if not payload.get("id"):
        return "Missing transaction ID"
    return None


def validate_event(payload: dict) -> Tuple[Optional[MamoPayWebhookPayload], Optional[str]]:
    """Validate against the full schema. Returns (event, None) or (None, reason)."""
    try:
        return MamoPayWebhookPayload.model_validate(payload), None
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        return None, f"Invalid webhook data: {location}: {first.get('msg')}"


def extract_markers(event: MamoPayWebhookPayload) -> EventMarkers:
    custom = event.custom_data
    is_ad = custom.registrationSource == AD_REGISTRATION_SOURCE
    return EventMarkers(
        payment_type=event.details.paymentType,
        has_affiliate_link=custom.affiliateLink is not None,
        is_partner_plan_flow=custom.isPartnerPlan is True and custom.plan == "partner" and is_ad,
        is_business_plan_flow=custom.isBusinessPlan is True and custom.plan == "business" and is_ad,
    )


def classify(event: MamoPayWebhookPayload) -> RouteDecision:
    markers = extract_markers(event)

    if markers.payment_type == PLAN_PURCHASE:
        if markers.is_partner_plan_flow:
            return RouteDecision.partner_signup
        if markers.is_business_plan_flow:
            return RouteDecision.business_signup
        if not markers.has_affiliate_link:
            return RouteDecision.plan_purchase
        return RouteDecision.affiliate_plan_purchase

    if markers.payment_type == ADDON_PURCHASE:
        return RouteDecision.addon_purchase

    return RouteDecision.unknown
