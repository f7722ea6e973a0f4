"""
Webhook Screening and Routing Tests (Unit)
==========================================

WHAT: Raw-event screening, schema validation reasons and route precedence.
WHY: Overlapping markers (affiliate link + partner signup, AD source on a
     normal plan) must resolve to exactly one flow.

REFERENCES:
- backend/funnelpay/services/billing/routing.py
"""

from typing import Any, Dict

import pytest

from funnelpay.services.billing.routing import (
    RouteDecision,
    classify,
    extract_markers,
    screen_raw_event,
    validate_event,
)


def _payload(**custom: Any) -> Dict[str, Any]:
    details = {
        "email": "buyer@example.com",
        "paymentType": "PLAN_PURCHASE",
        "frequency": "monthly",
        "planType": "business",
    }
    details.update(custom.pop("details", {}))
    return {
        "id": "MPB-CHRG-1",
        "status": "captured",
        "event_type": "charge.succeeded",
        "amount": 99,
        "amount_currency": "USD",
        "custom_data": {"details": details, **custom},
        "customer_details": {"name": "Jane Buyer", "email": "buyer@example.com"},
    }


def _route(payload: Dict[str, Any]) -> RouteDecision:
    event, reason = validate_event(payload)
    assert reason is None
    return classify(event)


PARTNER = {"isPartnerPlan": True, "plan": "partner", "registrationSource": "AD"}
BUSINESS = {"isBusinessPlan": True, "plan": "business", "registrationSource": "AD"}
LINK = {"affiliateLink": {"id": "link-1", "userId": "user-1"}}


class TestScreening:

    def test_accepts_captured_charge(self) -> None:
        assert screen_raw_event(_payload()) is None

    @pytest.mark.parametrize(
        "change,reason",
        [
            ({"event_type": "charge.refunded"}, "Unsupported event type: charge.refunded"),
            ({"status": "failed"}, "Payment status is not captured: failed"),
            ({"id": ""}, "Missing transaction ID"),
        ],
    )
    def test_rejects(self, change, reason) -> None:
        payload = _payload()
        payload.update(change)

        assert screen_raw_event(payload) == reason

    def test_event_type_checked_before_status(self) -> None:
        payload = _payload()
        payload.update(event_type="subscription.cancelled", status="failed")

        assert screen_raw_event(payload).startswith("Unsupported event type")

    def test_non_dict(self) -> None:
        assert screen_raw_event(["not", "a", "dict"]) == "Invalid payload format"


class TestValidation:

    def test_invalid_email(self) -> None:
        event, reason = validate_event(_payload(details={"email": "nope"}))

        assert event is None
        assert reason.startswith("Invalid webhook data: custom_data.details.email")

    def test_unsupported_frequency(self) -> None:
        _, reason = validate_event(_payload(details={"frequency": "fortnightly"}))

        assert "Unsupported billing frequency" in reason

    def test_frequency_interval_bounds(self) -> None:
        event, reason = validate_event(_payload(details={"frequency": "annually", "frequencyInterval": 9000}))

        assert event is None
        assert reason.startswith("Invalid webhook data: custom_data.details.frequencyInterval")

        event, reason = validate_event(_payload(details={"frequencyInterval": 120}))

        assert reason is None
        assert event.details.frequencyInterval == 120

    def test_addon_requires_addon_type(self) -> None:
        _, reason = validate_event(_payload(details={"paymentType": "ADDON_PURCHASE"}))

        assert "addonType is required" in reason

    def test_non_positive_amount(self) -> None:
        payload = _payload()
        payload["amount"] = 0

        _, reason = validate_event(payload)

        assert reason.startswith("Invalid webhook data: amount")

    def test_blank_subscription_id_is_one_time(self) -> None:
        payload = _payload()
        payload["subscription_id"] = "  "

        event, _ = validate_event(payload)

        assert event.subscription_id is None


class TestClassify:

    def test_plain_plan_purchase(self) -> None:
        assert _route(_payload()) is RouteDecision.plan_purchase

    def test_affiliate_plan_purchase(self) -> None:
        assert _route(_payload(**LINK)) is RouteDecision.affiliate_plan_purchase

    def test_partner_signup_beats_affiliate_link(self) -> None:
        assert _route(_payload(**PARTNER, **LINK)) is RouteDecision.partner_signup

    def test_business_signup(self) -> None:
        assert _route(_payload(**BUSINESS)) is RouteDecision.business_signup

    def test_partner_checked_before_business(self) -> None:
        markers = {**BUSINESS, "isPartnerPlan": True}
        markers["plan"] = "partner"

        assert _route(_payload(**markers)) is RouteDecision.partner_signup

    @pytest.mark.parametrize(
        "markers",
        [
            {"isPartnerPlan": True, "plan": "partner"},
            {"isPartnerPlan": True, "registrationSource": "AD"},
            {"plan": "partner", "registrationSource": "AD"},
            {"isBusinessPlan": True, "plan": "partner", "registrationSource": "AD"},
        ],
    )
    def test_partial_markers_are_a_normal_purchase(self, markers) -> None:
        assert _route(_payload(**markers)) is RouteDecision.plan_purchase

    def test_addon_purchase(self) -> None:
        payload = _payload(details={"paymentType": "ADDON_PURCHASE", "addonType": "EXTRA_FUNNEL"}, **LINK)

        assert _route(payload) is RouteDecision.addon_purchase

    def test_unknown_payment_type(self) -> None:
        assert _route(_payload(details={"paymentType": "DONATION"})) is RouteDecision.unknown

    def test_markers(self) -> None:
        event, _ = validate_event(_payload(**PARTNER, **LINK))
        markers = extract_markers(event)

        assert markers.payment_type == "PLAN_PURCHASE"
        assert markers.has_affiliate_link is True
        assert markers.is_partner_plan_flow is True
        assert markers.is_business_plan_flow is False
