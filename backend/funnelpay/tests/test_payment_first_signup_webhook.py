"""Tests for partner/business plans bought from ad landing pages.

WHAT: Accounts created from the gateway's customer details, welcome emails
      with temporary passwords, CRM registration
WHY: These buyers have no account yet; if provisioning fails they paid for
     nothing they can log in to
"""

import pytest

from funnelpay.models import (
    Payment,
    PlanTypeEnum,
    RegistrationSourceEnum,
    Subscription,
    User,
)
from funnelpay.security import verify_password
from funnelpay.services.billing.errors import PaymentFlowConfigurationError
from funnelpay.services.billing.periods import calculate_end_date, utc_now
from funnelpay.services.billing.processors.base import ProcessorContext
from funnelpay.services.billing.processors.payment_first_signup import PartnerSignupProcessor
from funnelpay.services.billing.routing import RouteDecision, validate_event
from funnelpay.services.billing.side_effects import SideEffects

PARTNER_MARKERS = {"isPartnerPlan": True, "plan": "partner", "registrationSource": "AD"}
BUSINESS_MARKERS = {"isBusinessPlan": True, "plan": "business", "registrationSource": "AD"}


def _signup_payload(build_payload, markers, **kwargs):
    kwargs.setdefault("email", "lead@example.com")
    kwargs.setdefault("customer_name", "Omar Khalid Haddad")
    return build_payload(custom=markers, **kwargs)


class TestPartnerSignup:

    def test_new_buyer_gets_agency_account(self, service, build_payload, test_db_session):
        result = service.process(
            _signup_payload(build_payload, PARTNER_MARKERS, subscription_id="MPB-SUB-P1", frequency="annually")
        )

        assert result.route is RouteDecision.partner_signup
        assert result.response.message == "Partner Plan purchased and user account created"
        assert result.response.data["isNewUser"] is True

        user = test_db_session.query(User).filter(User.email == "lead@example.com").one()
        subscription = test_db_session.query(Subscription).one()
        assert user.plan == PlanTypeEnum.agency
        assert user.registration_source == RegistrationSourceEnum.ad
        assert user.is_verified is True
        assert user.first_name == "Omar"
        assert user.last_name == "Khalid Haddad"
        assert subscription.subscription_type == PlanTypeEnum.agency
        assert subscription.ends_at == calculate_end_date(subscription.starts_at, "1y")
        assert user.trial_end_date == subscription.ends_at

    def test_welcome_email_password_matches_stored_hash(
        self, service, build_payload, notifier, test_db_session
    ):
        service.handle(_signup_payload(build_payload, PARTNER_MARKERS))

        [email] = notifier.calls_to("send_signup_welcome")
        user = test_db_session.query(User).filter(User.email == "lead@example.com").one()

        assert email["plan_label"] == "Partner Plan"
        assert email["username"] == user.username
        assert user.username.startswith("omar")
        assert len(email["temporary_password"]) == 12
        assert verify_password(email["temporary_password"], user.password_hash)

    def test_crm_registration(self, service, build_payload, crm):
        service.handle(_signup_payload(build_payload, PARTNER_MARKERS, transaction_id="MPB-CHRG-AD1"))

        [registration] = crm.calls_to("register_signup")
        assert registration["email"] == "lead@example.com"
        assert registration["first_name"] == "Omar"
        assert registration["phone"] == "+971501234567"
        assert registration["transaction_id"] == "MPB-CHRG-AD1"
        assert registration["is_new_user"] is True
        assert registration["currency"] == "USD"

    def test_one_time_purchase_has_no_subscription(self, service, build_payload, test_db_session):
        service.process(_signup_payload(build_payload, PARTNER_MARKERS))

        user = test_db_session.query(User).filter(User.email == "lead@example.com").one()
        assert test_db_session.query(Subscription).count() == 0
        assert test_db_session.query(Payment).one().plan_type == PlanTypeEnum.agency
        assert user.trial_end_date is None

    def test_identity_comes_from_customer_details(self, service, build_payload, test_db_session):
        service.process(
            _signup_payload(
                build_payload,
                PARTNER_MARKERS,
                email="details@example.com",
                customer_email="Customer@Example.com",
            )
        )

        assert test_db_session.query(User).one().email == "customer@example.com"


class TestBusinessSignup:

    def test_existing_account_is_upgraded(self, service, build_payload, make_user, notifier, test_db_session):
        existing = make_user("lead@example.com", is_verified=False)

        result = service.handle(_signup_payload(build_payload, BUSINESS_MARKERS))

        test_db_session.expire_all()
        user = test_db_session.get(User, existing.id)
        assert result.message == "Business Plan purchased and activated for existing user"
        assert user.plan == PlanTypeEnum.business
        assert user.is_verified is True
        assert test_db_session.query(User).count() == 1
        assert notifier.calls_to("send_signup_welcome") == []

    def test_routes_to_business_flow(self, service, build_payload):
        result = service.process(_signup_payload(build_payload, BUSINESS_MARKERS))

        assert result.route is RouteDecision.business_signup

    def test_partner_markers_win_over_affiliate_link(self, service, build_payload, make_affiliate):
        _, link = make_affiliate()

        result = service.process(
            _signup_payload(
                build_payload,
                PARTNER_MARKERS,
                affiliate_link={"id": str(link.id), "userId": str(link.user_id)},
            )
        )

        assert result.route is RouteDecision.partner_signup


class TestIdentifierValidation:

    def test_processor_rejects_partial_markers(self, test_db_session, settings, notifier, crm, cloner, build_payload):
        event, _ = validate_event(
            _signup_payload(build_payload, {"isPartnerPlan": True, "plan": "partner"})
        )
        ctx = ProcessorContext(
            db=test_db_session,
            settings=settings,
            notifier=notifier,
            cloner=cloner,
            crm=crm,
            side_effects=SideEffects(),
            now=utc_now(),
        )

        with pytest.raises(PaymentFlowConfigurationError, match="missing required identifiers"):
            PartnerSignupProcessor(ctx).process(event)

    def test_partial_markers_fall_through_to_plan_purchase(self, service, build_payload, make_user):
        make_user("lead@example.com")

        result = service.process(
            _signup_payload(build_payload, {"isPartnerPlan": True, "plan": "partner"})
        )

        assert result.route is RouteDecision.plan_purchase
