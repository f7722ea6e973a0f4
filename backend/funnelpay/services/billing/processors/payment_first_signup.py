"""Payment-first signups from the acquisition-ad funnel.

WHAT: Partner (AGENCY) and Business plan purchases that arrive before any
      account exists. The account is created from the gateway's customer
      details and the buyer receives a temporary password by email.
WHY: Ad landing pages go straight to checkout; signup happens afterwards.

Both variants require all three identifiers on the payment link:
    custom_data.isPartnerPlan / isBusinessPlan == true
    custom_data.plan == "partner" / "business"
    custom_data.registrationSource == "AD"
A partial match means the checkout link was misconfigured, which is an
error rather than an ignorable event.
"""

import logging

from ....models import ItemTypeEnum, PaymentTypeEnum, PlanTypeEnum, RegistrationSourceEnum
from ....schemas import MamoPayWebhookPayload
from ..accounts import find_user_by_email, provision_account, split_full_name
from ..errors import PaymentFlowConfigurationError
from ..periods import billing_period
from ..routing import AD_REGISTRATION_SOURCE
from .base import PurchaseProcessor, PurchaseResult

logger = logging.getLogger(__name__)


class PaymentFirstSignupProcessor(PurchaseProcessor):
    """Shared flow; subclasses pin the plan identifiers."""

    flag_field = ""
    plan_marker = ""
    plan_type = PlanTypeEnum.free
    label = ""

    def _validate_identifiers(self, event: MamoPayWebhookPayload) -> None:
        custom = event.custom_data
        if not (
            getattr(custom, self.flag_field) is True
            and custom.plan == self.plan_marker
            and custom.registrationSource == AD_REGISTRATION_SOURCE
        ):
            raise PaymentFlowConfigurationError(
                f"Invalid {self.label} payment: missing required identifiers "
                f"({self.flag_field}, plan={self.plan_marker}, registrationSource={AD_REGISTRATION_SOURCE})"
            )

    def process(self, event: MamoPayWebhookPayload) -> PurchaseResult:
        self._validate_identifiers(event)

        existing = self._existing_subscription(event.subscription_id)
        if existing is not None:
            return self._renew_plan(event, existing)

        customer = event.customer_details
        email = customer.email.strip().lower()
        first_name, last_name = split_full_name(customer.name)
        now = self.ctx.now
        recurring = event.subscription_id is not None
        period = billing_period(event.details.frequency, event.details.frequencyInterval, start=now)
        trial_end = period.ends_at if recurring else None

        user = find_user_by_email(self.db, email)
        is_new_user = user is None
        if is_new_user:
            user, temporary_password = provision_account(
                self.db,
                email=email,
                first_name=first_name,
                last_name=last_name,
                plan=self.plan_type,
                registration_source=RegistrationSourceEnum.ad,
                trial_start=now,
                trial_end=trial_end,
            )
            self.ctx.side_effects.add(
                "signup_welcome_email",
                self.ctx.notifier.send_signup_welcome,
                email=user.email,
                first_name=user.first_name,
                plan_label=self.label,
                username=user.username,
                temporary_password=temporary_password,
            )
        else:
            user.plan = self.plan_type
            user.is_verified = True
            user.trial_start_date = now
            user.trial_end_date = trial_end
            if not user.first_name and first_name:
                user.first_name = first_name
                user.last_name = last_name or user.last_name

        payment = self._create_payment(
            event, user, PaymentTypeEnum.plan_purchase, plan_type=self.plan_type
        )

        subscription = None
        if recurring:
            subscription = self._create_subscription(
                event,
                user,
                period,
                external_id=event.subscription_id,
                item_type=ItemTypeEnum.plan,
                plan_type=self.plan_type,
            )

        self.ctx.side_effects.add(
            "crm_registration",
            self.ctx.crm.register_signup,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=customer.phone_number,
            transaction_id=event.id,
            amount=event.amount,
            currency=event.amount_currency,
            is_new_user=is_new_user,
            created_at=now,
        )

        logger.info(
            f"{self.log_tag} {self.plan_type.value} for {user.id} via {event.id} "
            f"(new_user={is_new_user}, recurring={recurring})"
        )

        suffix = "user account created" if is_new_user else "activated for existing user"
        return PurchaseResult(
            message=f"{self.label} purchased and {suffix}",
            user_id=str(user.id),
            payment_id=str(payment.id),
            subscription_pk=str(subscription.id) if subscription else None,
            subscriber_lookup_id=event.subscription_id if subscription else None,
            extra={"isNewUser": is_new_user},
        )


class PartnerSignupProcessor(PaymentFirstSignupProcessor):
    log_tag = "[PARTNER_SIGNUP]"
    flag_field = "isPartnerPlan"
    plan_marker = "partner"
    plan_type = PlanTypeEnum.agency
    label = "Partner Plan"


class BusinessSignupProcessor(PaymentFirstSignupProcessor):
    log_tag = "[BUSINESS_SIGNUP]"
    flag_field = "isBusinessPlan"
    plan_marker = "business"
    plan_type = PlanTypeEnum.business
    label = "Business Plan"
