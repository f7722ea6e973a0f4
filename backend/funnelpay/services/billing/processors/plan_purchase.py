"""Plan purchase by an existing, verified account (no affiliate link)."""

import logging

from ....models import ItemTypeEnum, PaymentTypeEnum
from ....schemas import MamoPayWebhookPayload
from ..accounts import map_plan_type
from ..periods import billing_period
from .base import PurchaseProcessor, PurchaseResult

logger = logging.getLogger(__name__)


class PlanPurchaseProcessor(PurchaseProcessor):
    """Activate a plan for a buyer who signed up before paying.

    Recurring purchases (gateway subscription id present) get a trial window
    and a Subscription. One-time purchases grant lifetime access: the trial
    end is cleared and no Subscription is created.
    """

    log_tag = "[PLAN_PURCHASE]"

    def process(self, event: MamoPayWebhookPayload) -> PurchaseResult:
        existing = self._existing_subscription(event.subscription_id)
        if existing is not None:
            return self._renew_plan(event, existing)

        details = event.details
        user = self._require_verified_buyer(self._find_buyer(event), "making a payment")
        plan = map_plan_type(details.planType)
        now = self.ctx.now
        recurring = event.subscription_id is not None

        period = billing_period(details.frequency, details.frequencyInterval, start=now)
        user.plan = plan
        user.trial_start_date = now
        user.trial_end_date = period.ends_at if recurring else None

        payment = self._create_payment(event, user, PaymentTypeEnum.plan_purchase, plan_type=plan)

        subscription = None
        if recurring:
            subscription = self._create_subscription(
                event,
                user,
                period,
                external_id=event.subscription_id,
                item_type=ItemTypeEnum.plan,
                plan_type=plan,
            )
            self.ctx.side_effects.add(
                "subscription_confirmation_email",
                self.ctx.notifier.send_subscription_confirmation,
                email=user.email,
                first_name=user.first_name,
                plan_name=plan.value,
                ends_at=period.ends_at,
                renewal=False,
            )
            message = "Payment recorded and subscription activated for existing user"
        else:
            message = "Payment recorded and lifetime access granted"

        logger.info(
            f"{self.log_tag} {plan.value} for {user.id} via {event.id} "
            f"({'recurring' if recurring else 'one-time'})"
        )

        return PurchaseResult(
            message=message,
            user_id=str(user.id),
            payment_id=str(payment.id),
            subscription_pk=str(subscription.id) if subscription else None,
            subscriber_lookup_id=event.subscription_id if subscription else None,
        )
