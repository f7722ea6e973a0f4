"""Plan purchase that came through an affiliate link.

WHAT:
    - Provisions the buyer if they don't have an account yet
    - Records the referral (once, never overwritten)
    - Always creates Payment + Subscription (synthetic SUB-{txn} id for
      one-time charges)
    - Settles the flat plan commission to the link owner
    - Optionally clones the affiliate's template workspace to the buyer

WHY:
    Affiliates send buyers straight to checkout, so the account frequently
    doesn't exist yet when the payment lands.
"""

import logging
from typing import Optional

from ....models import AffiliateLink, ItemTypeEnum, PaymentTypeEnum, RegistrationSourceEnum
from ....schemas import MamoPayWebhookPayload
from ....security import create_password_setup_token, decode_affiliate_workspace_id
from ..accounts import map_plan_type, parse_uuid, provision_account
from ..commission import base_commission, settle_commission
from ..errors import AffiliateLinkNotFoundError, PaymentFlowConfigurationError
from ..periods import billing_period
from .base import PurchaseProcessor, PurchaseResult

logger = logging.getLogger(__name__)


class AffiliatePlanPurchaseProcessor(PurchaseProcessor):

    log_tag = "[AFFILIATE_PURCHASE]"

    def process(self, event: MamoPayWebhookPayload) -> PurchaseResult:
        link_ref = event.custom_data.affiliateLink
        if link_ref is None:
            raise PaymentFlowConfigurationError(
                "Invalid affiliate payment: custom_data.affiliateLink is required"
            )

        existing = self._existing_subscription(event.subscription_id)
        if existing is not None:
            # Recurring charge; the commission was paid on the first sale
            return self._renew_plan(event, existing)

        link = self._load_link(link_ref.id)
        details = event.details
        plan = map_plan_type(details.planType)
        now = self.ctx.now
        period = billing_period(details.frequency, details.frequencyInterval, start=now)

        user = self._find_buyer(event)
        is_new_user = user is None
        if is_new_user:
            user, _ = provision_account(
                self.db,
                email=details.email,
                first_name=details.firstName,
                last_name=details.lastName,
                plan=plan,
                registration_source=RegistrationSourceEnum.affiliate,
                trial_start=now,
                trial_end=period.ends_at,
            )
            setup_url = (
                f"{self.ctx.settings.FRONTEND_URL.rstrip('/')}/set-password"
                f"?token={create_password_setup_token(user.email)}"
            )
            self.ctx.side_effects.add(
                "password_setup_email",
                self.ctx.notifier.send_password_setup,
                email=user.email,
                first_name=user.first_name,
                setup_url=setup_url,
            )
        else:
            self._require_verified_buyer(user, "making a payment")
            user.plan = plan
            user.trial_start_date = now
            user.trial_end_date = period.ends_at

        if user.referral_link_used_id is None:
            user.referral_link_used_id = link.id

        payment = self._create_payment(
            event,
            user,
            PaymentTypeEnum.plan_purchase,
            plan_type=plan,
            affiliate_link_id=link.id,
        )
        subscription = self._create_subscription(
            event,
            user,
            period,
            external_id=event.subscription_id or f"SUB-{event.id}",
            item_type=ItemTypeEnum.plan,
            plan_type=plan,
        )

        referrer = link.owner
        commission = base_commission(referrer.plan, referrer.partner_level, plan)
        if commission > 0:
            settlement = settle_commission(
                self.db,
                referrer=referrer,
                payment=payment,
                amount=commission,
                hold_days=self.ctx.settings.COMMISSION_HOLD_DAYS,
                affiliate_link=link,
                now=now,
            )
            self.ctx.side_effects.add(
                "affiliate_congratulations_email",
                self.ctx.notifier.send_affiliate_congratulations,
                email=referrer.email,
                first_name=referrer.first_name,
                commission_amount=settlement.amount,
                held_until=settlement.held_until,
                partner_level=settlement.partner_level,
                promoted=settlement.promoted,
            )
        else:
            logger.info(
                f"{self.log_tag} No commission for {referrer.id} "
                f"({referrer.plan.value} referrer, {plan.value} purchase)"
            )

        source_workspace_id = self._source_workspace_id(event, link)
        if source_workspace_id:
            self.ctx.side_effects.add(
                "workspace_clone",
                self.ctx.cloner.clone,
                source_workspace_id=source_workspace_id,
                new_owner_id=str(user.id),
            )

        logger.info(
            f"{self.log_tag} {plan.value} for {user.id} via link {link.code} "
            f"(new_user={is_new_user}, commission={commission})"
        )

        if is_new_user:
            message = "Payment recorded, account created and subscription activated with affiliate tracking"
        else:
            message = "Payment recorded and subscription activated for existing user with affiliate tracking"

        return PurchaseResult(
            message=message,
            user_id=str(user.id),
            payment_id=str(payment.id),
            subscription_pk=str(subscription.id),
            subscriber_lookup_id=event.subscription_id,
            extra={"commission": str(commission), "isNewUser": is_new_user},
        )

    def _load_link(self, link_id: str) -> AffiliateLink:
        uid = parse_uuid(link_id)
        link = self.db.get(AffiliateLink, uid) if uid else None
        if link is None:
            raise AffiliateLinkNotFoundError(f"Affiliate link not found: {link_id}")
        return link

    def _source_workspace_id(self, event: MamoPayWebhookPayload, link: AffiliateLink) -> Optional[str]:
        """Explicit custom_data.workspace wins, else the link token's workspaceId claim."""
        if event.custom_data.workspace:
            return event.custom_data.workspace
        token = event.custom_data.affiliateLink.token or link.token
        if token:
            return decode_affiliate_workspace_id(token)
        return None
