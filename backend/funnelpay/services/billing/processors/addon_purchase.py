"""Add-on purchase and add-on renewal.

WHAT:
    - First charge: Payment + AddOn + ADDON Subscription sharing one window
    - Recurring charge (known subscription id): new Payment, subscription and
      the AddOn it was bought with extended
    - Referral commission on first charge, percentage of the fee-stripped
      unit price

WHY:
    EXTRA_WORKSPACE raises the account's quota, every other add-on type
    belongs to one workspace; the scoping decides which record the add-on
    and its payment point at.
"""

import logging
from datetime import datetime
from typing import Optional

from ....models import (
    AddOn,
    AddOnStatusEnum,
    AddOnTypeEnum,
    ItemTypeEnum,
    Payment,
    PaymentTypeEnum,
    Subscription,
    SubscriptionStatusEnum,
    USER_SCOPED_ADDON_TYPES,
    Workspace,
)
from ....schemas import MamoPayWebhookPayload
from ..accounts import find_user_by_email, parse_uuid
from ..commission import addon_commission, settle_commission, strip_processing_fee
from ..errors import BusinessRuleError, WorkspaceNotFoundError
from ..periods import FrequencyConverter, billing_period, calculate_end_date, parse_gateway_date
from .base import PurchaseProcessor, PurchaseResult

logger = logging.getLogger(__name__)


def is_user_scoped(addon_type: AddOnTypeEnum) -> bool:
    return addon_type in USER_SCOPED_ADDON_TYPES


class AddOnPurchaseProcessor(PurchaseProcessor):

    log_tag = "[ADDON_PURCHASE]"

    def process(self, event: MamoPayWebhookPayload) -> PurchaseResult:
        existing = self._existing_subscription(event.subscription_id)
        if existing is not None:
            return self._renew_addon(event, existing)

        details = event.details
        user = self._require_verified_buyer(
            find_user_by_email(self.db, details.email), "purchasing addons"
        )
        addon_type = details.addonType
        unit_price = strip_processing_fee(event.amount)
        workspace = None if is_user_scoped(addon_type) else self._load_workspace(details.workspaceId, addon_type)

        period = billing_period(details.frequency, details.frequencyInterval, start=self.ctx.now)

        payment = self._create_payment(
            event,
            user,
            PaymentTypeEnum.addon_purchase,
            addon_type=addon_type,
            addon_quantity=1,
            workspace_id=workspace.id if workspace else None,
        )
        addon = AddOn(
            user_id=user.id,
            workspace_id=workspace.id if workspace else None,
            type=addon_type,
            quantity=1,
            price_per_unit=unit_price,
            status=AddOnStatusEnum.active,
            billing_cycle=period.interval_unit,
            start_date=period.starts_at,
            end_date=period.ends_at,
        )
        self.db.add(addon)
        self.db.flush()
        payment.addon_id = addon.id

        subscription = self._create_subscription(
            event,
            user,
            period,
            external_id=event.subscription_id or f"SUB-ADDON-{event.id}",
            item_type=ItemTypeEnum.addon,
            addon_type=addon_type,
            addon_id=addon.id,
        )

        commission = self._settle_referral_commission(user, payment, unit_price)

        self.ctx.side_effects.add(
            "addon_confirmation_email",
            self.ctx.notifier.send_addon_confirmation,
            email=user.email,
            first_name=user.first_name,
            addon_type=addon_type.value,
            ends_at=period.ends_at,
            renewal=False,
        )

        logger.info(
            f"{self.log_tag} {addon_type.value} for {user.id} at {unit_price} "
            f"(workspace={workspace.id if workspace else None}, commission={commission})"
        )

        return PurchaseResult(
            message="Addon purchased and activated successfully",
            user_id=str(user.id),
            payment_id=str(payment.id),
            subscription_pk=str(subscription.id),
            addon_id=str(addon.id),
            subscriber_lookup_id=event.subscription_id,
            extra={"pricePerUnit": str(unit_price)},
        )

    def _load_workspace(self, workspace_id: Optional[str], addon_type: AddOnTypeEnum) -> Workspace:
        if not workspace_id:
            raise WorkspaceNotFoundError(f"Workspace ID is required for {addon_type.value} addons")
        uid = parse_uuid(workspace_id)
        workspace = self.db.get(Workspace, uid) if uid else None
        if workspace is None:
            raise WorkspaceNotFoundError(f"Workspace not found: {workspace_id}")
        return workspace

    def _settle_referral_commission(self, user, payment, unit_price):
        link = user.referral_link_used
        if link is None:
            return None

        referrer = link.owner
        commission = addon_commission(unit_price, referrer.commission_percentage)
        payment.affiliate_link_id = link.id
        if commission <= 0:
            return commission

        settlement = settle_commission(
            self.db,
            referrer=referrer,
            payment=payment,
            amount=commission,
            hold_days=self.ctx.settings.COMMISSION_HOLD_DAYS,
            affiliate_link=link,
            now=self.ctx.now,
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
        return commission

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    def _renew_addon(self, event: MamoPayWebhookPayload, subscription: Subscription) -> PurchaseResult:
        if subscription.item_type != ItemTypeEnum.addon or subscription.addon_type is None:
            raise BusinessRuleError(
                f"Subscription {subscription.subscription_id} is not an addon subscription"
            )

        addon = subscription.addon or self._addon_from_first_payment(subscription)
        if addon is None:
            raise BusinessRuleError(f"No addon found for subscription {subscription.subscription_id}")
        subscription.addon_id = addon.id

        new_end = self._renewal_end_date(event, subscription)
        subscription.ends_at = new_end
        subscription.status = SubscriptionStatusEnum.active
        addon.end_date = new_end
        addon.status = AddOnStatusEnum.active

        user = subscription.user
        payment = self._create_payment(
            event,
            user,
            PaymentTypeEnum.addon_purchase,
            addon_type=subscription.addon_type,
            addon_quantity=addon.quantity,
            addon_id=addon.id,
            workspace_id=addon.workspace_id,
        )

        self.ctx.side_effects.add(
            "addon_renewal_email",
            self.ctx.notifier.send_addon_confirmation,
            email=user.email,
            first_name=user.first_name,
            addon_type=subscription.addon_type.value,
            ends_at=new_end,
            renewal=True,
        )

        logger.info(
            f"{self.log_tag} Renewed {subscription.addon_type.value} addon {addon.id} "
            f"until {new_end.isoformat()}"
        )

        return PurchaseResult(
            message="Addon renewed successfully",
            user_id=str(user.id),
            payment_id=str(payment.id),
            subscription_pk=str(subscription.id),
            addon_id=str(addon.id),
            subscriber_lookup_id=subscription.subscription_id if not subscription.subscriber_id else None,
        )

    def _addon_from_first_payment(self, subscription: Subscription) -> Optional[AddOn]:
        """Subscriptions written without addon_id: the add-on stamped on the
        earliest add-on payment carrying this subscription id."""
        payments = (
            self.db.query(Payment)
            .filter(
                Payment.user_id == subscription.user_id,
                Payment.addon_type == subscription.addon_type,
                Payment.addon_id.isnot(None),
            )
            .order_by(Payment.created_at.asc())
            .all()
        )
        for payment in payments:
            if (payment.raw_data or {}).get("subscription_id") == subscription.subscription_id:
                return payment.addon
        return None

    def _renewal_end_date(self, event: MamoPayWebhookPayload, subscription: Subscription) -> datetime:
        """Gateway's next_payment_date when usable, else current end + one period.

        The window never shrinks: a next_payment_date at or before the current
        end falls back to the period extension.
        """
        if event.next_payment_date:
            try:
                next_payment = parse_gateway_date(event.next_payment_date)
            except ValueError:
                logger.warning(
                    f"{self.log_tag} Unparseable next_payment_date {event.next_payment_date!r}, "
                    f"extending by period instead"
                )
            else:
                if next_payment > subscription.ends_at:
                    return next_payment

        token = FrequencyConverter.to_period_token(
            event.details.frequency, event.details.frequencyInterval
        )
        return calculate_end_date(subscription.ends_at, token)
