"""Shared purchase-processor machinery.

WHAT:
    PurchaseProcessor is the base for the five purchase variants. It owns the
    collaborators for one delivery (session, settings, side-effect queue) and
    the record-writing helpers every variant uses.

WHY:
    Variants differ in who the buyer is and what they bought; creating
    Payments, Subscriptions and renewals is identical across them.

CONTRACT:
    process() writes through the session without committing. The webhook
    service commits once, so a processor either applies completely or not
    at all. Anything non-financial goes through ctx.side_effects.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ....models import (
    AddOnTypeEnum,
    ItemTypeEnum,
    Payment,
    PaymentTypeEnum,
    PlanTypeEnum,
    Subscription,
    SubscriptionStatusEnum,
    User,
)
from ....schemas import MamoPayWebhookPayload
from ..errors import AccountNotFoundError, AccountNotVerifiedError, BusinessRuleError, EmailMismatchError
from ..accounts import find_user_by_email, get_user_by_id
from ..periods import BillingPeriod, FrequencyConverter, calculate_end_date
from ..side_effects import SideEffects

logger = logging.getLogger(__name__)


@dataclass
class ProcessorContext:
    """Everything a processor may touch for one delivery."""

    db: Session
    settings: Any
    notifier: Any
    cloner: Any
    crm: Any
    side_effects: SideEffects
    now: datetime


@dataclass
class PurchaseResult:
    message: str
    user_id: str
    payment_id: str
    subscription_pk: Optional[str] = None
    addon_id: Optional[str] = None
    # Set only for gateway subscriptions whose subscriber id is still unknown
    subscriber_lookup_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_data(self) -> Dict[str, Any]:
        data = {
            "userId": self.user_id,
            "paymentId": self.payment_id,
            "subscriptionId": self.subscription_pk,
            "addonId": self.addon_id,
        }
        data.update(self.extra)
        return {key: value for key, value in data.items() if value is not None}


class PurchaseProcessor:
    """Base class; subclasses implement process()."""

    log_tag = "[PURCHASE]"

    def __init__(self, ctx: ProcessorContext):
        self.ctx = ctx
        self.db = ctx.db

    def process(self, event: MamoPayWebhookPayload) -> PurchaseResult:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Buyer lookup
    # ------------------------------------------------------------------

    def _find_buyer(self, event: MamoPayWebhookPayload) -> Optional[User]:
        """Look up by custom_data.userId (email must match), else by email."""
        email = event.details.email
        user = get_user_by_id(self.db, event.custom_data.userId)
        if user is not None:
            if user.email.strip().lower() != email.strip().lower():
                logger.warning(
                    f"{self.log_tag} Email mismatch for account {user.id} on transaction {event.id}"
                )
                raise EmailMismatchError("Security validation failed: email mismatch")
            return user
        return find_user_by_email(self.db, email)

    def _require_verified_buyer(self, user: Optional[User], purpose: str) -> User:
        if user is None:
            raise AccountNotFoundError(f"User not found. Please sign up first before {purpose}.")
        if not user.is_verified:
            raise AccountNotVerifiedError(
                f"User email not verified. Please verify your email before {purpose}."
            )
        return user

    # ------------------------------------------------------------------
    # Record helpers
    # ------------------------------------------------------------------

    def _existing_subscription(self, external_id: Optional[str]) -> Optional[Subscription]:
        if not external_id:
            return None
        return (
            self.db.query(Subscription)
            .filter(Subscription.subscription_id == external_id)
            .first()
        )

    def _create_payment(
        self,
        event: MamoPayWebhookPayload,
        user: User,
        payment_type: PaymentTypeEnum,
        **fields: Any,
    ) -> Payment:
        payment = Payment(
            transaction_id=event.id,
            user_id=user.id,
            amount=event.amount,
            currency=event.amount_currency,
            status=event.status,
            payment_type=payment_type,
            frequency=event.details.frequency,
            raw_data=event.model_dump(mode="json"),
            **fields,
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def _create_subscription(
        self,
        event: MamoPayWebhookPayload,
        user: User,
        period: BillingPeriod,
        *,
        external_id: str,
        item_type: ItemTypeEnum,
        plan_type: Optional[PlanTypeEnum] = None,
        addon_type: Optional[AddOnTypeEnum] = None,
        addon_id: Optional[uuid.UUID] = None,
    ) -> Subscription:
        subscription = Subscription(
            subscription_id=external_id,
            user_id=user.id,
            status=SubscriptionStatusEnum.active,
            item_type=item_type,
            subscription_type=plan_type,
            addon_type=addon_type,
            addon_id=addon_id,
            interval_unit=period.interval_unit,
            interval_count=period.interval_count,
            starts_at=period.starts_at,
            ends_at=period.ends_at,
            raw_data=event.model_dump(mode="json"),
        )
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def _extend_subscription(self, event: MamoPayWebhookPayload, subscription: Subscription) -> datetime:
        """Push ends_at forward from its current value by one billing period."""
        token = FrequencyConverter.to_period_token(
            event.details.frequency, event.details.frequencyInterval
        )
        previous_end = subscription.ends_at
        subscription.ends_at = calculate_end_date(previous_end, token)
        subscription.status = SubscriptionStatusEnum.active
        logger.info(
            f"{self.log_tag} Subscription {subscription.subscription_id} extended "
            f"{previous_end.isoformat()} -> {subscription.ends_at.isoformat()} ({token})"
        )
        return subscription.ends_at

    def _renew_plan(self, event: MamoPayWebhookPayload, subscription: Subscription) -> PurchaseResult:
        """Recurring charge for a plan subscription we already know.

        New Payment, ends_at extended from the current end; nothing else on
        the account or the subscription changes.
        """
        if subscription.item_type != ItemTypeEnum.plan:
            raise BusinessRuleError(
                f"Subscription {subscription.subscription_id} is not a plan subscription"
            )

        user = subscription.user
        new_end = self._extend_subscription(event, subscription)
        payment = self._create_payment(
            event,
            user,
            PaymentTypeEnum.plan_purchase,
            plan_type=subscription.subscription_type,
        )

        plan_name = subscription.subscription_type.value if subscription.subscription_type else "plan"
        self.ctx.side_effects.add(
            "renewal_confirmation_email",
            self.ctx.notifier.send_subscription_confirmation,
            email=user.email,
            first_name=user.first_name,
            plan_name=plan_name,
            ends_at=new_end,
            renewal=True,
        )

        return PurchaseResult(
            message="Subscription renewed successfully",
            user_id=str(user.id),
            payment_id=str(payment.id),
            subscription_pk=str(subscription.id),
            subscriber_lookup_id=subscription.subscription_id if not subscription.subscriber_id else None,
        )
