"""Affiliate commission engine.

WHAT:
    - Pure math: flat plan commissions by partner level, percentage add-on
      commissions, processing-fee stripping, promotion thresholds
    - settle_commission: apply a positive commission inside the caller's
      transaction (held balance, ledger row, promotion, payment + link totals)

WHY:
    Plan and add-on processors share the same settlement routine; keeping the
    math pure makes it testable without a database.

Commission rules:
    Plan purchase: only an AGENCY referrer selling a BUSINESS plan earns
    commission; 50 / 75 / 100 for partner level 1 / 2 / 3.
    Add-on purchase: unit price * referrer.commission_percentage / 100.
    Promotion: 10 sales -> level 2 at 10%, 50 sales -> level 3 at 15%.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from ...models import (
    AffiliateLink,
    BalanceTransaction,
    BalanceTransactionTypeEnum,
    CommissionStatusEnum,
    Payment,
    PlanTypeEnum,
    User,
)
from .periods import utc_now

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
PROCESSING_FEE_MULTIPLIER = Decimal("1.02")

PLAN_COMMISSION_BY_LEVEL = {
    1: Decimal("50"),
    2: Decimal("75"),
    3: Decimal("100"),
}
DEFAULT_PLAN_COMMISSION = PLAN_COMMISSION_BY_LEVEL[1]

# (min total sales, level, commission percentage), highest first
PROMOTION_THRESHOLDS = (
    (50, 3, Decimal("15")),
    (10, 2, Decimal("10")),
)


def to_money(value) -> Decimal:
    """Round to cents, half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def strip_processing_fee(charged_amount) -> Decimal:
    """Remove the 2% processing surcharge baked into the charged amount.

    >>> strip_processing_fee("1018.98")
    Decimal('999.00')
    """
    return to_money(Decimal(str(charged_amount)) / PROCESSING_FEE_MULTIPLIER)


def base_commission(
    referrer_plan: Optional[PlanTypeEnum],
    partner_level: Optional[int],
    purchased_plan: Optional[PlanTypeEnum],
) -> Decimal:
    """Flat commission for a plan sale. Zero unless AGENCY sells BUSINESS."""
    if referrer_plan != PlanTypeEnum.agency or purchased_plan != PlanTypeEnum.business:
        return Decimal("0")
    if partner_level is not None and partner_level > 3:
        partner_level = 3
    return PLAN_COMMISSION_BY_LEVEL.get(partner_level, DEFAULT_PLAN_COMMISSION)


def addon_commission(unit_price, commission_percentage) -> Decimal:
    return to_money(Decimal(str(unit_price)) * Decimal(str(commission_percentage or 0)) / Decimal("100"))


def promotion_for(total_sales: int, partner_level: int) -> Optional[Tuple[int, Decimal]]:
    """Return (new_level, new_percentage) if the sale count earns a promotion.

    Thresholds are checked highest first, so one call promotes at most once.
    """
    for min_sales, level, percentage in PROMOTION_THRESHOLDS:
        if total_sales >= min_sales and partner_level < level:
            return level, percentage
    return None


@dataclass
class CommissionSettlement:
    """What settle_commission changed, for logging and notifications."""

    referrer_id: str
    amount: Decimal
    held_until: datetime
    total_sales: int
    partner_level: int
    promoted: bool = False


def settle_commission(
    db: Session,
    *,
    referrer: User,
    payment: Payment,
    amount: Decimal,
    hold_days: int,
    affiliate_link: Optional[AffiliateLink] = None,
    now: Optional[datetime] = None,
) -> CommissionSettlement:
    """Put a positive commission on hold for `referrer`.

    Runs inside the caller's transaction and does not commit. Counters are
    incremented SQL-side so concurrent sales for one referrer don't lose
    updates.
    """
    if amount <= 0:
        raise ValueError("settle_commission requires a positive amount")

    now = now or utc_now()
    held_until = now + timedelta(days=hold_days)

    # Payment / link rows must exist before the UPDATEs below
    db.flush()

    db.query(User).filter(User.id == referrer.id).update(
        {
            User.pending_balance: User.pending_balance + amount,
            User.total_sales: User.total_sales + 1,
        },
        synchronize_session=False,
    )
    db.refresh(referrer)

    available = to_money(referrer.balance or 0)
    db.add(
        BalanceTransaction(
            user_id=referrer.id,
            type=BalanceTransactionTypeEnum.commission_hold,
            amount=amount,
            balance_before=available,
            balance_after=available,
            reference_type="Payment",
            reference_id=str(payment.id),
            released_at=None,
            notes=(
                f"Commission held for {payment.payment_type.value} {payment.transaction_id}, "
                f"releases {held_until:%Y-%m-%d}"
            ),
        )
    )

    promoted = False
    promotion = promotion_for(referrer.total_sales, referrer.partner_level)
    if promotion:
        new_level, new_percentage = promotion
        logger.info(
            f"[COMMISSION] Promoting {referrer.id} to partner level {new_level} "
            f"({new_percentage}%) at {referrer.total_sales} sales"
        )
        referrer.partner_level = new_level
        referrer.commission_percentage = new_percentage
        promoted = True

    payment.commission_amount = amount
    payment.commission_status = CommissionStatusEnum.pending
    payment.commission_held_until = held_until
    payment.affiliate_paid = True

    if affiliate_link is not None:
        db.query(AffiliateLink).filter(AffiliateLink.id == affiliate_link.id).update(
            {AffiliateLink.total_amount: AffiliateLink.total_amount + amount},
            synchronize_session=False,
        )
        db.refresh(affiliate_link)

    logger.info(
        f"[COMMISSION] Held {amount} for {referrer.id} on payment {payment.transaction_id} "
        f"until {held_until.isoformat()}"
    )

    return CommissionSettlement(
        referrer_id=str(referrer.id),
        amount=amount,
        held_until=held_until,
        total_sales=referrer.total_sales,
        partner_level=referrer.partner_level,
        promoted=promoted,
    )
