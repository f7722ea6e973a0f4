"""Commission release sweep.

WHAT:
    Moves matured held commissions to the referrer's available balance:
    - Payment: PENDING -> RELEASED, released timestamp, affiliate_paid
    - Referrer: pending_balance -= amount, balance += amount
    - Ledger: the COMMISSION_HOLD row becomes COMMISSION_RELEASE with the new
      available balance as its after-snapshot
    Then one "commission released" email per referrer.

WHY:
    Commissions are held for the refund window (COMMISSION_HOLD_DAYS) before
    affiliates can withdraw them.

Each payment is released in its own transaction, so one broken row (missing
ledger entry, deleted link) fails only that payment. Emails are best effort.

USAGE:
    service = CommissionReleaseService(db, notifier)
    summary = service.release_matured_commissions()

REFERENCES:
    - funnelpay/workers/arq_worker.py (daily cron)
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ...models import (
    AffiliateLink,
    BalanceTransaction,
    BalanceTransactionTypeEnum,
    CommissionStatusEnum,
    Payment,
    User,
)
from ...schemas import CAPTURED_STATUS
from .accounts import parse_uuid
from .commission import to_money
from .periods import utc_now

logger = logging.getLogger(__name__)


class CommissionReleaseError(Exception):
    """A single payment could not be released."""


@dataclass
class ReleasedCommission:
    payment_id: str
    transaction_id: str
    referrer_id: str
    amount: Decimal


class CommissionReleaseService:
    def __init__(self, db: Session, notifier=None):
        self.db = db
        self.notifier = notifier

    def eligible_payment_ids(self, now: datetime) -> List[Any]:
        rows = (
            self.db.query(Payment.id)
            .filter(
                Payment.commission_status == CommissionStatusEnum.pending,
                Payment.commission_held_until < now,
                Payment.commission_amount > 0,
                Payment.status == CAPTURED_STATUS,
            )
            .order_by(Payment.commission_held_until.asc())
            .all()
        )
        return [row.id for row in rows]

    def release_matured_commissions(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Release every matured commission. Returns a run summary."""
        started = time.monotonic()
        now = now or utc_now()

        payment_ids = self.eligible_payment_ids(now)
        logger.info(f"[COMMISSION_RELEASE] {len(payment_ids)} commissions eligible for release")

        released: List[ReleasedCommission] = []
        failed: List[Dict[str, str]] = []

        for payment_id in payment_ids:
            try:
                released.append(self._release_one(payment_id, now))
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"[COMMISSION_RELEASE] Payment {payment_id} failed: {e}")
                failed.append({"paymentId": str(payment_id), "error": str(e)})

        self._notify_referrers(released)

        total_amount = to_money(sum((item.amount for item in released), Decimal("0")))
        summary = {
            "success": not failed,
            "total_eligible": len(payment_ids),
            "total_released": len(released),
            "total_failed": len(failed),
            "total_amount": str(total_amount),
            "released": [
                {
                    "paymentId": item.payment_id,
                    "transactionId": item.transaction_id,
                    "referrerId": item.referrer_id,
                    "amount": str(item.amount),
                }
                for item in released
            ],
            "failed": failed,
            "execution_time_ms": int((time.monotonic() - started) * 1000),
        }

        logger.info(
            f"[COMMISSION_RELEASE] Released {len(released)}/{len(payment_ids)} "
            f"({total_amount}), {len(failed)} failed in {summary['execution_time_ms']}ms"
        )
        return summary

    def _release_one(self, payment_id, now: datetime) -> ReleasedCommission:
        payment = self.db.get(Payment, payment_id)
        if payment is None or payment.commission_status != CommissionStatusEnum.pending:
            raise CommissionReleaseError("Payment is no longer pending release")

        link = self.db.get(AffiliateLink, payment.affiliate_link_id) if payment.affiliate_link_id else None
        if link is None:
            raise CommissionReleaseError("Payment has no affiliate link")
        referrer = self.db.get(User, link.user_id)
        if referrer is None:
            raise CommissionReleaseError(f"Referrer {link.user_id} not found")

        hold = (
            self.db.query(BalanceTransaction)
            .filter(
                BalanceTransaction.user_id == referrer.id,
                BalanceTransaction.type == BalanceTransactionTypeEnum.commission_hold,
                BalanceTransaction.reference_type == "Payment",
                BalanceTransaction.reference_id == str(payment.id),
            )
            .first()
        )
        if hold is None:
            raise CommissionReleaseError("Commission hold ledger entry not found")

        amount = to_money(payment.commission_amount)

        self.db.query(User).filter(User.id == referrer.id).update(
            {
                User.pending_balance: User.pending_balance - amount,
                User.balance: User.balance + amount,
            },
            synchronize_session=False,
        )
        self.db.refresh(referrer)

        payment.commission_status = CommissionStatusEnum.released
        payment.commission_released_at = now
        payment.affiliate_paid = True

        hold.type = BalanceTransactionTypeEnum.commission_release
        hold.balance_after = to_money(referrer.balance)
        hold.released_at = now
        release_note = f"Released {amount} on {now:%Y-%m-%d}"
        hold.notes = f"{hold.notes} | {release_note}" if hold.notes else release_note

        logger.info(
            f"[COMMISSION_RELEASE] Released {amount} to {referrer.id} for payment {payment.transaction_id}"
        )

        return ReleasedCommission(
            payment_id=str(payment.id),
            transaction_id=payment.transaction_id,
            referrer_id=str(referrer.id),
            amount=amount,
        )

    def _notify_referrers(self, released: List[ReleasedCommission]) -> None:
        if not self.notifier or not released:
            return

        totals: Dict[str, List[Decimal]] = defaultdict(list)
        for item in released:
            totals[item.referrer_id].append(item.amount)

        for referrer_id, amounts in totals.items():
            referrer = self.db.get(User, parse_uuid(referrer_id))
            if referrer is None:
                continue
            try:
                self.notifier.send_commission_released(
                    email=referrer.email,
                    first_name=referrer.first_name,
                    total_amount=to_money(sum(amounts, Decimal("0"))),
                    payment_count=len(amounts),
                    available_balance=to_money(referrer.balance),
                )
            except Exception as e:
                logger.error(f"[COMMISSION_RELEASE] Release email to {referrer_id} failed: {e}")
