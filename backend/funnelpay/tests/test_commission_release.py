"""Tests for the commission release sweep.

WHAT: Matured held commissions move to the available balance
WHY: Affiliates withdraw from the available balance; releasing early or
     twice pays out refundable money
"""

from datetime import timedelta
from decimal import Decimal

from funnelpay.models import (
    BalanceTransaction,
    BalanceTransactionTypeEnum,
    CommissionStatusEnum,
    Payment,
    User,
)
from funnelpay.services.billing.commission_release import CommissionReleaseService


def _sell(service, build_payload, link, transaction_id, email):
    service.process(
        build_payload(
            transaction_id,
            email=email,
            affiliate_link={"id": str(link.id), "userId": str(link.user_id)},
        )
    )


def _held_payment(db, transaction_id):
    return db.query(Payment).filter(Payment.transaction_id == transaction_id).one()


class TestReleaseSweep:

    def test_releases_matured_commission(self, service, build_payload, make_affiliate, notifier, test_db_session):
        referrer, link = make_affiliate()
        _sell(service, build_payload, link, "MPB-CHRG-R1", "one@example.com")
        payment = _held_payment(test_db_session, "MPB-CHRG-R1")
        after_hold = payment.commission_held_until + timedelta(seconds=1)

        summary = CommissionReleaseService(test_db_session, notifier).release_matured_commissions(now=after_hold)

        test_db_session.expire_all()
        referrer = test_db_session.get(User, referrer.id)
        payment = _held_payment(test_db_session, "MPB-CHRG-R1")
        ledger = test_db_session.query(BalanceTransaction).one()

        assert summary["success"] is True
        assert summary["total_eligible"] == 1
        assert summary["total_released"] == 1
        assert summary["total_amount"] == "50.00"
        assert summary["released"][0]["transactionId"] == "MPB-CHRG-R1"

        assert referrer.pending_balance == Decimal("0")
        assert referrer.balance == Decimal("50")

        assert payment.commission_status == CommissionStatusEnum.released
        assert payment.commission_released_at == after_hold

        assert ledger.type == BalanceTransactionTypeEnum.commission_release
        assert ledger.balance_before == Decimal("0")
        assert ledger.balance_after == Decimal("50")
        assert ledger.released_at == after_hold
        assert "Released 50.00" in ledger.notes

    def test_not_yet_matured_is_left_alone(self, service, build_payload, make_affiliate, test_db_session):
        referrer, link = make_affiliate()
        _sell(service, build_payload, link, "MPB-CHRG-R1", "one@example.com")
        payment = _held_payment(test_db_session, "MPB-CHRG-R1")

        summary = CommissionReleaseService(test_db_session).release_matured_commissions(
            now=payment.commission_held_until - timedelta(days=1)
        )

        test_db_session.expire_all()
        assert summary["total_eligible"] == 0
        assert test_db_session.get(User, referrer.id).pending_balance == Decimal("50")

    def test_one_email_per_referrer(self, service, build_payload, make_affiliate, notifier, test_db_session):
        _, link = make_affiliate()
        _sell(service, build_payload, link, "MPB-CHRG-R1", "one@example.com")
        _sell(service, build_payload, link, "MPB-CHRG-R2", "two@example.com")
        later = _held_payment(test_db_session, "MPB-CHRG-R2").commission_held_until + timedelta(seconds=1)

        CommissionReleaseService(test_db_session, notifier).release_matured_commissions(now=later)

        [email] = notifier.calls_to("send_commission_released")
        assert email["email"] == "partner@example.com"
        assert email["payment_count"] == 2
        assert email["total_amount"] == Decimal("100.00")
        assert email["available_balance"] == Decimal("100.00")

    def test_missing_ledger_row_fails_only_that_payment(
        self, service, build_payload, make_affiliate, test_db_session
    ):
        referrer, link = make_affiliate()
        _sell(service, build_payload, link, "MPB-CHRG-R1", "one@example.com")
        _sell(service, build_payload, link, "MPB-CHRG-R2", "two@example.com")
        broken = _held_payment(test_db_session, "MPB-CHRG-R1")
        test_db_session.query(BalanceTransaction).filter(
            BalanceTransaction.reference_id == str(broken.id)
        ).delete(synchronize_session=False)
        test_db_session.commit()
        later = _held_payment(test_db_session, "MPB-CHRG-R2").commission_held_until + timedelta(seconds=1)

        summary = CommissionReleaseService(test_db_session).release_matured_commissions(now=later)

        test_db_session.expire_all()
        assert summary["success"] is False
        assert summary["total_released"] == 1
        assert summary["total_failed"] == 1
        assert summary["failed"][0]["paymentId"] == str(broken.id)
        assert "ledger entry not found" in summary["failed"][0]["error"]
        assert _held_payment(test_db_session, "MPB-CHRG-R1").commission_status == CommissionStatusEnum.pending
        referrer = test_db_session.get(User, referrer.id)
        assert referrer.balance == Decimal("50")
        assert referrer.pending_balance == Decimal("50")

    def test_second_sweep_releases_nothing(self, service, build_payload, make_affiliate, test_db_session):
        _, link = make_affiliate()
        _sell(service, build_payload, link, "MPB-CHRG-R1", "one@example.com")
        later = _held_payment(test_db_session, "MPB-CHRG-R1").commission_held_until + timedelta(seconds=1)
        sweep = CommissionReleaseService(test_db_session)

        sweep.release_matured_commissions(now=later)
        summary = sweep.release_matured_commissions(now=later)

        assert summary["total_eligible"] == 0
        assert summary["total_amount"] == "0.00"

    def test_email_failure_does_not_undo_release(
        self, service, build_payload, make_affiliate, failing_notifier, test_db_session
    ):
        referrer, link = make_affiliate()
        _sell(service, build_payload, link, "MPB-CHRG-R1", "one@example.com")
        later = _held_payment(test_db_session, "MPB-CHRG-R1").commission_held_until + timedelta(seconds=1)

        summary = CommissionReleaseService(test_db_session, failing_notifier).release_matured_commissions(now=later)

        test_db_session.expire_all()
        assert summary["success"] is True
        assert test_db_session.get(User, referrer.id).balance == Decimal("50")
