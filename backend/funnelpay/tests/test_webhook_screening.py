"""Tests for event screening, idempotency and the audit log.

WHAT: Deliveries that must be acknowledged without applying anything
WHY: MamoPay retries anything that isn't a 2xx; ignorable events must be
     acknowledged, duplicates must never apply twice

REFERENCES:
    - funnelpay/services/billing/webhook_service.py
    - funnelpay/services/billing/routing.py
"""

from funnelpay.models import Payment, PaymentWebhookEvent, PaymentTypeEnum
from funnelpay.services.billing import webhook_service as webhook_module


def _audit_results(db):
    return [row.processing_result for row in db.query(PaymentWebhookEvent).all()]


class TestIgnoredEvents:

    def test_unsupported_event_type(self, service, build_payload, test_db_session):
        result = service.process(build_payload(event_type="charge.refunded"))

        assert result.ignored
        assert result.response.reason == "Unsupported event type: charge.refunded"
        assert test_db_session.query(Payment).count() == 0
        assert _audit_results(test_db_session) == ["ignored: Unsupported event type: charge.refunded"]

    def test_status_not_captured(self, service, build_payload):
        result = service.process(build_payload(status="failed"))

        assert result.ignored
        assert result.response.reason == "Payment status is not captured: failed"

    def test_missing_transaction_id(self, service, build_payload):
        result = service.process(build_payload(transaction_id=""))

        assert result.response.reason == "Missing transaction ID"

    def test_payload_not_an_object(self, service, test_db_session):
        result = service.process(["not", "an", "object"])

        assert result.response.reason == "Invalid payload format"
        audit = test_db_session.query(PaymentWebhookEvent).one()
        assert audit.transaction_id is None
        assert audit.payload_json is None

    def test_invalid_email_is_ignored(self, service, build_payload, make_user):
        make_user()
        result = service.process(build_payload(email="not-an-email"))

        assert result.ignored
        assert result.response.reason.startswith("Invalid webhook data: custom_data.details.email")

    def test_unknown_frequency_fails_closed(self, service, build_payload, make_user, test_db_session):
        make_user()
        result = service.process(build_payload(frequency="fortnightly", subscription_id="MPB-SUB-1"))

        assert result.ignored
        assert result.response.reason.startswith("Invalid webhook data")
        assert test_db_session.query(Payment).count() == 0

    def test_oversized_frequency_interval_is_ignored(self, service, build_payload, make_user, test_db_session):
        make_user()
        result = service.process(
            build_payload("T-HUGE", frequency="annually", frequency_interval=9000, subscription_id="MPB-SUB-1")
        )

        assert result.ignored
        assert result.response.reason.startswith("Invalid webhook data: custom_data.details.frequencyInterval")
        assert test_db_session.query(Payment).count() == 0

    def test_unknown_payment_type(self, service, build_payload):
        result = service.process(build_payload(payment_type="GIFT_CARD"))

        assert result.ignored
        assert result.response.reason == "Unknown payment type: GIFT_CARD"

    def test_addon_without_addon_type_is_invalid(self, service, build_payload):
        result = service.process(build_payload(payment_type="ADDON_PURCHASE", plan_type=None))

        assert result.ignored
        assert "addonType is required" in result.response.reason

    def test_ignored_events_have_no_side_effects(self, service, build_payload):
        result = service.process(build_payload(status="pending"))

        assert len(result.side_effects) == 0


class TestIdempotency:

    def test_redelivery_is_acknowledged_once(self, service, build_payload, make_user, notifier, test_db_session):
        make_user()
        payload = build_payload(subscription_id="MPB-SUB-1")

        first = service.handle(payload)
        second = service.handle(payload)

        assert first.ignored is None
        assert second.ignored is True
        assert second.reason == "Payment already processed"
        assert test_db_session.query(Payment).count() == 1
        # Only the first delivery emailed the buyer
        assert len(notifier.calls_to("send_subscription_confirmation")) == 1

    def test_concurrent_commit_is_reported_as_already_processed(
        self, service, build_payload, make_user, test_db_session, monkeypatch
    ):
        """The unique constraint decides when both deliveries pass the pre-check."""
        buyer = make_user()
        test_db_session.add(
            Payment(
                transaction_id="MPB-CHRG-RACE",
                user_id=buyer.id,
                amount=99,
                currency="USD",
                status="captured",
                payment_type=PaymentTypeEnum.plan_purchase,
            )
        )
        test_db_session.commit()

        real_check = webhook_module.is_transaction_processed
        checks = []

        def racing_check(db, transaction_id):
            checks.append(transaction_id)
            # The pre-check loses the race; the re-check after rollback sees the row
            return False if len(checks) == 1 else real_check(db, transaction_id)

        monkeypatch.setattr(webhook_module, "is_transaction_processed", racing_check)

        result = service.process(build_payload("MPB-CHRG-RACE"))

        assert result.ignored
        assert result.response.reason == "Payment already processed"
        assert len(result.side_effects) == 0
        assert test_db_session.query(Payment).count() == 1
        assert len(checks) == 2


class TestAuditLog:

    def test_processed_delivery_is_audited(self, service, build_payload, make_user, test_db_session):
        make_user()
        service.process(build_payload("MPB-CHRG-AUDIT"))

        audit = test_db_session.query(PaymentWebhookEvent).one()
        assert audit.transaction_id == "MPB-CHRG-AUDIT"
        assert audit.event_type == "charge.succeeded"
        assert audit.processing_result == "processed"
        assert audit.payload_json["id"] == "MPB-CHRG-AUDIT"

    def test_business_error_is_audited(self, service, build_payload, test_db_session):
        from funnelpay.services.billing.errors import AccountNotFoundError
        import pytest

        with pytest.raises(AccountNotFoundError):
            service.process(build_payload("MPB-CHRG-NOUSER"))

        assert _audit_results(test_db_session) == [
            "business_error: User not found. Please sign up first before making a payment."
        ]

    def test_every_delivery_gets_its_own_row(self, service, build_payload, make_user, test_db_session):
        make_user()
        payload = build_payload()
        service.process(payload)
        service.process(payload)

        assert _audit_results(test_db_session) == [
            "processed",
            "ignored: Payment already processed",
        ]
