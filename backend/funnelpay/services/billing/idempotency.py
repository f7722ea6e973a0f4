"""Idempotency gate keyed by the gateway transaction id.

WHAT: Check whether a transaction already produced a Payment
WHY: MamoPay retries deliveries on timeout; each transaction applies once

The check is a fast path only. Two concurrent deliveries can both pass it;
the unique constraint on payments.transaction_id makes the second commit
fail, and the webhook service turns that IntegrityError into the same
"already processed" acknowledgment.
"""

from sqlalchemy.orm import Session

from ...models import Payment

ALREADY_PROCESSED_REASON = "Payment already processed"


def is_transaction_processed(db: Session, transaction_id: str) -> bool:
    existing = (
        db.query(Payment.id)
        .filter(Payment.transaction_id == transaction_id)
        .first()
    )
    return existing is not None

