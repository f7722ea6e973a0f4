"""Subscriber id backfill for recurring subscriptions.

WHAT: Asks the gateway for a subscription's first subscriber and stores the
      id on our Subscription row
WHY: The charge webhook carries the subscription id but not the subscriber
     id, which later management calls need

Runs as a post-commit side effect in its own session. A failed lookup leaves
subscriber_id empty; the next renewal queues the lookup again.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...models import Subscription
from .accounts import parse_uuid

logger = logging.getLogger(__name__)


class SubscriberReconciler:
    def __init__(self, registry, session_factory: Callable[[], Session]):
        self.registry = registry
        self.session_factory = session_factory

    def backfill(self, subscription_pk: str, external_subscription_id: str) -> Optional[str]:
        subscriber_id = self.registry.get_first_subscriber_id(external_subscription_id)
        if not subscriber_id:
            logger.info(f"[SUBSCRIBER_SYNC] No subscriber id for {external_subscription_id}")
            return None

        uid = parse_uuid(subscription_pk)
        if uid is None:
            logger.warning(f"[SUBSCRIBER_SYNC] Invalid subscription pk {subscription_pk!r}")
            return None

        db = self.session_factory()
        try:
            subscription = db.get(Subscription, uid)
            if subscription is None:
                logger.warning(f"[SUBSCRIBER_SYNC] Subscription {subscription_pk} not found")
                return None
            subscription.subscriber_id = subscriber_id
            db.commit()
            logger.info(
                f"[SUBSCRIBER_SYNC] Stored subscriber {subscriber_id} on {external_subscription_id}"
            )
            return subscriber_id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
