"""Payment webhook engine.

WHAT:
    Turns one MamoPay delivery into either an "ignored" acknowledgment or a
    fully applied purchase:

        screen -> idempotency -> validate -> classify -> process -> commit
        -> audit -> (post-commit) side effects

WHY:
    The HTTP router stays thin and the same engine can be driven directly
    (tests, replays) with handle().

TRANSACTIONS:
    - Processors write through self.db without committing; commit happens
      here, once, so a purchase applies completely or not at all
    - A duplicate transaction id surfacing at flush/commit (two concurrent
      deliveries) is rolled back and acknowledged as already processed
    - Audit rows are written after the purchase transaction has ended
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ...models import PaymentWebhookEvent
from ...schemas import WebhookResponse
from .errors import BusinessRuleError
from .idempotency import ALREADY_PROCESSED_REASON, is_transaction_processed
from .periods import utc_now
from .processors.addon_purchase import AddOnPurchaseProcessor
from .processors.affiliate_plan_purchase import AffiliatePlanPurchaseProcessor
from .processors.base import ProcessorContext, PurchaseProcessor
from .processors.payment_first_signup import BusinessSignupProcessor, PartnerSignupProcessor
from .processors.plan_purchase import PlanPurchaseProcessor
from .routing import RouteDecision, classify, screen_raw_event, validate_event
from .side_effects import SideEffects
from .subscriber_sync import SubscriberReconciler

logger = logging.getLogger(__name__)


PROCESSORS: Dict[RouteDecision, Type[PurchaseProcessor]] = {
    RouteDecision.partner_signup: PartnerSignupProcessor,
    RouteDecision.business_signup: BusinessSignupProcessor,
    RouteDecision.plan_purchase: PlanPurchaseProcessor,
    RouteDecision.affiliate_plan_purchase: AffiliatePlanPurchaseProcessor,
    RouteDecision.addon_purchase: AddOnPurchaseProcessor,
}


@dataclass
class WebhookResult:
    response: WebhookResponse
    side_effects: SideEffects
    route: Optional[RouteDecision] = None

    @property
    def ignored(self) -> bool:
        return bool(self.response.ignored)


class PaymentWebhookService:
    """One instance per delivery; holds the request's session and collaborators."""

    def __init__(
        self,
        db: Session,
        settings,
        notifier,
        subscriber_registry,
        crm,
        cloner,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self.db = db
        self.settings = settings
        self.notifier = notifier
        self.crm = crm
        self.cloner = cloner
        # Post-commit work can't reuse the request session; it may be closed by then
        self.session_factory = session_factory or sessionmaker(
            bind=db.get_bind(), autoflush=False, autocommit=False
        )
        self.reconciler = SubscriberReconciler(subscriber_registry, self.session_factory)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def handle(self, payload: Any) -> WebhookResponse:
        """Process and run side effects inline. Raises like process()."""
        result = self.process(payload)
        result.side_effects.run_all()
        return result.response

    def process(self, payload: Any) -> WebhookResult:
        """Apply one delivery. Side effects are returned, not run.

        Raises:
            BusinessRuleError: a business precondition failed (nothing applied)
            Exception: infrastructure failure (nothing applied)
        """
        side_effects = SideEffects()

        reason = screen_raw_event(payload)
        if reason:
            return self._ignore(payload, reason, side_effects)

        transaction_id = payload["id"]
        if is_transaction_processed(self.db, transaction_id):
            return self._ignore(payload, ALREADY_PROCESSED_REASON, side_effects)

        event, reason = validate_event(payload)
        if reason:
            return self._ignore(payload, reason, side_effects)

        route = classify(event)
        if route is RouteDecision.unknown:
            return self._ignore(
                payload, f"Unknown payment type: {event.details.paymentType}", side_effects, route
            )

        logger.info(f"[WEBHOOK] {transaction_id} routed to {route.value}")

        ctx = ProcessorContext(
            db=self.db,
            settings=self.settings,
            notifier=self.notifier,
            cloner=self.cloner,
            crm=self.crm,
            side_effects=side_effects,
            now=utc_now(),
        )

        try:
            result = PROCESSORS[route](ctx).process(event)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            side_effects.clear()
            if is_transaction_processed(self.db, transaction_id):
                logger.info(f"[WEBHOOK] {transaction_id} committed concurrently, acknowledging")
                return self._ignore(payload, ALREADY_PROCESSED_REASON, side_effects, route)
            logger.exception(f"[WEBHOOK] Integrity error processing {transaction_id}: {e}")
            self._audit(payload, f"error: {e}")
            raise
        except BusinessRuleError as e:
            self.db.rollback()
            side_effects.clear()
            logger.warning(f"[BILLING_RULE] {transaction_id} ({route.value}): {e}")
            self._audit(payload, f"business_error: {e}")
            raise
        except Exception as e:
            self.db.rollback()
            side_effects.clear()
            logger.exception(f"[WEBHOOK] Failed processing {transaction_id} ({route.value}): {e}")
            self._audit(payload, f"error: {e}")
            raise

        if result.subscriber_lookup_id and result.subscription_pk:
            side_effects.add(
                "subscriber_lookup",
                self.reconciler.backfill,
                result.subscription_pk,
                result.subscriber_lookup_id,
            )

        self._audit(payload, "processed")
        logger.info(
            f"[WEBHOOK] {transaction_id} processed: {result.message} "
            f"(side effects: {', '.join(side_effects.names) or 'none'})"
        )

        return WebhookResult(
            response=WebhookResponse(message=result.message, data=result.to_data()),
            side_effects=side_effects,
            route=route,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _ignore(
        self,
        payload: Any,
        reason: str,
        side_effects: SideEffects,
        route: Optional[RouteDecision] = None,
    ) -> WebhookResult:
        logger.info(f"[WEBHOOK] Ignored {_transaction_id(payload)}: {reason}")
        self._audit(payload, f"ignored: {reason}")
        return WebhookResult(
            response=WebhookResponse(ignored=True, reason=reason),
            side_effects=side_effects,
            route=route,
        )

    def _audit(self, payload: Any, outcome: str) -> None:
        """Record the delivery. Never raises."""
        is_dict = isinstance(payload, dict)
        try:
            self.db.add(
                PaymentWebhookEvent(
                    transaction_id=_transaction_id(payload),
                    event_type=payload.get("event_type") if is_dict else None,
                    processing_result=outcome,
                    payload_json=payload if is_dict else None,
                )
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"[WEBHOOK] Failed to write audit row ({outcome}): {e}")


def _transaction_id(payload: Any) -> Optional[str]:
    if isinstance(payload, dict) and payload.get("id"):
        return str(payload["id"])
    return None
