"""MamoPay webhook handler.

WHAT: Receives charge events from MamoPay and applies them (plan purchases,
      affiliate purchases, payment-first signups, add-ons, renewals)
WHY: Payments are the source of truth for plans, add-ons and commissions

REFERENCES:
    - funnelpay/services/billing/webhook_service.py (the engine)
    - https://docs.mamopay.com (webhooks)

Status codes:
    - 200: applied, or ignored with a reason (not retryable)
    - 400: body is not JSON
    - 422: business precondition failed (e.g. buyer not signed up yet)
    - 500: unexpected failure, captured in Sentry
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ..deps import get_payment_webhook_service
from ..schemas import WebhookResponse
from ..services.billing.errors import BusinessRuleError
from ..telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/mamopay", response_model=WebhookResponse, response_model_exclude_none=True)
async def handle_mamopay_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    service=Depends(get_payment_webhook_service),
) -> WebhookResponse:
    """Apply one MamoPay delivery.

    Side effects (emails, subscriber lookup, CRM, workspace clone) run after
    the response is sent and never change it.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.error("[MAMOPAY_WEBHOOK] Invalid JSON payload")
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    transaction_id = payload.get("id") if isinstance(payload, dict) else None
    logger.info(
        f"[MAMOPAY_WEBHOOK] Received {payload.get('event_type') if isinstance(payload, dict) else 'invalid'} "
        f"for {transaction_id}"
    )

    try:
        result = service.process(payload)
    except BusinessRuleError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        capture_exception(e, extra={"transaction_id": transaction_id})
        raise

    if len(result.side_effects):
        background_tasks.add_task(result.side_effects.run_all)

    return result.response
