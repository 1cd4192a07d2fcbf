#!/usr/bin/env python3
"""
Stripe Webhook Routes
Receives subscription lifecycle events from Stripe
"""

import logging

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from beautybook.schemas.billing import WebhookProcessingResult
from beautybook.services.reconciler import SubscriptionReconciler
from beautybook.utils.exceptions import BillingError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe Webhooks"])

# Initialize reconciler
subscription_reconciler = SubscriptionReconciler()


@router.post("/webhook", status_code=200)
async def stripe_webhook(
    request: Request, stripe_signature: str | None = Header(None, alias="stripe-signature")
):
    """
    Stripe webhook endpoint

    Handled events:
    - checkout.session.completed - write the subscription row, claim a founder slot
    - customer.subscription.created / updated - mirror status and period end
    - customer.subscription.deleted - cancel and clear founder status

    Other event types are acknowledged and ignored. Events whose owner cannot
    be found are acknowledged with 200 so Stripe stops redelivering them.

    Status codes:
    - 200: processed, ignored, duplicate or no owning user
    - 400: missing or invalid Stripe-Signature, nothing was written
    - 5xx: processing failed; Stripe redelivers the event
    """
    payload = await request.body()

    try:
        result: WebhookProcessingResult = subscription_reconciler.handle_webhook(
            payload=payload, signature=stripe_signature
        )
    except BillingError as e:
        level = logging.WARNING if e.status_code < 500 else logging.ERROR
        logger.log(level, f"Webhook rejected with {e.status_code}: {e.message}")
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    except Exception as e:
        logger.error(f"Webhook processing error: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "webhook_failed", "message": str(e)},
        )

    logger.info(f"Webhook processed: {result.event_type} - {result.message}")
    return JSONResponse(
        status_code=200,
        content={
            "received": True,
            "success": result.success,
            "event_type": result.event_type,
            "event_id": result.event_id,
            "outcome": result.outcome.value,
            "message": result.message,
            "processed_at": result.processed_at.isoformat(),
        },
    )
