#!/usr/bin/env python3
"""
Billing Routes
Endpoints used by the dashboard, pricing page and paywall gate
"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse

from beautybook.db.founding_offer import founder_slot_pool
from beautybook.db.subscriptions import get_subscription
from beautybook.schemas.billing import (
    BillingPortalRequest,
    CheckoutSessionRequest,
    SubscriptionView,
)
from beautybook.security.deps import get_current_user_id
from beautybook.services.billing_portal import BillingPortalService
from beautybook.services.checkout import CheckoutService
from beautybook.services.prices import get_prices
from beautybook.utils.exceptions import BillingError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["Billing"])

billing_portal_service = BillingPortalService()
checkout_service = CheckoutService()


def _billing_error_response(error: BillingError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@router.post("/portal-session")
async def create_portal_session(
    body: BillingPortalRequest | None = None,
    user_id: str = Depends(get_current_user_id),
):
    """
    Open the Stripe customer portal

    Returns {url, id}, or 400 {"error": "no_stripe_customer"} when the user has
    no usable Stripe customer; the UI treats that as "choose a plan".
    """
    return_path = body.return_path if body else None
    try:
        session = billing_portal_service.create_portal_session(user_id, return_path)
    except BillingError as e:
        return _billing_error_response(e)
    except Exception as e:
        logger.error(f"Billing portal session failed for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="server_error") from e

    return {"url": session.url, "id": session.id}


@router.get("/subscription")
async def get_current_subscription(user_id: str = Depends(get_current_user_id)):
    """Subscription state of the authenticated user, with the derived entitlement flag"""
    try:
        row = get_subscription(user_id)
    except Exception as e:
        logger.error(f"Subscription lookup failed for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="subscription_lookup_failed") from e

    view = SubscriptionView.from_row(row)
    return view.model_dump(mode="json")


@router.post("/checkout-session")
async def create_checkout_session(
    body: CheckoutSessionRequest,
    user_id: str = Depends(get_current_user_id),
    origin: str | None = Header(None),
):
    """Create a subscription checkout session for the requested tier"""
    try:
        session = checkout_service.create_checkout_session(user_id, body.tier, origin)
    except BillingError as e:
        return _billing_error_response(e)
    except Exception as e:
        logger.error(f"Checkout session failed for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="server_error") from e

    return {"url": session.url, "id": session.id}


@router.get("/prices")
async def list_prices():
    """Public price catalogue for the pricing page"""
    try:
        response = get_prices()
    except BillingError as e:
        return _billing_error_response(e)

    return response.model_dump(mode="json")


@router.get("/founder-offer")
async def get_founder_offer():
    """Remaining founder slots"""
    try:
        snapshot = founder_slot_pool.snapshot()
    except Exception as e:
        logger.error(f"Founder offer lookup failed: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="founder_offer_unavailable") from e

    return snapshot.model_dump()
