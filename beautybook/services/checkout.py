#!/usr/bin/env python3
"""
Checkout Service
Creates Stripe subscription checkout sessions for the pricing page
"""

import logging
from typing import Any

import stripe

from beautybook.config import Config
from beautybook.db.founding_offer import FounderSlotPool, founder_slot_pool
from beautybook.schemas.billing import TIER_PLANS, CheckoutSessionResponse, Interval, Tier
from beautybook.services.billing_events import parse_tier
from beautybook.utils.exceptions import CheckoutRejected, CheckoutSessionError, ConfigurationError
from beautybook.utils.sentry_context import capture_payment_error
from beautybook.utils.stripe_objects import get_stripe_value

logger = logging.getLogger(__name__)

# Stripe recurring interval for each of our intervals
STRIPE_INTERVALS = {Interval.MONTHLY: "month", Interval.ANNUAL: "year"}


def _configured_price_id(tier: Tier) -> str | None:
    return {
        Tier.STARTER_MONTHLY: Config.STRIPE_PRICE_STARTER_MONTHLY,
        Tier.PRO_MONTHLY: Config.STRIPE_PRICE_PRO_MONTHLY,
        Tier.FOUNDER_ANNUAL: Config.STRIPE_PRICE_FOUNDER_ANNUAL,
        Tier.ELITE_MONTHLY: Config.STRIPE_PRICE_ELITE_MONTHLY,
        Tier.STUDIO_MONTHLY: Config.STRIPE_PRICE_STUDIO_MONTHLY,
    }[tier]


def _is_no_such_price(error: Exception) -> bool:
    return "no such price" in str(error).lower()


def pick_fallback_price(prices: list[Any], tier: Tier) -> Any | None:
    """
    Pick the newest price matching the tier by product name or nickname

    Used when the configured price id belongs to the other Stripe mode
    (test vs live) after a key rotation.
    """
    plan, interval = TIER_PLANS[tier]
    token = plan.value
    stripe_interval = STRIPE_INTERVALS[interval]

    candidates = []
    for price in prices:
        recurring = get_stripe_value(price, "recurring")
        if get_stripe_value(recurring, "interval") != stripe_interval:
            continue
        product_name = get_stripe_value(get_stripe_value(price, "product"), "name")
        nickname = get_stripe_value(price, "nickname")
        haystack = " ".join(v for v in (product_name, nickname) if isinstance(v, str)).lower()
        if token in haystack:
            candidates.append(price)

    if not candidates:
        return None
    return max(candidates, key=lambda p: int(get_stripe_value(p, "created") or 0))


class CheckoutService:
    """Service for subscription checkout sessions"""

    def __init__(self, founder_pool: FounderSlotPool | None = None):
        self.founder_pool = founder_pool or founder_slot_pool
        if Config.STRIPE_SECRET_KEY:
            stripe.api_key = Config.STRIPE_SECRET_KEY

    def create_checkout_session(
        self, user_id: str, tier: str | None, origin: str | None = None
    ) -> CheckoutSessionResponse:
        """
        Create a subscription checkout session for the given tier

        Args:
            user_id: Authenticated user id
            tier: Requested tier token
            origin: Browser Origin header, used for redirects when allow-listed

        Raises:
            CheckoutRejected: Invalid tier or refused by the founder rollout guard
            ConfigurationError: Stripe or site configuration is missing
            CheckoutSessionError: Stripe failed to resolve the price or create the session
        """
        if not Config.STRIPE_SECRET_KEY:
            raise ConfigurationError("Missing STRIPE_SECRET_KEY")
        if not Config.SITE_URL:
            raise ConfigurationError("Missing SITE_URL (required for prod redirects)")
        missing = Config.missing_stripe_prices()
        if any(missing.values()):
            raise ConfigurationError("Missing Stripe price env vars", missing=missing)

        parsed_tier = parse_tier(tier)
        if parsed_tier is None:
            raise CheckoutRejected(
                "invalid_tier",
                status_code=400,
                allowed=[t.value for t in Tier],
                received=tier,
            )

        self._check_founder_rollout(parsed_tier)

        plan, interval = TIER_PLANS[parsed_tier]
        price_id, price_source = self._resolve_price_id(parsed_tier)

        redirect_base = self._redirect_base(origin)
        metadata = {
            "user_id": user_id,
            "tier": parsed_tier.value,
            "plan": plan.value,
            "interval": interval.value,
        }

        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                success_url=f"{redirect_base}/app?checkout=success",
                cancel_url=f"{redirect_base}/pricing?checkout=cancel",
                line_items=[{"price": price_id, "quantity": 1}],
                billing_address_collection="auto",
                allow_promotion_codes=True,
                client_reference_id=user_id,
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout session failed for user {user_id}: {e}")
            capture_payment_error(
                e,
                operation="checkout_session",
                user_id=user_id,
                details={"tier": parsed_tier.value, "price_id": price_id},
            )
            raise CheckoutSessionError(
                getattr(e, "user_message", None) or "Stripe request failed",
                tier=parsed_tier.value,
            ) from e

        logger.info(
            f"Created checkout session {session['id']} for user {user_id} "
            f"(tier={parsed_tier.value}, price={price_id}, source={price_source})"
        )
        return CheckoutSessionResponse(
            url=session["url"], id=session["id"], tier=parsed_tier, price_source=price_source
        )

    def _check_founder_rollout(self, tier: Tier):
        """Elite opens only once founder spots are gone; founder closes at that point."""
        if tier not in (Tier.FOUNDER_ANNUAL, Tier.ELITE_MONTHLY):
            return

        try:
            snapshot = self.founder_pool.snapshot()
        except Exception as e:
            logger.error(f"Founder rollout state unavailable: {e}")
            raise CheckoutRejected(
                "founder_rollout_unavailable", status_code=503, detail=str(e)
            ) from e

        if tier is Tier.ELITE_MONTHLY and snapshot.spots_left > 0:
            raise CheckoutRejected(
                "elite_locked_until_founder_full", founder_spots_left=snapshot.spots_left
            )
        if tier is Tier.FOUNDER_ANNUAL and snapshot.spots_left <= 0:
            raise CheckoutRejected("founder_closed_elite_live", founder_spots_left=snapshot.spots_left)

    def _resolve_price_id(self, tier: Tier) -> tuple[str, str]:
        """Return (price_id, source) where source is 'env' or 'fallback'."""
        configured = _configured_price_id(tier)
        if configured:
            try:
                stripe.Price.retrieve(configured, expand=["product"])
                return configured, "env"
            except stripe.StripeError as e:
                if not _is_no_such_price(e):
                    raise CheckoutSessionError(f"Failed to verify price {configured}: {e}") from e
                logger.warning(f"Configured price {configured} for {tier.value} not found; searching fallback")

        try:
            listing = stripe.Price.list(active=True, limit=100, expand=["data.product"])
        except stripe.StripeError as e:
            raise CheckoutSessionError(f"Failed to list prices: {e}") from e

        fallback = pick_fallback_price(get_stripe_value(listing, "data") or [], tier)
        fallback_id = get_stripe_value(fallback, "id")
        if not fallback_id:
            raise ConfigurationError(f"No active fallback price found for {tier.value}")

        logger.info(f"Using fallback price {fallback_id} for {tier.value}")
        return fallback_id, "fallback"

    @staticmethod
    def _redirect_base(origin: str | None) -> str:
        origin = (origin or "").strip()
        if origin and origin in Config.cors_origins():
            return origin.rstrip("/")
        return Config.SITE_URL.rstrip("/")
