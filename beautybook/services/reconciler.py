#!/usr/bin/env python3
"""
Subscription Reconciler
Keeps pro_subscriptions in step with Stripe webhook deliveries
"""

import logging
from datetime import UTC, datetime
from typing import Any

import stripe

from beautybook.config import Config
from beautybook.db.founding_offer import FounderSlotPool, founder_slot_pool
from beautybook.db.subscriptions import mark_founder, upsert_subscription
from beautybook.db.webhook_events import is_event_processed, record_processed_event
from beautybook.schemas.billing import (
    FOUNDER_CLAIM_STATUSES,
    NormalizedBilling,
    Plan,
    SubscriptionUpsert,
    WebhookOutcome,
    WebhookProcessingResult,
)
from beautybook.services.billing_events import normalize_billing_object, refine
from beautybook.services.identity import resolve_user_id
from beautybook.utils.exceptions import (
    BillingError,
    ConfigurationError,
    UnknownSubscriptionOwner,
    UpstreamProviderError,
    WebhookSignatureError,
)
from beautybook.utils.sentry_context import capture_payment_error
from beautybook.utils.stripe_objects import (
    get_id,
    get_stripe_value,
    subscription_period_end,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_SYNC_EVENTS = ("customer.subscription.created", "customer.subscription.updated")


class SubscriptionReconciler:
    """Verifies Stripe webhooks and applies them to the subscription record."""

    def __init__(self, webhook_secret: str | None = None, founder_pool: FounderSlotPool | None = None):
        self._webhook_secret = webhook_secret
        self.founder_pool = founder_pool or founder_slot_pool

        if Config.STRIPE_SECRET_KEY:
            stripe.api_key = Config.STRIPE_SECRET_KEY
        else:
            logger.warning("STRIPE_SECRET_KEY not configured - live subscription fetches will fail")

    @property
    def webhook_secret(self) -> str | None:
        return self._webhook_secret or Config.STRIPE_WEBHOOK_SECRET

    # ==================== Entry point ====================

    def handle_webhook(self, payload: bytes, signature: str | None) -> WebhookProcessingResult:
        """
        Verify and process one Stripe webhook delivery

        Raises:
            WebhookSignatureError: Missing or invalid signature, nothing was written
            UpstreamProviderError: A follow-up Stripe call failed; Stripe should redeliver
            BillingError: Storage or configuration failure; Stripe should redeliver
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured - rejecting webhook")
            raise ConfigurationError("Webhook secret not configured")
        if not signature:
            logger.error("Missing webhook signature")
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise WebhookSignatureError(f"Invalid webhook signature: {e}") from e

        event_id = event["id"]
        event_type = event["type"]
        log_context = {"event_id": event_id, "event_type": event_type}
        logger.info(f"Processing webhook: {event_type} (ID: {event_id})", extra=log_context)

        if is_event_processed(event_id):
            return WebhookProcessingResult(
                event_type=event_type,
                event_id=event_id,
                outcome=WebhookOutcome.DUPLICATE,
                message=f"Event {event_id} already processed (duplicate)",
            )

        obj = event["data"]["object"]
        try:
            if event_type == "checkout.session.completed":
                outcome, user_id, founder_claimed = self._handle_checkout_completed(obj)
            elif event_type in SUBSCRIPTION_SYNC_EVENTS:
                outcome, user_id, founder_claimed = self._handle_subscription_changed(obj)
            elif event_type == "customer.subscription.deleted":
                outcome, user_id, founder_claimed = self._handle_subscription_deleted(obj)
            else:
                logger.info(f"Ignoring unhandled webhook event type {event_type}", extra=log_context)
                return WebhookProcessingResult(
                    event_type=event_type,
                    event_id=event_id,
                    outcome=WebhookOutcome.IGNORED,
                    message=f"Event {event_type} ignored",
                )
        except UnknownSubscriptionOwner as e:
            logger.warning(f"Event {event_id} names a user with no account: {e}", extra=log_context)
            outcome, user_id, founder_claimed = WebhookOutcome.MISSING_USER, None, None
        except BillingError:
            raise
        except Exception as e:
            logger.error(f"Webhook processing error for {event_id}: {e}", exc_info=True, extra=log_context)
            capture_payment_error(
                e,
                operation="webhook_processing",
                details={"event_id": event_id, "event_type": event_type},
            )
            raise

        record_processed_event(
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            metadata={"outcome": outcome.value, "stripe_account": get_stripe_value(event, "account")},
        )

        if outcome is WebhookOutcome.MISSING_USER:
            message = f"Event {event_type} acknowledged; no owning user found"
        else:
            message = f"Event {event_type} processed successfully"

        return WebhookProcessingResult(
            event_type=event_type,
            event_id=event_id,
            outcome=outcome,
            user_id=user_id,
            founder_claimed=founder_claimed,
            message=message,
        )

    # ==================== Handlers ====================

    def _handle_checkout_completed(self, session: Any) -> tuple[WebhookOutcome, str | None, bool | None]:
        """
        Write the subscription row for a completed checkout

        The session may lack status and period end, so the live subscription is
        fetched when the session references one.
        """
        normalized = normalize_billing_object(session)
        subscription_id = get_id(get_stripe_value(session, "subscription"))
        customer_id = get_id(get_stripe_value(session, "customer"))

        user_id = normalized.user_id or _as_user_id(get_stripe_value(session, "client_reference_id"))
        if not user_id:
            user_id = self._resolve_user(subscription_id, customer_id)
        if not user_id:
            logger.warning(
                f"checkout.session.completed without owning user: "
                f"subscription_id={subscription_id}, customer_id={customer_id}"
            )
            return WebhookOutcome.MISSING_USER, None, None

        status = "active"
        period_end = None
        if subscription_id:
            subscription = self._retrieve_subscription(subscription_id)
            status = get_stripe_value(subscription, "status") or status
            period_end = subscription_period_end(subscription)
            normalized = refine(normalized, normalize_billing_object(subscription))
            customer_id = customer_id or get_id(get_stripe_value(subscription, "customer"))

        founder_claimed = self._apply(
            user_id, normalized, status, period_end, customer_id, subscription_id
        )
        return WebhookOutcome.PROCESSED, user_id, founder_claimed

    def _handle_subscription_changed(self, subscription: Any) -> tuple[WebhookOutcome, str | None, bool | None]:
        """Mirror a created/updated subscription onto the user's row"""
        normalized = normalize_billing_object(subscription)
        subscription_id = get_id(subscription)
        customer_id = get_id(get_stripe_value(subscription, "customer"))

        user_id = normalized.user_id or self._resolve_user(subscription_id, customer_id)
        if not user_id:
            logger.warning(
                f"Subscription event without owning user: "
                f"subscription_id={subscription_id}, customer_id={customer_id}"
            )
            return WebhookOutcome.MISSING_USER, None, None

        status = get_stripe_value(subscription, "status") or "incomplete"
        founder_claimed = self._apply(
            user_id,
            normalized,
            status,
            subscription_period_end(subscription),
            customer_id,
            subscription_id,
        )
        return WebhookOutcome.PROCESSED, user_id, founder_claimed

    def _handle_subscription_deleted(self, subscription: Any) -> tuple[WebhookOutcome, str | None, bool | None]:
        """
        Cancel the user's subscription

        Cancellation is terminal: period end and founder status are cleared no
        matter what the row held before, and the founder claim is forfeited.
        """
        normalized = normalize_billing_object(subscription)
        subscription_id = get_id(subscription)
        customer_id = get_id(get_stripe_value(subscription, "customer"))

        user_id = normalized.user_id or self._resolve_user(subscription_id, customer_id)
        if not user_id:
            logger.warning(
                f"customer.subscription.deleted without owning user: "
                f"subscription_id={subscription_id}, customer_id={customer_id}"
            )
            return WebhookOutcome.MISSING_USER, None, None

        upsert_subscription(
            SubscriptionUpsert(
                user_id=user_id,
                status="canceled",
                plan=None if normalized.is_default else normalized.plan,
                interval=None if normalized.is_default else normalized.interval,
                stripe_customer_id=customer_id,
                stripe_subscription_id=subscription_id,
                clear_period_end=True,
                is_founder_annual=False,
            )
        )
        self.founder_pool.forfeit(user_id)

        logger.info(f"User {user_id} subscription {subscription_id} canceled", extra={"user_id": user_id})
        return WebhookOutcome.PROCESSED, user_id, False

    # ==================== Helpers ====================

    def _resolve_user(self, subscription_id: str | None, customer_id: str | None) -> str | None:
        resolution = resolve_user_id(subscription_id=subscription_id, customer_id=customer_id)
        if resolution.found:
            logger.info(
                f"Recovered user_id={resolution.user_id} from stored billing ids "
                f"(subscription_id={subscription_id}, customer_id={customer_id})"
            )
        return resolution.user_id

    def _retrieve_subscription(self, subscription_id: str) -> Any:
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to fetch subscription {subscription_id} from Stripe: {e}")
            capture_payment_error(
                e, operation="subscription_retrieve", details={"subscription_id": subscription_id}
            )
            raise UpstreamProviderError(
                f"Failed to fetch subscription {subscription_id}", subscription_id=subscription_id
            ) from e

    def _apply(
        self,
        user_id: str,
        normalized: NormalizedBilling,
        status: str,
        period_end: datetime | None,
        customer_id: str | None,
        subscription_id: str | None,
    ) -> bool | None:
        """Upsert the row, then attempt the founder claim when the transition qualifies"""
        stored = upsert_subscription(
            SubscriptionUpsert(
                user_id=user_id,
                status=status,
                # Pure defaults are left to the column defaults so they never clobber a known plan
                plan=None if normalized.is_default else normalized.plan,
                interval=None if normalized.is_default else normalized.interval,
                stripe_customer_id=customer_id,
                stripe_subscription_id=subscription_id,
                current_period_end=period_end,
            )
        )

        if normalized.plan is not Plan.FOUNDER or status not in FOUNDER_CLAIM_STATUSES:
            return None
        if stored.get("is_founder_annual"):
            return False

        claim = self.founder_pool.try_claim(user_id)
        if claim.holds_slot:
            mark_founder(user_id, claim.claimed_at or datetime.now(UTC))
        return claim.claimed


def _as_user_id(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
