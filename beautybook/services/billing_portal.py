#!/usr/bin/env python3
"""
Billing Portal Service
Opens Stripe customer portal sessions and repairs stale customer ids on the way
"""

import logging
from typing import Any

import stripe

from beautybook.config import Config
from beautybook.db.subscriptions import get_subscription, set_customer_id
from beautybook.schemas.billing import BillingPortalResponse
from beautybook.utils.exceptions import BillingPortalError, ConfigurationError, NoBillingCustomer
from beautybook.utils.sentry_context import capture_payment_error
from beautybook.utils.stripe_objects import get_id, get_stripe_value

logger = logging.getLogger(__name__)

DEFAULT_RETURN_PATH = "/app"


def _is_missing_customer(error: stripe.InvalidRequestError) -> bool:
    """Stripe rejects a customer id from another account or mode as resource_missing."""
    if getattr(error, "code", None) == "resource_missing":
        return True
    return "No such customer" in str(getattr(error, "user_message", None) or error)


def build_return_url(site_url: str, return_path: str | None) -> str:
    """Only same-site absolute paths are accepted; anything else returns to the dashboard."""
    path = return_path.strip() if isinstance(return_path, str) else ""
    if not path.startswith("/") or path.startswith("//"):
        path = DEFAULT_RETURN_PATH
    return f"{site_url.rstrip('/')}{path}"


class BillingPortalService:
    """Creates billing portal sessions for authenticated users"""

    def __init__(self):
        if Config.STRIPE_SECRET_KEY:
            stripe.api_key = Config.STRIPE_SECRET_KEY

    def create_portal_session(self, user_id: str, return_path: str | None = None) -> BillingPortalResponse:
        """
        Create a Stripe billing portal session for the user

        A stored customer id that Stripe no longer knows is re-derived from the
        user's subscription, retried once and persisted. When that is not
        possible the stored id is cleared and NoBillingCustomer is raised so the
        UI can send the user to pricing.

        Raises:
            NoBillingCustomer: No usable Stripe customer for the user
            BillingPortalError: Any other Stripe failure
            ConfigurationError: SITE_URL is not set
        """
        if not Config.SITE_URL:
            raise ConfigurationError("Missing SITE_URL")

        row = get_subscription(user_id) or {}
        customer_id = row.get("stripe_customer_id")
        if not customer_id:
            raise NoBillingCustomer()

        return_url = build_return_url(Config.SITE_URL, return_path)

        try:
            session = self._open_session(customer_id, return_url)
        except stripe.InvalidRequestError as e:
            if not _is_missing_customer(e):
                raise self._portal_failure(e, user_id) from e
            logger.warning(
                f"Stored stripe_customer_id={customer_id} rejected for user {user_id}; attempting repair"
            )
            return self._repair_and_retry(user_id, row, return_url)
        except stripe.StripeError as e:
            raise self._portal_failure(e, user_id) from e

        return BillingPortalResponse(url=session["url"], id=session["id"])

    def _repair_and_retry(self, user_id: str, row: dict[str, Any], return_url: str) -> BillingPortalResponse:
        subscription_id = row.get("stripe_subscription_id")
        if not subscription_id:
            logger.warning(f"No stripe_subscription_id on file for user {user_id}; cannot repair customer")
            raise self._forget_customer(user_id)

        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.warning(f"Re-fetch of subscription {subscription_id} failed during repair: {e}")
            raise self._forget_customer(user_id)

        live_customer_id = get_id(get_stripe_value(subscription, "customer"))
        if not live_customer_id:
            logger.warning(f"Subscription {subscription_id} carries no customer; cannot repair")
            raise self._forget_customer(user_id)

        try:
            session = self._open_session(live_customer_id, return_url)
        except stripe.InvalidRequestError as e:
            if not _is_missing_customer(e):
                raise self._portal_failure(e, user_id) from e
            logger.warning(f"Repaired customer {live_customer_id} also rejected for user {user_id}")
            raise self._forget_customer(user_id)
        except stripe.StripeError as e:
            raise self._portal_failure(e, user_id) from e

        # The session is valid either way; a failed persist is repaired again next time
        try:
            set_customer_id(user_id, live_customer_id)
        except Exception as e:
            logger.error(f"Failed to store repaired stripe_customer_id for user {user_id}: {e}", exc_info=True)
            capture_payment_error(
                e,
                operation="billing_portal_repair",
                user_id=user_id,
                details={"customer_id": live_customer_id},
            )
        else:
            logger.info(f"Repaired stripe_customer_id for user {user_id} -> {live_customer_id}")
        return BillingPortalResponse(url=session["url"], id=session["id"], repaired_customer=True)

    @staticmethod
    def _open_session(customer_id: str, return_url: str) -> Any:
        return stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)

    @staticmethod
    def _forget_customer(user_id: str) -> NoBillingCustomer:
        """Clear the unusable customer id; the caller raises the returned error."""
        set_customer_id(user_id, None)
        return NoBillingCustomer()

    @staticmethod
    def _portal_failure(error: Exception, user_id: str) -> BillingPortalError:
        logger.error(f"Stripe billing portal session failed for user {user_id}: {error}")
        capture_payment_error(error, operation="billing_portal_session", user_id=user_id)
        message = getattr(error, "user_message", None) or str(error) or "Stripe request failed"
        return BillingPortalError(message)
