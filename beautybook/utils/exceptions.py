"""
Billing exception hierarchy.

Each exception carries the HTTP status and the machine-readable error code the
routes answer with, so translation to a response is uniform:

    except BillingError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())

"Expected" outcomes such as an event whose owner cannot be found are result
values (see WebhookOutcome), not exceptions.
"""

from typing import Any


class BillingError(Exception):
    """Base class for every error raised by the billing layer."""

    status_code = 500
    error_code = "billing_error"

    def __init__(self, message: str | None = None, **details: Any):
        super().__init__(message or self.error_code)
        self.message = message or self.error_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error_code, "message": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class ConfigurationError(BillingError):
    """Required configuration (secret, price id, site url) is missing."""

    error_code = "configuration_error"


class WebhookSignatureError(BillingError):
    """Missing or invalid Stripe-Signature; the event is rejected before any write."""

    status_code = 400
    error_code = "bad_signature"


class UpstreamProviderError(BillingError):
    """A follow-up Stripe call failed; the original delivery must be retried."""

    status_code = 502
    error_code = "upstream_provider_error"


class SubscriptionWriteError(BillingError):
    """The subscription record could not be written."""

    error_code = "subscription_write_failed"


class UnknownSubscriptionOwner(SubscriptionWriteError):
    """The user id carried by the event does not name an existing account."""

    error_code = "unknown_subscription_owner"


class NoBillingCustomer(BillingError):
    """No usable Stripe customer on file; the UI should offer a fresh checkout."""

    status_code = 400
    error_code = "no_stripe_customer"

    def __init__(self, message: str = "No Stripe customer exists yet for this account.", **details: Any):
        super().__init__(message, **details)


class CheckoutRejected(BillingError):
    """Checkout refused by validation or the founder rollout guard."""

    status_code = 403

    def __init__(self, error_code: str, message: str | None = None, status_code: int | None = None, **details: Any):
        self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message or error_code, **details)


class BillingPortalError(UpstreamProviderError):
    """Stripe refused to open a billing portal session for a reason other than a stale customer."""

    error_code = "stripe_billing_portal_failed"


class PriceFetchError(UpstreamProviderError):
    """Configured prices could not be loaded from Stripe."""

    error_code = "stripe_price_fetch_failed"


class CheckoutSessionError(UpstreamProviderError):
    """Stripe refused to create the checkout session or resolve its price."""

    error_code = "stripe_checkout_failed"
