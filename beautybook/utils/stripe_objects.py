"""
Accessors for Stripe payloads.

Webhook events arrive as StripeObject instances, test fixtures and re-fetched
objects may be plain dicts or mocks. These helpers read either shape.
"""

from datetime import UTC, datetime
from typing import Any

import stripe


def get_stripe_value(obj: Any, attr: str) -> Any:
    """Safely extract a field from a Stripe object (dict-like or attribute-based)."""
    if obj is None:
        return None

    if isinstance(obj, dict):
        return obj.get(attr)

    # Item access first: "items" is also a method name on StripeObject
    if isinstance(obj, stripe.StripeObject):
        try:
            return obj[attr]
        except KeyError:
            return None

    return getattr(obj, attr, None)


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    """Convert Stripe metadata into a plain dictionary."""
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        result = to_dict()
        if isinstance(result, dict):
            return result
    try:
        return dict(metadata)
    except (TypeError, ValueError):
        return {}


def get_id(value: Any) -> str | None:
    """Return the id of an expandable field that may be an id string or an object."""
    if isinstance(value, str):
        return value or None
    object_id = get_stripe_value(value, "id")
    return object_id if isinstance(object_id, str) and object_id else None


def epoch_to_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def subscription_period_end(subscription: Any) -> datetime | None:
    """
    Period end of a subscription.

    Newer API versions moved current_period_end from the subscription onto its
    items; the first item is used when the top-level field is absent.
    """
    period_end = epoch_to_datetime(get_stripe_value(subscription, "current_period_end"))
    if period_end is not None:
        return period_end

    items = get_stripe_value(get_stripe_value(subscription, "items"), "data") or []
    if isinstance(items, list | tuple) and items:
        return epoch_to_datetime(get_stripe_value(items[0], "current_period_end"))
    return None
