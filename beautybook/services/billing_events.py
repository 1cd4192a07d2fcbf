"""
Billing event normalization.

Maps a checkout session or subscription object onto the canonical
(user_id, plan, interval, tier) tuple. Metadata has gone through two schemas:
old checkouts only wrote a combined `tier` token, newer ones also write
`plan` and `interval`. A recognised tier always wins so rows written before the
migration resolve the same way as new ones.

Everything here is pure: no I/O, no logging, identical input gives identical
output.
"""

from typing import Any

from beautybook.schemas.billing import (
    DEFAULT_INTERVAL,
    DEFAULT_PLAN,
    TIER_PLANS,
    Interval,
    NormalizedBilling,
    Plan,
    Tier,
)
from beautybook.utils.stripe_objects import get_stripe_value, metadata_to_dict

_PLANS = {plan.value: plan for plan in Plan}
_INTERVALS = {interval.value: interval for interval in Interval}
_TIERS = {tier.value: tier for tier in Tier}


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def parse_tier(value: Any) -> Tier | None:
    token = _clean(value)
    return _TIERS.get(token.lower()) if token else None


def parse_plan(value: Any) -> Plan | None:
    token = _clean(value)
    return _PLANS.get(token.lower()) if token else None


def parse_interval(value: Any) -> Interval | None:
    token = _clean(value)
    return _INTERVALS.get(token.lower()) if token else None


def normalize_metadata(metadata: dict[str, Any], legacy_tier: Any = None) -> NormalizedBilling:
    """Normalize an already-extracted metadata bag."""
    user_id = _clean(metadata.get("user_id"))
    tier = parse_tier(metadata.get("tier")) or parse_tier(legacy_tier)

    if tier is not None:
        plan, interval = TIER_PLANS[tier]
        return NormalizedBilling(
            user_id=user_id, plan=plan, interval=interval, tier=tier, is_default=False
        )

    plan = parse_plan(metadata.get("plan"))
    interval = parse_interval(metadata.get("interval"))
    return NormalizedBilling(
        user_id=user_id,
        plan=plan or DEFAULT_PLAN,
        interval=interval or DEFAULT_INTERVAL,
        tier=None,
        is_default=plan is None,
    )


def normalize_billing_object(obj: Any) -> NormalizedBilling:
    """
    Normalize a Stripe checkout session or subscription.

    Args:
        obj: StripeObject or dict carrying `metadata` and possibly a top-level `tier`

    Returns:
        NormalizedBilling; unknown plan/interval/tier strings fall back to
        starter/monthly rather than being propagated.
    """
    metadata = metadata_to_dict(get_stripe_value(obj, "metadata"))
    return normalize_metadata(metadata, legacy_tier=get_stripe_value(obj, "tier"))


def refine(primary: NormalizedBilling, refinement: NormalizedBilling) -> NormalizedBilling:
    """
    Let a second source refine plan/interval/tier.

    The refinement wins when it carries an explicit tier or plan; the user id of
    the primary source is kept when present.
    """
    if refinement.is_default:
        if primary.user_id or not refinement.user_id:
            return primary
        return primary.model_copy(update={"user_id": refinement.user_id})

    return refinement.model_copy(update={"user_id": primary.user_id or refinement.user_id})
