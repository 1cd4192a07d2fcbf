"""Schema definitions for subscription billing and webhook reconciliation."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Plan(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    FOUNDER = "founder"
    ELITE = "elite"
    STUDIO = "studio"


class Interval(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class Tier(str, Enum):
    """Legacy combined plan+interval token written to checkout metadata."""

    STARTER_MONTHLY = "starter_monthly"
    PRO_MONTHLY = "pro_monthly"
    FOUNDER_ANNUAL = "founder_annual"
    ELITE_MONTHLY = "elite_monthly"
    STUDIO_MONTHLY = "studio_monthly"


TIER_PLANS: dict[Tier, tuple[Plan, Interval]] = {
    Tier.STARTER_MONTHLY: (Plan.STARTER, Interval.MONTHLY),
    Tier.PRO_MONTHLY: (Plan.PRO, Interval.MONTHLY),
    Tier.FOUNDER_ANNUAL: (Plan.FOUNDER, Interval.ANNUAL),
    Tier.ELITE_MONTHLY: (Plan.ELITE, Interval.MONTHLY),
    Tier.STUDIO_MONTHLY: (Plan.STUDIO, Interval.MONTHLY),
}

DEFAULT_PLAN = Plan.STARTER
DEFAULT_INTERVAL = Interval.MONTHLY

# Provider statuses under which a founder plan may claim a slot
FOUNDER_CLAIM_STATUSES = frozenset({"active", "trialing"})


def to_iso(value: datetime | None) -> str | None:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored timestamp (ISO string, epoch seconds or datetime)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def is_entitled(status: str | None, current_period_end: datetime | None, now: datetime | None = None) -> bool:
    """Consumer-side access rule: active, and either no expiry or an expiry in the future."""
    if status != "active":
        return False
    if current_period_end is None:
        return True
    return current_period_end > (now or datetime.now(UTC))


class NormalizedBilling(BaseModel):
    """Canonical intent extracted from a checkout session or subscription object."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    plan: Plan = DEFAULT_PLAN
    interval: Interval = DEFAULT_INTERVAL
    tier: Tier | None = None
    # True when neither a known tier nor a known plan was present
    is_default: bool = True


class IdentityResolution(BaseModel):
    """Result of looking up the application user behind a Stripe object."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    source: str | None = None  # stored_record

    @property
    def found(self) -> bool:
        return self.user_id is not None


class SubscriptionUpsert(BaseModel):
    """
    One write against pro_subscriptions.

    Fields left as None are omitted from the payload so values already on the
    row (notably provider ids) survive. clear_period_end and
    is_founder_annual=False are the only ways to null a column.
    """

    user_id: str
    status: str
    plan: Plan | None = None
    interval: Interval | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    current_period_end: datetime | None = None
    clear_period_end: bool = False
    is_founder_annual: bool | None = None
    founder_claimed_at: datetime | None = None

    def to_row(self, now: datetime) -> dict[str, Any]:
        row: dict[str, Any] = {
            "user_id": self.user_id,
            "status": self.status,
            "updated_at": to_iso(now),
        }
        if self.plan is not None:
            row["plan"] = self.plan.value
        if self.interval is not None:
            row["interval"] = self.interval.value
        if self.stripe_customer_id:
            row["stripe_customer_id"] = self.stripe_customer_id
        if self.stripe_subscription_id:
            row["stripe_subscription_id"] = self.stripe_subscription_id
        if self.clear_period_end:
            row["current_period_end"] = None
        elif self.current_period_end is not None:
            row["current_period_end"] = to_iso(self.current_period_end)
        if self.is_founder_annual is False:
            row["is_founder_annual"] = False
            row["founder_claimed_at"] = None
        elif self.is_founder_annual:
            row["is_founder_annual"] = True
            row["founder_claimed_at"] = to_iso(self.founder_claimed_at or now)
        return row


class SubscriptionView(BaseModel):
    """Read interface consumed by the dashboard and paywall gate."""

    status: str
    plan: str
    interval: str
    current_period_end: datetime | None = None
    is_founder_annual: bool = False
    entitled: bool = False

    @classmethod
    def from_row(cls, row: dict[str, Any] | None, now: datetime | None = None) -> "SubscriptionView":
        if not row:
            return cls(status="none", plan=Plan.FREE.value, interval=DEFAULT_INTERVAL.value)

        period_end = parse_timestamp(row.get("current_period_end"))
        status = row.get("status") or "none"
        return cls(
            status=status,
            plan=row.get("plan") or DEFAULT_PLAN.value,
            interval=row.get("interval") or DEFAULT_INTERVAL.value,
            current_period_end=period_end,
            is_founder_annual=bool(row.get("is_founder_annual")),
            entitled=is_entitled(status, period_end, now),
        )


class FounderClaim(BaseModel):
    """Outcome of one attempt on the founder slot pool."""

    claimed: bool = False
    already_claimed: bool = False
    sold_out: bool = False
    # The user held a slot once and lost it on cancellation; it is never granted again
    forfeited: bool = False
    claimed_at: datetime | None = None

    @property
    def holds_slot(self) -> bool:
        return self.claimed or self.already_claimed


class FounderOfferSnapshot(BaseModel):
    max_spots: int
    claimed_spots: int
    spots_left: int


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    MISSING_USER = "missing_user"
    DUPLICATE = "duplicate"


class WebhookProcessingResult(BaseModel):
    """Result of handling one Stripe webhook delivery."""

    success: bool = True
    event_type: str
    event_id: str
    outcome: WebhookOutcome
    user_id: str | None = None
    founder_claimed: bool | None = None
    message: str
    processed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class BillingPortalRequest(BaseModel):
    return_path: str | None = None


class BillingPortalResponse(BaseModel):
    url: str
    id: str
    repaired_customer: bool = False


class CheckoutSessionRequest(BaseModel):
    tier: str | None = None


class CheckoutSessionResponse(BaseModel):
    url: str
    id: str
    tier: Tier
    price_source: str  # env | fallback


class PriceInfo(BaseModel):
    id: str | None = None
    unit_amount: int | None = None
    currency: str = "USD"
    interval: str | None = None
    interval_count: int = 1
    product_name: str | None = None
    livemode: bool | None = None


class PricesResponse(BaseModel):
    ok: bool = True
    prices: dict[str, PriceInfo | None]
