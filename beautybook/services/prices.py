"""Public price catalogue for the pricing page."""

import logging
from typing import Any

import stripe

from beautybook.config import Config
from beautybook.schemas.billing import PriceInfo, PricesResponse
from beautybook.utils.exceptions import ConfigurationError, PriceFetchError
from beautybook.utils.stripe_objects import get_stripe_value

logger = logging.getLogger(__name__)

# Free is $0 and not a Stripe price
FREE_MONTHLY = PriceInfo(
    id="free",
    unit_amount=0,
    currency="USD",
    interval="month",
    interval_count=1,
    product_name="Free",
    livemode=None,
)


def normalize_price(price: Any) -> PriceInfo:
    """Flatten a Stripe price (with expanded product) into the catalogue shape."""
    unit_amount = get_stripe_value(price, "unit_amount")
    if not isinstance(unit_amount, int):
        decimal = get_stripe_value(price, "unit_amount_decimal")
        try:
            unit_amount = int(float(decimal)) if decimal is not None else None
        except (TypeError, ValueError):
            unit_amount = None

    currency = get_stripe_value(price, "currency")
    recurring = get_stripe_value(price, "recurring")
    interval = get_stripe_value(recurring, "interval")
    interval_count = get_stripe_value(recurring, "interval_count")

    product_name = get_stripe_value(get_stripe_value(price, "product"), "name")
    if not isinstance(product_name, str):
        nickname = get_stripe_value(price, "nickname")
        product_name = nickname if isinstance(nickname, str) else None

    return PriceInfo(
        id=get_stripe_value(price, "id"),
        unit_amount=unit_amount,
        currency=currency.upper() if isinstance(currency, str) else "USD",
        interval=interval if isinstance(interval, str) else None,
        interval_count=interval_count if isinstance(interval_count, int) else 1,
        product_name=product_name,
        livemode=bool(get_stripe_value(price, "livemode")),
    )


def _fetch(price_id: str) -> PriceInfo:
    return normalize_price(stripe.Price.retrieve(price_id, expand=["product"]))


def get_prices() -> PricesResponse:
    """
    Load the configured Stripe prices

    Starter, pro and founder are required. Studio is optional and left as
    None when unset or unavailable.

    Raises:
        ConfigurationError: Stripe key or a required price id is missing
        PriceFetchError: Stripe failed to return a required price
    """
    if not Config.STRIPE_SECRET_KEY:
        raise ConfigurationError("Missing STRIPE_SECRET_KEY")
    missing = Config.missing_stripe_prices()
    if any(missing.values()):
        raise ConfigurationError("Missing one or more STRIPE price env vars", missing=missing)

    stripe.api_key = Config.STRIPE_SECRET_KEY

    required = {
        "starter_monthly": Config.STRIPE_PRICE_STARTER_MONTHLY,
        "pro_monthly": Config.STRIPE_PRICE_PRO_MONTHLY,
        "founder_annual": Config.STRIPE_PRICE_FOUNDER_ANNUAL,
    }
    prices: dict[str, PriceInfo | None] = {"free_monthly": FREE_MONTHLY}
    failures: dict[str, str] = {}
    for key, price_id in required.items():
        try:
            prices[key] = _fetch(price_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to fetch {key} price {price_id}: {e}")
            failures[key] = str(e)

    if failures:
        raise PriceFetchError("Failed to fetch one or more Stripe prices", details=failures)

    prices["studio_monthly"] = None
    if Config.STRIPE_PRICE_STUDIO_MONTHLY:
        try:
            prices["studio_monthly"] = _fetch(Config.STRIPE_PRICE_STUDIO_MONTHLY)
        except stripe.StripeError as e:
            logger.warning(f"Optional studio price unavailable: {e}")

    return PricesResponse(prices=prices)
