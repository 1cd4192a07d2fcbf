#!/usr/bin/env python3
"""
Subscription Records Database Module
Reads and writes the per-user pro_subscriptions row kept in sync with Stripe
"""

import logging
from datetime import UTC, datetime
from typing import Any

from postgrest.exceptions import APIError

from beautybook.config.supabase_config import execute_with_retry
from beautybook.schemas.billing import SubscriptionUpsert, to_iso
from beautybook.utils.exceptions import SubscriptionWriteError, UnknownSubscriptionOwner

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = "pro_subscriptions"

# foreign_key_violation (account deleted) and invalid_text_representation (not a uuid)
UNKNOWN_OWNER_CODES = frozenset({"23503", "22P02"})


def get_subscription(user_id: str) -> dict[str, Any] | None:
    """
    Load the subscription row of a user

    Args:
        user_id: Application user id

    Returns:
        The row, or None when the user has never checked out
    """

    def _load(client):
        return (
            client.table(SUBSCRIPTIONS_TABLE).select("*").eq("user_id", user_id).limit(1).execute()
        )

    result = execute_with_retry(_load, operation_name="get_subscription")
    return result.data[0] if result.data else None


def upsert_subscription(write: SubscriptionUpsert) -> dict[str, Any]:
    """
    Write the canonical subscription state of one user

    The upsert is keyed on user_id, so redelivered events converge on the same
    row instead of inserting duplicates. updated_at is always stamped.

    Args:
        write: Fields to write; None fields are left untouched on the row

    Returns:
        The stored row

    Raises:
        SubscriptionWriteError: If Supabase rejects the write or returns nothing
    """
    row = write.to_row(datetime.now(UTC))

    def _upsert(client):
        return client.table(SUBSCRIPTIONS_TABLE).upsert(row, on_conflict="user_id").execute()

    try:
        result = execute_with_retry(_upsert, operation_name="upsert_subscription")
    except APIError as e:
        if e.code in UNKNOWN_OWNER_CODES:
            logger.warning(f"Subscription owner {write.user_id} rejected by the database ({e.code}): {e.message}")
            raise UnknownSubscriptionOwner(
                f"User {write.user_id} does not exist", user_id=write.user_id, db_code=e.code
            ) from e
        logger.error(f"Failed to upsert subscription for user {write.user_id}: {e}", exc_info=True)
        raise SubscriptionWriteError(
            f"Failed to upsert subscription for user {write.user_id}: {e}"
        ) from e
    except Exception as e:
        logger.error(f"Failed to upsert subscription for user {write.user_id}: {e}", exc_info=True)
        raise SubscriptionWriteError(
            f"Failed to upsert subscription for user {write.user_id}: {e}"
        ) from e

    if not result.data:
        raise SubscriptionWriteError(f"Upsert returned no row for user {write.user_id}")

    stored = result.data[0]
    logger.info(
        f"Upserted subscription for user {write.user_id}: status={row['status']}, "
        f"plan={row.get('plan', '<unchanged>')}, interval={row.get('interval', '<unchanged>')}"
    )
    return stored


def find_latest_by_billing_ids(
    subscription_id: str | None = None, customer_id: str | None = None
) -> dict[str, Any] | None:
    """
    Find the most recently updated row matching either Stripe identifier

    Args:
        subscription_id: Stripe subscription id (sub_xxx)
        customer_id: Stripe customer id (cus_xxx)

    Returns:
        Matching row or None
    """
    clauses = []
    for value in (subscription_id, customer_id):
        if value:
            clauses.append(f"stripe_subscription_id.eq.{value}")
            clauses.append(f"stripe_customer_id.eq.{value}")
    if not clauses:
        return None

    def _find(client):
        return (
            client.table(SUBSCRIPTIONS_TABLE)
            .select("user_id, stripe_subscription_id, stripe_customer_id, updated_at")
            .or_(",".join(dict.fromkeys(clauses)))
            .order("updated_at", desc=True)
            .limit(1)
            .execute()
        )

    result = execute_with_retry(_find, operation_name="find_subscription_by_billing_ids")
    return result.data[0] if result.data else None


def set_customer_id(user_id: str, customer_id: str | None) -> bool:
    """
    Overwrite the stored Stripe customer id

    Only the billing-portal repair path calls this; it is the one place a known
    customer id may be replaced or cleared.

    Returns:
        True if a row was updated
    """

    def _update(client):
        return (
            client.table(SUBSCRIPTIONS_TABLE)
            .update({"stripe_customer_id": customer_id, "updated_at": to_iso(datetime.now(UTC))})
            .eq("user_id", user_id)
            .execute()
        )

    result = execute_with_retry(_update, operation_name="set_customer_id")
    updated = bool(result.data)
    if updated:
        logger.info(f"Stored stripe_customer_id={customer_id} for user {user_id}")
    else:
        logger.warning(f"No subscription row to update customer id for user {user_id}")
    return updated


def mark_founder(user_id: str, claimed_at: datetime) -> dict[str, Any] | None:
    """
    Flag the user's row as holding a founder slot

    Returns:
        The updated row, or None if the row does not exist
    """
    now = to_iso(datetime.now(UTC))

    def _update(client):
        return (
            client.table(SUBSCRIPTIONS_TABLE)
            .update(
                {
                    "is_founder_annual": True,
                    "founder_claimed_at": to_iso(claimed_at),
                    "updated_at": now,
                }
            )
            .eq("user_id", user_id)
            .execute()
        )

    try:
        result = execute_with_retry(_update, operation_name="mark_founder")
    except Exception as e:
        raise SubscriptionWriteError(f"Failed to mark founder for user {user_id}: {e}") from e

    if not result.data:
        logger.error(f"Founder slot claimed but no subscription row for user {user_id}")
        return None

    logger.info(f"User {user_id} marked as founder (claimed_at={to_iso(claimed_at)})")
    return result.data[0]
