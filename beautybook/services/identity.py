"""
Identity resolution for Stripe objects that carry no application user id.

Stored provider ids act as a best-effort secondary index. A miss is a normal
outcome: the customer may never have finished signup, or the event raced the
checkout that creates the row.
"""

import logging

from beautybook.db.subscriptions import find_latest_by_billing_ids
from beautybook.schemas.billing import IdentityResolution

logger = logging.getLogger(__name__)


def resolve_user_id(
    subscription_id: str | None = None, customer_id: str | None = None
) -> IdentityResolution:
    """
    Look up the owning user from stored Stripe identifiers.

    Either identifier is matched against both stored id columns; if more than
    one row matches, the most recently updated one wins.
    """
    if not subscription_id and not customer_id:
        return IdentityResolution()

    row = find_latest_by_billing_ids(subscription_id=subscription_id, customer_id=customer_id)
    if not row or not row.get("user_id"):
        logger.info(
            f"No stored subscription matches subscription={subscription_id} customer={customer_id}"
        )
        return IdentityResolution()

    return IdentityResolution(user_id=str(row["user_id"]), source="stored_record")
