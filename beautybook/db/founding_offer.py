#!/usr/bin/env python3
"""
Founding Offer Database Module

The founder offer is a capped pool of annual slots shared by every user. The
counter is never read-then-written from here: claims and forfeits go through
the Postgres functions in supabase/migrations, which do the conditional
increment and the per-user ledger insert in one transaction.
"""

import logging
from typing import Any

from beautybook.config.supabase_config import execute_with_retry
from beautybook.schemas.billing import FounderClaim, FounderOfferSnapshot, parse_timestamp

logger = logging.getLogger(__name__)

FOUNDING_OFFER_TABLE = "founding_offer"
FOUNDING_OFFER_ROW_ID = 1


def _rpc_payload(data: Any) -> dict[str, Any]:
    # PostgREST returns a json-returning function either as the object or wrapped in a list
    if isinstance(data, list):
        data = data[0] if data else {}
    return data if isinstance(data, dict) else {}


class FounderSlotPool:
    """Bounded founder slot pool exposing only atomic, per-user operations."""

    def try_claim(self, user_id: str) -> FounderClaim:
        """
        Attempt to take one founder slot for a user

        Returns:
            FounderClaim with claimed=True only for the call that consumed a
            slot; already_claimed=True when the user holds a live claim from an
            earlier delivery; forfeited=True when the user's claim was
            cancelled; sold_out=True when the pool is full.
        """

        def _claim(client):
            return client.rpc("claim_founder_slot", {"p_user_id": user_id}).execute()

        result = execute_with_retry(_claim, operation_name="claim_founder_slot")
        payload = _rpc_payload(result.data)

        claim = FounderClaim(
            claimed=bool(payload.get("claimed")),
            already_claimed=bool(payload.get("already_claimed")),
            sold_out=bool(payload.get("sold_out")),
            forfeited=bool(payload.get("forfeited")),
            claimed_at=parse_timestamp(payload.get("claimed_at")),
        )

        if claim.claimed:
            logger.info(f"Founder slot claimed by user {user_id}")
        elif claim.already_claimed:
            logger.info(f"User {user_id} already holds a founder slot")
        elif claim.forfeited:
            logger.info(f"User {user_id} forfeited their founder slot; not granting again")
        elif claim.sold_out:
            logger.warning(f"Founder offer sold out; user {user_id} not granted a slot")
        return claim

    def forfeit(self, user_id: str) -> bool:
        """
        Mark the user's claim as forfeited so it is never re-applied

        The slot itself is not returned to the pool.

        Returns:
            True if a live claim was forfeited
        """

        def _forfeit(client):
            return client.rpc("forfeit_founder_slot", {"p_user_id": user_id}).execute()

        result = execute_with_retry(_forfeit, operation_name="forfeit_founder_slot")
        forfeited = bool(_rpc_payload(result.data).get("forfeited"))
        if forfeited:
            logger.info(f"Founder claim forfeited for user {user_id}")
        return forfeited

    def snapshot(self) -> FounderOfferSnapshot:
        """Read-only view of the pool for display and the checkout rollout guard."""

        def _load(client):
            return (
                client.table(FOUNDING_OFFER_TABLE)
                .select("max_spots, claimed_spots")
                .eq("id", FOUNDING_OFFER_ROW_ID)
                .limit(1)
                .execute()
            )

        result = execute_with_retry(_load, operation_name="founding_offer_snapshot")
        if not result.data:
            raise LookupError("founding_offer row is missing")

        row = result.data[0]
        max_spots = int(row.get("max_spots") or 0)
        claimed_spots = int(row.get("claimed_spots") or 0)
        return FounderOfferSnapshot(
            max_spots=max_spots,
            claimed_spots=claimed_spots,
            spots_left=max(0, max_spots - claimed_spots),
        )


founder_slot_pool = FounderSlotPool()
