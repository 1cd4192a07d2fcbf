import os
import threading
from copy import deepcopy
from datetime import UTC, datetime

import pytest

os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("SENTRY_ENABLED", "false")

SUBSCRIPTION_DEFAULTS = {
    "stripe_customer_id": None,
    "stripe_subscription_id": None,
    "plan": "starter",
    "interval": "monthly",
    "current_period_end": None,
    "is_founder_annual": False,
    "founder_claimed_at": None,
}


class _Result:
    def __init__(self, data):
        self.data = data


class _Table:
    """Chainable stand-in for a PostgREST request builder."""

    def __init__(self, db, name):
        self.db = db
        self.name = name
        self._filters = []
        self._or_groups = []
        self._order = None
        self._limit = None
        self._action = "select"
        self._payload = None
        self._on_conflict = None

    def select(self, _cols="*"):
        return self

    def eq(self, field, value):
        self._filters.append((field, value))
        return self

    def or_(self, expression):
        group = []
        for clause in expression.split(","):
            field, _op, value = clause.split(".", 2)
            group.append((field, value))
        self._or_groups.append(group)
        return self

    def order(self, field, desc=False):
        self._order = (field, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def update(self, patch):
        self._action = "update"
        self._payload = patch
        return self

    def insert(self, data):
        self._action = "insert"
        self._payload = data
        return self

    def upsert(self, data, on_conflict=None):
        self._action = "upsert"
        self._payload = data
        self._on_conflict = on_conflict
        return self

    def _match(self, row):
        for field, value in self._filters:
            if row.get(field) != value:
                return False
        for group in self._or_groups:
            if not any(row.get(field) == value for field, value in group):
                return False
        return True

    def execute(self):
        if self.db.fail_tables.get(self.name):
            raise self.db.fail_tables[self.name]

        with self.db.lock:
            rows = self.db.store.setdefault(self.name, [])
            self.db.calls.append((self.name, self._action))

            if self._action == "update":
                out = []
                for row in rows:
                    if self._match(row):
                        row.update(self._payload)
                        out.append(deepcopy(row))
                return _Result(out)

            if self._action == "insert":
                new_rows = self._payload if isinstance(self._payload, list) else [self._payload]
                for row in new_rows:
                    rows.append(self.db.with_defaults(self.name, row))
                return _Result(deepcopy(new_rows))

            if self._action == "upsert":
                key = self._on_conflict
                existing = next((r for r in rows if r.get(key) == self._payload.get(key)), None)
                if existing is None:
                    existing = self.db.with_defaults(self.name, self._payload)
                    rows.append(existing)
                else:
                    existing.update(self._payload)
                return _Result([deepcopy(existing)])

            matched = [deepcopy(r) for r in rows if self._match(r)]
            if self._order:
                field, desc = self._order
                matched.sort(key=lambda r: r.get(field) or "", reverse=desc)
            if self._limit is not None:
                matched = matched[: self._limit]
            return _Result(matched)


class _RpcCall:
    def __init__(self, db, name, params):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        handler = getattr(self.db, f"_rpc_{self.name}")
        with self.db.lock:
            self.db.calls.append((self.name, "rpc"))
            return _Result(handler(**self.params))


class FakeSupabase:
    """
    In-memory Supabase client

    Table writes and RPCs run under one lock, which plays the part of the
    row lock the Postgres functions take on founding_offer.
    """

    def __init__(self, max_spots=500, claimed_spots=0):
        self.lock = threading.Lock()
        self.calls = []
        self.fail_tables = {}
        self.store = {
            "pro_subscriptions": [],
            "stripe_webhook_events": [],
            "founding_offer": [{"id": 1, "max_spots": max_spots, "claimed_spots": claimed_spots}],
            "founder_claims": [],
        }

    def table(self, name):
        return _Table(self, name)

    def rpc(self, name, params):
        return _RpcCall(self, name, params)

    @staticmethod
    def with_defaults(name, row):
        if name == "pro_subscriptions":
            return {**SUBSCRIPTION_DEFAULTS, **row}
        return dict(row)

    # Mirrors supabase/migrations/20250102000000_founding_offer.sql
    def _rpc_claim_founder_slot(self, p_user_id):
        claims = self.store["founder_claims"]
        existing = next((c for c in claims if c["user_id"] == p_user_id), None)
        if existing is not None:
            if existing["forfeited_at"] is not None:
                return {"claimed": False, "already_claimed": False, "sold_out": False, "forfeited": True}
            return {"claimed": False, "already_claimed": True, "sold_out": False, "claimed_at": existing["claimed_at"]}

        offer = self.store["founding_offer"][0]
        if offer["claimed_spots"] >= offer["max_spots"]:
            return {"claimed": False, "already_claimed": False, "sold_out": True}

        offer["claimed_spots"] += 1
        claimed_at = datetime.now(UTC).isoformat()
        claims.append({"user_id": p_user_id, "claimed_at": claimed_at, "forfeited_at": None})
        return {"claimed": True, "already_claimed": False, "sold_out": False, "claimed_at": claimed_at}

    def _rpc_forfeit_founder_slot(self, p_user_id):
        for claim in self.store["founder_claims"]:
            if claim["user_id"] == p_user_id and claim["forfeited_at"] is None:
                claim["forfeited_at"] = datetime.now(UTC).isoformat()
                return {"forfeited": True}
        return {"forfeited": False}

    # Helpers for assertions
    def subscription(self, user_id):
        return next((r for r in self.store["pro_subscriptions"] if r["user_id"] == user_id), None)

    def writes(self, table="pro_subscriptions"):
        return [c for c in self.calls if c[0] == table and c[1] in ("update", "insert", "upsert")]


@pytest.fixture
def fake_supabase(monkeypatch):
    from beautybook.config import supabase_config

    sb = FakeSupabase()
    monkeypatch.setattr(supabase_config, "get_supabase_client", lambda: sb)
    return sb
