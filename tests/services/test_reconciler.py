"""
Tests for the Stripe webhook reconciler
Covers event routing, founder claims, cancellation and failure semantics
"""

import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
import stripe
from postgrest.exceptions import APIError

from beautybook.schemas.billing import WebhookOutcome
from beautybook.services.reconciler import SubscriptionReconciler
from beautybook.utils.exceptions import (
    ConfigurationError,
    SubscriptionWriteError,
    UpstreamProviderError,
    WebhookSignatureError,
)

PERIOD_END = 1735689600  # 2025-01-01T00:00:00Z
WEBHOOK_SECRET = "whsec_test_123"


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _subscription(sub_id="sub_1", customer="cus_1", status="active", metadata=None, **extra):
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": PERIOD_END,
        "metadata": metadata or {},
        **extra,
    }


def _checkout(metadata=None, subscription="sub_1", customer="cus_1", client_reference_id=None):
    return {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": customer,
        "subscription": subscription,
        "client_reference_id": client_reference_id,
        "metadata": metadata or {},
    }


@pytest.fixture
def reconciler(fake_supabase):
    return SubscriptionReconciler(webhook_secret=WEBHOOK_SECRET)


def deliver(reconciler, event, live_subscription=None):
    with patch("stripe.Webhook.construct_event", return_value=event), patch(
        "stripe.Subscription.retrieve", return_value=live_subscription
    ) as retrieve:
        result = reconciler.handle_webhook(b"{}", "t=1,v1=sig")
    return result, retrieve


class TestCheckoutCompleted:
    def test_pro_checkout_scenario(self, reconciler, fake_supabase):
        """Session carries user and tier; the live subscription supplies status and period end"""
        event = _event(
            "checkout.session.completed",
            _checkout(metadata={"user_id": "u1", "tier": "pro_monthly"}),
        )

        result, retrieve = deliver(reconciler, event, live_subscription=_subscription())

        retrieve.assert_called_once_with("sub_1")
        assert result.outcome == WebhookOutcome.PROCESSED
        assert result.user_id == "u1"
        row = fake_supabase.subscription("u1")
        assert row["plan"] == "pro"
        assert row["interval"] == "monthly"
        assert row["status"] == "active"
        assert row["current_period_end"] == "2025-01-01T00:00:00.000Z"
        assert row["stripe_subscription_id"] == "sub_1"
        assert row["stripe_customer_id"] == "cus_1"
        assert row["updated_at"].endswith("Z")

    def test_founder_checkout_sets_founder_plan_and_claims(self, reconciler, fake_supabase):
        event = _event(
            "checkout.session.completed",
            _checkout(metadata={"user_id": "u1", "tier": "founder_annual"}),
        )

        result, _ = deliver(reconciler, event, live_subscription=_subscription())

        row = fake_supabase.subscription("u1")
        assert row["plan"] == "founder"
        assert row["interval"] == "annual"
        assert row["is_founder_annual"] is True
        assert row["founder_claimed_at"] is not None
        assert result.founder_claimed is True
        assert fake_supabase.store["founding_offer"][0]["claimed_spots"] == 1

    def test_subscription_metadata_refines_session(self, reconciler, fake_supabase):
        event = _event("checkout.session.completed", _checkout(metadata={"user_id": "u1"}))
        live = _subscription(metadata={"tier": "elite_monthly"})

        deliver(reconciler, event, live_subscription=live)

        assert fake_supabase.subscription("u1")["plan"] == "elite"

    def test_client_reference_id_fallback(self, reconciler, fake_supabase):
        event = _event(
            "checkout.session.completed",
            _checkout(metadata={"tier": "pro_monthly"}, client_reference_id="u2"),
        )

        result, _ = deliver(reconciler, event, live_subscription=_subscription())

        assert result.user_id == "u2"
        assert fake_supabase.subscription("u2")["plan"] == "pro"

    def test_identity_resolver_fallback(self, reconciler, fake_supabase):
        fake_supabase.store["pro_subscriptions"].append(
            {"user_id": "u3", "status": "canceled", "stripe_customer_id": "cus_9", "updated_at": "2024-01-01T00:00:00.000Z"}
        )
        event = _event(
            "checkout.session.completed",
            _checkout(metadata={"tier": "pro_monthly"}, customer="cus_9"),
        )

        result, _ = deliver(reconciler, event, live_subscription=_subscription(customer="cus_9"))

        assert result.user_id == "u3"
        assert fake_supabase.subscription("u3")["status"] == "active"

    def test_without_subscription_is_active_without_expiry(self, reconciler, fake_supabase):
        event = _event(
            "checkout.session.completed",
            _checkout(metadata={"user_id": "u1", "tier": "pro_monthly"}, subscription=None),
        )

        _, retrieve = deliver(reconciler, event)

        retrieve.assert_not_called()
        row = fake_supabase.subscription("u1")
        assert row["status"] == "active"
        assert row["current_period_end"] is None

    def test_unresolvable_user_is_acknowledged_without_writes(self, reconciler, fake_supabase):
        event = _event("checkout.session.completed", _checkout(metadata={"tier": "pro_monthly"}))

        result, retrieve = deliver(reconciler, event, live_subscription=_subscription())

        assert result.success is True
        assert result.outcome == WebhookOutcome.MISSING_USER
        assert fake_supabase.writes() == []
        retrieve.assert_not_called()

    def test_known_customer_id_is_not_nulled(self, reconciler, fake_supabase):
        fake_supabase.store["pro_subscriptions"].append(
            {"user_id": "u1", "status": "active", "stripe_customer_id": "cus_1", "plan": "pro", "interval": "monthly"}
        )
        event = _event(
            "checkout.session.completed",
            _checkout(metadata={"user_id": "u1", "tier": "pro_monthly"}, subscription=None, customer=None),
        )

        deliver(reconciler, event)

        assert fake_supabase.subscription("u1")["stripe_customer_id"] == "cus_1"


class TestSubscriptionChanged:
    @pytest.mark.parametrize("event_type", ["customer.subscription.created", "customer.subscription.updated"])
    def test_mirrors_status_and_period_end(self, reconciler, fake_supabase, event_type):
        sub = _subscription(status="past_due", metadata={"user_id": "u1", "plan": "pro", "interval": "monthly"})

        result, _ = deliver(reconciler, _event(event_type, sub))

        assert result.outcome == WebhookOutcome.PROCESSED
        row = fake_supabase.subscription("u1")
        assert row["status"] == "past_due"
        assert row["plan"] == "pro"
        assert row["current_period_end"] == "2025-01-01T00:00:00.000Z"

    def test_period_end_read_from_items(self, reconciler, fake_supabase):
        sub = _subscription(metadata={"user_id": "u1", "tier": "pro_monthly"})
        del sub["current_period_end"]
        sub["items"] = {"data": [{"id": "si_1", "current_period_end": PERIOD_END}]}

        deliver(reconciler, _event("customer.subscription.updated", sub))

        assert fake_supabase.subscription("u1")["current_period_end"] == "2025-01-01T00:00:00.000Z"

    def test_user_resolved_from_stored_subscription(self, reconciler, fake_supabase):
        fake_supabase.store["pro_subscriptions"].append(
            {"user_id": "u1", "status": "active", "stripe_subscription_id": "sub_1", "plan": "elite", "interval": "monthly"}
        )

        result, _ = deliver(reconciler, _event("customer.subscription.updated", _subscription(status="past_due")))

        assert result.user_id == "u1"
        row = fake_supabase.subscription("u1")
        assert row["status"] == "past_due"
        # Metadata-less update does not overwrite the known plan
        assert row["plan"] == "elite"

    def test_unknown_subscription_without_metadata_is_missing_user(self, reconciler, fake_supabase):
        result, _ = deliver(
            reconciler, _event("customer.subscription.updated", _subscription(sub_id="sub_x", customer="cus_x"))
        )

        assert result.outcome == WebhookOutcome.MISSING_USER
        assert result.success is True
        assert fake_supabase.writes() == []

    def test_identical_update_twice_is_idempotent(self, reconciler, fake_supabase):
        event = _event(
            "customer.subscription.updated",
            _subscription(metadata={"user_id": "u1", "tier": "pro_monthly"}),
        )

        # Bypass the ledger so both deliveries reach the upsert
        with patch("beautybook.services.reconciler.is_event_processed", return_value=False):
            deliver(reconciler, event)
            first = dict(fake_supabase.subscription("u1"))
            deliver(reconciler, event)
            second = dict(fake_supabase.subscription("u1"))

        assert len(fake_supabase.store["pro_subscriptions"]) == 1
        first.pop("updated_at")
        second.pop("updated_at")
        assert first == second

    def test_trialing_founder_claims(self, reconciler, fake_supabase):
        sub = _subscription(status="trialing", metadata={"user_id": "u1", "tier": "founder_annual"})

        result, _ = deliver(reconciler, _event("customer.subscription.created", sub))

        assert result.founder_claimed is True
        assert fake_supabase.subscription("u1")["is_founder_annual"] is True

    def test_incomplete_founder_does_not_claim(self, reconciler, fake_supabase):
        sub = _subscription(status="incomplete", metadata={"user_id": "u1", "tier": "founder_annual"})

        result, _ = deliver(reconciler, _event("customer.subscription.created", sub))

        assert result.founder_claimed is None
        assert fake_supabase.subscription("u1")["is_founder_annual"] is False
        assert fake_supabase.store["founder_claims"] == []


class TestFounderClaim:
    def _founder_event(self, event_id):
        sub = _subscription(metadata={"user_id": "u1", "tier": "founder_annual"})
        return _event("customer.subscription.updated", sub, event_id=event_id)

    def test_later_events_do_not_take_a_second_slot(self, reconciler, fake_supabase):
        deliver(reconciler, self._founder_event("evt_1"))
        result, _ = deliver(reconciler, self._founder_event("evt_2"))

        assert result.founder_claimed is False
        assert fake_supabase.store["founding_offer"][0]["claimed_spots"] == 1

    def test_existing_claim_is_reapplied_without_new_slot(self, reconciler, fake_supabase):
        """A crash between the claim and the flag write heals on redelivery"""
        fake_supabase.store["founding_offer"][0]["claimed_spots"] = 1
        fake_supabase.store["founder_claims"].append(
            {"user_id": "u1", "claimed_at": "2025-01-01T00:00:00+00:00", "forfeited_at": None}
        )

        result, _ = deliver(reconciler, self._founder_event("evt_1"))

        row = fake_supabase.subscription("u1")
        assert row["is_founder_annual"] is True
        assert row["founder_claimed_at"] == "2025-01-01T00:00:00.000Z"
        assert result.founder_claimed is False
        assert fake_supabase.store["founding_offer"][0]["claimed_spots"] == 1

    def test_sold_out_leaves_flag_unset(self, reconciler, fake_supabase):
        fake_supabase.store["founding_offer"][0].update({"max_spots": 1, "claimed_spots": 1})

        result, _ = deliver(reconciler, self._founder_event("evt_1"))

        assert result.founder_claimed is False
        row = fake_supabase.subscription("u1")
        assert row["plan"] == "founder"
        assert row["is_founder_annual"] is False

    def test_forfeited_claim_is_never_reapplied(self, reconciler, fake_supabase):
        deliver(reconciler, self._founder_event("evt_1"))
        deleted = _subscription(status="canceled", metadata={"user_id": "u1", "tier": "founder_annual"})
        deliver(reconciler, _event("customer.subscription.deleted", deleted, event_id="evt_2"))

        deliver(reconciler, self._founder_event("evt_3"))

        row = fake_supabase.subscription("u1")
        assert row["status"] == "active"
        assert row["is_founder_annual"] is False
        assert fake_supabase.store["founding_offer"][0]["claimed_spots"] == 1


class TestSubscriptionDeleted:
    @pytest.mark.parametrize("was_founder", [True, False])
    def test_cancellation_is_total(self, reconciler, fake_supabase, was_founder):
        fake_supabase.store["pro_subscriptions"].append(
            {
                "user_id": "u1",
                "status": "active",
                "plan": "founder" if was_founder else "pro",
                "interval": "annual" if was_founder else "monthly",
                "stripe_subscription_id": "sub_1",
                "stripe_customer_id": "cus_1",
                "current_period_end": "2026-01-01T00:00:00.000Z",
                "is_founder_annual": was_founder,
                "founder_claimed_at": "2025-01-01T00:00:00.000Z" if was_founder else None,
            }
        )

        result, _ = deliver(
            reconciler, _event("customer.subscription.deleted", _subscription(status="canceled"))
        )

        assert result.outcome == WebhookOutcome.PROCESSED
        row = fake_supabase.subscription("u1")
        assert row["status"] == "canceled"
        assert row["current_period_end"] is None
        assert row["is_founder_annual"] is False
        assert row["founder_claimed_at"] is None
        assert row["stripe_customer_id"] == "cus_1"

    def test_deletion_forfeits_ledger_claim(self, reconciler, fake_supabase):
        fake_supabase.store["founder_claims"].append(
            {"user_id": "u1", "claimed_at": "2025-01-01T00:00:00+00:00", "forfeited_at": None}
        )
        sub = _subscription(status="canceled", metadata={"user_id": "u1"})

        deliver(reconciler, _event("customer.subscription.deleted", sub))

        assert fake_supabase.store["founder_claims"][0]["forfeited_at"] is not None

    def test_deletion_for_unknown_user_is_missing_user(self, reconciler, fake_supabase):
        result, _ = deliver(reconciler, _event("customer.subscription.deleted", _subscription(sub_id="sub_x", customer="cus_x")))

        assert result.outcome == WebhookOutcome.MISSING_USER
        assert fake_supabase.writes() == []


class TestDispatch:
    def test_unknown_event_type_is_ignored(self, reconciler, fake_supabase):
        result, _ = deliver(reconciler, _event("invoice.paid", {"id": "in_1"}))

        assert result.success is True
        assert result.outcome == WebhookOutcome.IGNORED
        assert fake_supabase.writes() == []

    def test_processed_event_is_recorded_and_duplicate_skipped(self, reconciler, fake_supabase):
        event = _event(
            "customer.subscription.updated",
            _subscription(metadata={"user_id": "u1", "tier": "pro_monthly"}),
            event_id="evt_dup",
        )

        deliver(reconciler, event)
        writes_after_first = len(fake_supabase.writes())
        result, _ = deliver(reconciler, event)

        assert result.outcome == WebhookOutcome.DUPLICATE
        assert len(fake_supabase.writes()) == writes_after_first
        ledger = fake_supabase.store["stripe_webhook_events"]
        assert [e["event_id"] for e in ledger] == ["evt_dup"]
        assert ledger[0]["user_id"] == "u1"


class TestFailures:
    def test_invalid_signature_rejected_without_writes(self, reconciler, fake_supabase):
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")
        with patch("stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(WebhookSignatureError):
                reconciler.handle_webhook(b"{}", "t=1,v1=bad")

        assert fake_supabase.calls == []

    def test_malformed_payload_rejected(self, reconciler, fake_supabase):
        with patch("stripe.Webhook.construct_event", side_effect=ValueError("Invalid payload")):
            with pytest.raises(WebhookSignatureError):
                reconciler.handle_webhook(b"not json", "t=1,v1=sig")

    def test_missing_signature_rejected(self, reconciler, fake_supabase):
        with patch("stripe.Webhook.construct_event") as construct:
            with pytest.raises(WebhookSignatureError):
                reconciler.handle_webhook(b"{}", None)

        construct.assert_not_called()

    def test_missing_webhook_secret(self, fake_supabase):
        reconciler = SubscriptionReconciler()
        with patch("beautybook.services.reconciler.Config.STRIPE_WEBHOOK_SECRET", None):
            with pytest.raises(ConfigurationError):
                reconciler.handle_webhook(b"{}", "t=1,v1=sig")

    def test_subscription_fetch_failure_is_upstream_error(self, reconciler, fake_supabase):
        event = _event(
            "checkout.session.completed",
            _checkout(metadata={"user_id": "u1", "tier": "pro_monthly"}),
        )
        with patch("stripe.Webhook.construct_event", return_value=event), patch(
            "stripe.Subscription.retrieve", side_effect=stripe.APIConnectionError("network down")
        ):
            with pytest.raises(UpstreamProviderError):
                reconciler.handle_webhook(b"{}", "t=1,v1=sig")

        assert fake_supabase.writes() == []
        assert fake_supabase.store["stripe_webhook_events"] == []

    def test_write_failure_is_not_recorded(self, reconciler, fake_supabase):
        fake_supabase.fail_tables["pro_subscriptions"] = RuntimeError("connection refused")
        event = _event(
            "customer.subscription.updated",
            _subscription(metadata={"user_id": "u1", "tier": "pro_monthly"}),
        )

        with patch("stripe.Webhook.construct_event", return_value=event):
            with pytest.raises(SubscriptionWriteError):
                reconciler.handle_webhook(b"{}", "t=1,v1=sig")

        assert fake_supabase.store["stripe_webhook_events"] == []


class TestUnknownOwner:
    def test_deleted_account_is_acknowledged(self, reconciler, fake_supabase):
        fake_supabase.fail_tables["pro_subscriptions"] = APIError(
            {"code": "23503", "message": 'violates foreign key constraint "pro_subscriptions_user_id_fkey"'}
        )
        event = _event(
            "customer.subscription.deleted",
            _subscription(status="canceled", metadata={"user_id": "6f1c2a8e-0000-4000-8000-000000000000"}),
            event_id="evt_gone",
        )

        with patch.object(reconciler.founder_pool, "forfeit") as forfeit:
            result, _ = deliver(reconciler, event)

        assert result.outcome == WebhookOutcome.MISSING_USER
        assert result.user_id is None
        forfeit.assert_not_called()
        assert [e["event_id"] for e in fake_supabase.store["stripe_webhook_events"]] == ["evt_gone"]

    def test_malformed_user_id_is_acknowledged(self, reconciler, fake_supabase):
        fake_supabase.fail_tables["pro_subscriptions"] = APIError(
            {"code": "22P02", "message": 'invalid input syntax for type uuid: "abc"'}
        )
        event = _event("customer.subscription.updated", _subscription(metadata={"user_id": "abc"}))

        result, _ = deliver(reconciler, event)

        assert result.outcome == WebhookOutcome.MISSING_USER


def _signed_payload(event, secret=WEBHOOK_SECRET, timestamp=None):
    """Serialize an event and sign it the way Stripe does (t=...,v1=HMAC-SHA256)."""
    payload = json.dumps(event).encode()
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return payload, f"t={timestamp},v1={digest}"


def _stripe_event(event_type, obj, event_id="evt_signed_1"):
    return {
        "id": event_id,
        "object": "event",
        "api_version": "2024-06-20",
        "created": PERIOD_END,
        "livemode": False,
        "type": event_type,
        "data": {"object": obj},
    }


class TestSignedDelivery:
    """Deliveries go through real signature verification and real Stripe event objects."""

    def test_signed_subscription_update_is_processed(self, reconciler, fake_supabase):
        event = _stripe_event(
            "customer.subscription.updated",
            _subscription(metadata={"user_id": "u1", "tier": "pro_monthly"}),
        )
        payload, signature = _signed_payload(event)

        result = reconciler.handle_webhook(payload, signature)

        assert result.outcome == WebhookOutcome.PROCESSED
        row = fake_supabase.subscription("u1")
        assert row["plan"] == "pro"
        assert row["status"] == "active"
        assert row["current_period_end"] == "2025-01-01T00:00:00.000Z"
        ledger = fake_supabase.store["stripe_webhook_events"]
        assert ledger[0]["event_id"] == "evt_signed_1"

    def test_signed_connect_event_records_account(self, reconciler, fake_supabase):
        event = _stripe_event(
            "customer.subscription.created",
            _subscription(metadata={"user_id": "u1", "tier": "starter_monthly"}),
        )
        event["account"] = "acct_123"
        payload, signature = _signed_payload(event)

        reconciler.handle_webhook(payload, signature)

        ledger = fake_supabase.store["stripe_webhook_events"]
        assert ledger[0]["metadata"]["stripe_account"] == "acct_123"

    def test_signed_founder_deletion(self, reconciler, fake_supabase):
        fake_supabase.store["pro_subscriptions"].append(
            {"user_id": "u1", "status": "active", "plan": "founder", "is_founder_annual": True}
        )
        event = _stripe_event(
            "customer.subscription.deleted",
            _subscription(status="canceled", metadata={"user_id": "u1", "tier": "founder_annual"}),
        )
        payload, signature = _signed_payload(event)

        result = reconciler.handle_webhook(payload, signature)

        assert result.founder_claimed is False
        row = fake_supabase.subscription("u1")
        assert row["status"] == "canceled"
        assert row["is_founder_annual"] is False
        assert row["current_period_end"] is None

    def test_tampered_payload_is_rejected(self, reconciler, fake_supabase):
        event = _stripe_event(
            "customer.subscription.updated",
            _subscription(metadata={"user_id": "u1", "tier": "pro_monthly"}),
        )
        payload, signature = _signed_payload(event)
        tampered = payload.replace(b"pro_monthly", b"elite_monthly")

        with pytest.raises(WebhookSignatureError):
            reconciler.handle_webhook(tampered, signature)

        assert fake_supabase.calls == []

    def test_wrong_secret_is_rejected(self, reconciler, fake_supabase):
        event = _stripe_event("customer.subscription.updated", _subscription(metadata={"user_id": "u1"}))
        payload, signature = _signed_payload(event, secret="whsec_someone_else")

        with pytest.raises(WebhookSignatureError):
            reconciler.handle_webhook(payload, signature)

        assert fake_supabase.calls == []
