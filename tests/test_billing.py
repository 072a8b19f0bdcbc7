"""Tests for checkout creation and subscription reconciliation."""

import json
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import stripe

import billing
from billing import (
    CheckoutCompleted,
    ConfigurationError,
    InvoiceEvent,
    SubscriptionChanged,
    SubscriptionDeleted,
    SubscriptionReconciler,
    UnhandledEvent,
    WebhookVerificationError,
    create_checkout_session,
    map_status,
    parse_event,
    price_id_for,
    verify_webhook,
)
from conftest import WEBHOOK_SECRET, stripe_signature, subscription_event


def _reconciler(store, retrieve=None):
    def no_lookup(subscription_id):
        raise AssertionError("unexpected lookup")

    return SubscriptionReconciler(store=store, retrieve_subscription=retrieve or no_lookup)


class TestStatusMapping:
    """Provider status vocabulary."""

    @pytest.mark.parametrize(
        "provider_status,expected",
        [
            ("trialing", "trialing"),
            ("past_due", "past_due"),
            ("canceled", "canceled"),
            ("unpaid", "canceled"),
            ("active", "active"),
            ("incomplete", "active"),
            (None, "active"),
        ],
    )
    def test_map_status(self, provider_status, expected):
        """Known statuses map directly; anything else is active."""
        assert map_status(provider_status) == expected


class TestParseEvent:
    """Event variants."""

    def test_subscription_events(self):
        """Created and updated share a variant."""
        for event_type in ("customer.subscription.created", "customer.subscription.updated"):
            parsed = parse_event(subscription_event(event_type))
            assert isinstance(parsed, SubscriptionChanged)
            assert parsed.subscription["id"] == "sub_1"

    def test_deleted_event(self):
        """Deletion carries the user id from metadata."""
        parsed = parse_event(subscription_event("customer.subscription.deleted"))
        assert parsed == SubscriptionDeleted(event_id="evt_1", subscription_id="sub_1", user_id=42)

    def test_checkout_falls_back_to_client_reference(self):
        """Checkout user id resolves from client_reference_id when metadata lacks it."""
        event = {
            "id": "evt_c",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "client_reference_id": "9", "subscription": "sub_9"}},
        }
        parsed = parse_event(event)
        assert isinstance(parsed, CheckoutCompleted)
        assert parsed.user_id == 9
        assert parsed.subscription_id == "sub_9"

    def test_invoice_and_unknown(self):
        """Invoices and other types get their own variants."""
        invoice = {"id": "evt_i", "type": "invoice.payment_failed", "data": {"object": {"id": "in_1", "customer": "cus_1"}}}
        assert parse_event(invoice) == InvoiceEvent(event_id="evt_i", paid=False, invoice_id="in_1", customer_id="cus_1")
        other = {"id": "evt_o", "type": "charge.refunded", "data": {"object": {}}}
        assert parse_event(other) == UnhandledEvent(event_id="evt_o", event_type="charge.refunded")


class TestReconciler:
    """State reconciliation."""

    def test_example_trialing_then_active(self, store):
        """A trialing event creates the record; a later active event updates it in place."""
        reconciler = _reconciler(store)
        reconciler.handle_event(subscription_event(status="trialing"))

        assert len(store.records) == 1
        record = store.records[0]
        assert record["user_id"] == 42
        assert record["plan"] == "starter"
        assert record["status"] == "trialing"
        record_id = record["id"]

        reconciler.handle_event(subscription_event(event_id="evt_2", status="active"))
        assert len(store.records) == 1
        assert store.records[0]["id"] == record_id
        assert store.records[0]["status"] == "active"

    def test_created_then_updated_reuses_record(self, store):
        """An update for the same subscription id never creates a second record."""
        reconciler = _reconciler(store)
        reconciler.handle_event(subscription_event("customer.subscription.created", status="trialing"))
        reconciler.handle_event(
            subscription_event(event_id="evt_2", status="past_due", cancel_at_period_end=True)
        )
        assert len(store.records) == 1
        assert store.records[0]["status"] == "past_due"
        assert store.records[0]["cancel_at_period_end"] is True

    def test_replay_is_idempotent(self, store):
        """Applying the same event twice equals applying it once."""
        reconciler = _reconciler(store)
        event = subscription_event(status="active")
        reconciler.handle_event(event)
        once = [dict(record) for record in store.records]
        reconciler.handle_event(event)
        assert store.records == once

    def test_record_fields(self, store):
        """Provider ids and the billing window are stored."""
        _reconciler(store).handle_event(subscription_event(plan="professional"))
        record = store.records[0]
        assert record["plan"] == "professional"
        assert record["stripe_subscription_id"] == "sub_1"
        assert record["stripe_customer_id"] == "cus_1"
        assert record["current_period_start"] == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        assert record["current_period_end"] == datetime.fromtimestamp(1_702_592_000, tz=timezone.utc)
        assert record["cancel_at_period_end"] is False

    def test_period_read_from_items(self, store):
        """Billing window falls back to the first subscription item."""
        event = subscription_event(period_start=None, period_end=None)
        event["data"]["object"]["items"] = {
            "data": [{"current_period_start": 1_700_000_000, "current_period_end": 1_702_592_000}]
        }
        _reconciler(store).handle_event(event)
        assert store.records[0]["current_period_end"] == datetime.fromtimestamp(1_702_592_000, tz=timezone.utc)

    def test_unknown_plan_defaults_to_starter(self, store):
        """Unrecognised plan metadata is stored as starter."""
        _reconciler(store).handle_event(subscription_event(plan="platinum"))
        assert store.records[0]["plan"] == "starter"

    def test_missing_user_id_is_dropped(self, store):
        """Events without a resolvable user are logged and ignored."""
        result = _reconciler(store).handle_event(subscription_event(user_id=None))
        assert result == {"received": True}
        assert store.records == []

    def test_deleted_cancels_and_keeps_period(self, store):
        """Deletion is a status change only."""
        reconciler = _reconciler(store)
        reconciler.handle_event(subscription_event(status="active"))
        before = dict(store.records[0])

        reconciler.handle_event(
            subscription_event("customer.subscription.deleted", event_id="evt_d", status="canceled", period_end=1)
        )
        record = store.records[0]
        assert record["status"] == "canceled"
        assert record["current_period_end"] == before["current_period_end"]
        assert record["stripe_subscription_id"] == before["stripe_subscription_id"]
        assert len(store.records) == 1

    def test_deleted_without_record_is_noop(self, store):
        """Deletion for an unknown user creates nothing."""
        _reconciler(store).handle_event(subscription_event("customer.subscription.deleted"))
        assert store.records == []

    def test_checkout_completed_fetches_subscription(self, store):
        """Checkout completion retrieves the subscription and applies it."""
        lookups = []

        def retrieve(subscription_id):
            lookups.append(subscription_id)
            return subscription_event(status="trialing", subscription_id=subscription_id)["data"]["object"]

        event = {
            "id": "evt_c",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_1",
                    "metadata": {"user_id": "42", "plan": "starter"},
                    "subscription": "sub_77",
                }
            },
        }
        _reconciler(store, retrieve).handle_event(event)
        assert lookups == ["sub_77"]
        assert store.records[0]["stripe_subscription_id"] == "sub_77"
        assert store.records[0]["status"] == "trialing"

    def test_checkout_with_expanded_subscription(self, store):
        """An expanded subscription on the session is applied without a lookup."""
        subscription = subscription_event(status="trialing", subscription_id="sub_88")["data"]["object"]
        event = {
            "id": "evt_c",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_2",
                    "metadata": {"user_id": "42", "plan": "starter"},
                    "subscription": subscription,
                }
            },
        }
        _reconciler(store).handle_event(event)
        assert len(store.records) == 1
        assert store.records[0]["stripe_subscription_id"] == "sub_88"
        assert store.records[0]["status"] == "trialing"

    def test_past_due_recovers_to_active(self, store):
        """A paid-up subscription leaves past_due on the same record."""
        reconciler = _reconciler(store)
        reconciler.handle_event(subscription_event(status="past_due"))
        assert store.records[0]["status"] == "past_due"

        reconciler.handle_event(subscription_event(event_id="evt_2", status="active"))
        assert len(store.records) == 1
        assert store.records[0]["status"] == "active"

    def test_checkout_without_user_is_noop(self, store):
        """Checkout completion with no user reference does not call the provider."""
        event = {
            "id": "evt_c",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "subscription": "sub_77"}},
        }
        assert _reconciler(store).handle_event(event) == {"received": True}
        assert store.records == []

    def test_invoice_events_do_not_mutate(self, store):
        """Invoice notifications are observability only."""
        reconciler = _reconciler(store)
        reconciler.handle_event(subscription_event(status="active"))
        snapshot = [dict(record) for record in store.records]
        for event_type in ("invoice.paid", "invoice.payment_failed"):
            reconciler.handle_event(
                {"id": "evt_i", "type": event_type, "data": {"object": {"id": "in_1", "customer": "cus_1"}}}
            )
        assert store.records == snapshot

    def test_test_event_short_circuits(self, store):
        """Provider connectivity checks never touch state."""
        event = subscription_event(event_id="evt_test_webhook")
        assert _reconciler(store).handle_event(event) == {"verified": True}
        assert store.records == []


class TestCheckout:
    """Checkout session creation."""

    def test_enterprise_has_no_self_serve_price(self, monkeypatch):
        """Enterprise checkout is a configuration error."""
        monkeypatch.setattr(
            stripe.checkout.Session,
            "create",
            lambda **kwargs: pytest.fail("Stripe must not be called"),
        )
        with pytest.raises(ConfigurationError):
            create_checkout_session(
                user_id=1, email="a@b.com", display_name="A", plan="ENTERPRISE", origin="https://x"
            )

    def test_price_ids_follow_environment(self, monkeypatch):
        """Defaults differ between test and production; env overrides win."""
        monkeypatch.delenv("STRIPE_PRICE_STARTER", raising=False)
        assert price_id_for("STARTER") == "price_starter_test"
        monkeypatch.setenv("ENVIRONMENT", "production")
        assert price_id_for("professional") == "price_professional_live"
        monkeypatch.setenv("STRIPE_PRICE_STARTER", "price_custom")
        assert price_id_for("STARTER") == "price_custom"
        assert price_id_for("ENTERPRISE") is None

    def test_session_parameters(self, monkeypatch):
        """Session embeds user metadata, a 14-day trial and return URLs."""
        captured = {}

        def fake_create(**kwargs):
            captured.update(kwargs)
            return SimpleNamespace(id="cs_123", url="https://checkout.stripe.com/c/pay/cs_123")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
        url = create_checkout_session(
            user_id=42,
            email="jo@example.com",
            display_name="Jo",
            plan="STARTER",
            origin="https://app.example.com/",
        )

        assert url == "https://checkout.stripe.com/c/pay/cs_123"
        assert captured["mode"] == "subscription"
        assert captured["line_items"] == [{"price": "price_starter_test", "quantity": 1}]
        assert captured["customer_email"] == "jo@example.com"
        assert captured["client_reference_id"] == "42"
        assert captured["metadata"]["user_id"] == "42"
        assert captured["metadata"]["customer_email"] == "jo@example.com"
        assert captured["subscription_data"] == {
            "metadata": {"user_id": "42", "plan": "starter"},
            "trial_period_days": billing.TRIAL_PERIOD_DAYS,
        }
        assert captured["success_url"] == "https://app.example.com/dashboard?payment=success"
        assert captured["cancel_url"] == "https://app.example.com/?payment=cancelled"


class TestVerifyWebhook:
    """Signature verification."""

    def test_valid_signature(self):
        """A correctly signed body decodes to the event."""
        payload = json.dumps(subscription_event())
        event = verify_webhook(payload.encode("utf-8"), stripe_signature(payload), WEBHOOK_SECRET)
        assert event["type"] == "customer.subscription.updated"

    def test_forged_signature(self):
        """A body signed with another secret is rejected."""
        payload = json.dumps(subscription_event())
        with pytest.raises(WebhookVerificationError):
            verify_webhook(payload.encode("utf-8"), stripe_signature(payload, secret="whsec_other"), WEBHOOK_SECRET)

    def test_tampered_body(self):
        """Changing the body after signing invalidates it."""
        payload = json.dumps(subscription_event(status="trialing"))
        signature = stripe_signature(payload)
        tampered = payload.replace("trialing", "active")
        with pytest.raises(WebhookVerificationError):
            verify_webhook(tampered.encode("utf-8"), signature, WEBHOOK_SECRET)

    def test_missing_secret(self):
        """No secret is a configuration error."""
        with pytest.raises(ConfigurationError):
            verify_webhook(b"{}", "t=1,v1=abc", "")
