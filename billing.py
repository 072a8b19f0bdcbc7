from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, Union

import stripe

from config import env, is_production

logger = logging.getLogger("influxity.billing")

PLANS = ("starter", "professional", "enterprise")

TRIAL_PERIOD_DAYS = 14
TEST_EVENT_PREFIX = "evt_test_"

PRODUCTS: dict[str, dict[str, Any]] = {
    "STARTER": {
        "name": "Starter Plan",
        "amount": 9900,
        "currency": "usd",
        "interval": "month",
        "self_serve": True,
    },
    "PROFESSIONAL": {
        "name": "Professional Plan",
        "amount": 29900,
        "currency": "usd",
        "interval": "month",
        "self_serve": True,
    },
    # Custom pricing, sold through sales.
    "ENTERPRISE": {
        "name": "Enterprise Plan",
        "amount": None,
        "currency": "usd",
        "interval": None,
        "self_serve": False,
    },
}


class BillingError(Exception):
    """Base class for billing failures."""


class ConfigurationError(BillingError):
    """Deployment is missing something billing needs (price id, secret)."""


class WebhookVerificationError(BillingError):
    """Inbound webhook payload failed signature verification."""


def configure_stripe() -> None:
    api_key = env("STRIPE_SECRET_KEY")
    if api_key:
        stripe.api_key = api_key


def price_id_for(plan: str) -> str | None:
    """Resolve the Stripe price id for a plan in the current environment."""
    key = plan.upper()
    product = PRODUCTS.get(key)
    if not product or not product["self_serve"]:
        return None
    override = env(f"STRIPE_PRICE_{key}")
    if override:
        return override
    suffix = "live" if is_production() else "test"
    return f"price_{key.lower()}_{suffix}"


def create_checkout_session(
    *,
    user_id: int,
    email: str,
    display_name: str,
    plan: str,
    origin: str,
) -> str:
    """Create a hosted checkout session and return its redirect URL.

    The user id travels in both session and subscription metadata so that
    later webhook events resolve back to a local user without a lookup table.
    """
    price_id = price_id_for(plan)
    if not price_id:
        raise ConfigurationError(f"Price ID not configured for {plan.upper()}.")

    origin = origin.rstrip("/")
    plan_name = plan.lower()
    params: dict[str, Any] = {}
    if email:
        params["customer_email"] = email
    session = stripe.checkout.Session.create(
        mode="subscription",
        payment_method_types=["card"],
        line_items=[{"price": price_id, "quantity": 1}],
        client_reference_id=str(user_id),
        metadata={
            "user_id": str(user_id),
            "customer_email": email,
            "customer_name": display_name,
            "plan": plan_name,
        },
        allow_promotion_codes=True,
        success_url=f"{origin}/dashboard?payment=success",
        cancel_url=f"{origin}/?payment=cancelled",
        subscription_data={
            "metadata": {"user_id": str(user_id), "plan": plan_name},
            "trial_period_days": TRIAL_PERIOD_DAYS,
        },
        **params,
    )
    logger.info("Checkout session %s created for user %s (%s).", session.id, user_id, plan_name)
    return session.url


def verify_webhook(raw_body: bytes, signature: str, secret: str) -> dict[str, Any]:
    """Check the Stripe signature header against the raw body and decode it."""
    if not secret:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not set.")
    if not signature:
        raise WebhookVerificationError("Missing webhook signature header.")
    try:
        payload = raw_body.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            payload, signature, secret, stripe.Webhook.DEFAULT_TOLERANCE
        )
        event = json.loads(payload)
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError(str(exc)) from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookVerificationError("Invalid webhook payload.") from exc
    if not isinstance(event, dict) or not event.get("type"):
        raise WebhookVerificationError("Invalid webhook payload.")
    return event


def retrieve_subscription(subscription_id: str) -> dict[str, Any]:
    return _as_dict(stripe.Subscription.retrieve(subscription_id))


def map_status(provider_status: str | None) -> str:
    if provider_status == "trialing":
        return "trialing"
    if provider_status == "past_due":
        return "past_due"
    if provider_status in {"canceled", "unpaid"}:
        return "canceled"
    return "active"


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _parse_user_id(*candidates: Any) -> int | None:
    for value in candidates:
        if value is None or value == "":
            continue
        try:
            user_id = int(value)
        except (TypeError, ValueError):
            continue
        if user_id > 0:
            return user_id
    return None


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and value:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _period_value(subscription: dict[str, Any], field: str) -> Any:
    # Newer API versions moved the billing window onto subscription items.
    if subscription.get(field):
        return subscription[field]
    items = (subscription.get("items") or {}).get("data") or []
    if items and isinstance(items[0], dict):
        return items[0].get(field)
    return None


# Event variants. Each carries only what its handler needs.


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    session_id: str | None
    user_id: int | None
    subscription_id: str | None
    subscription: dict[str, Any] | None = None


@dataclass(frozen=True)
class SubscriptionChanged:
    event_id: str
    event_type: str
    subscription: dict[str, Any]


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    subscription_id: str | None
    user_id: int | None


@dataclass(frozen=True)
class InvoiceEvent:
    event_id: str
    paid: bool
    invoice_id: str | None
    customer_id: str | None


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str


BillingEvent = Union[
    CheckoutCompleted, SubscriptionChanged, SubscriptionDeleted, InvoiceEvent, UnhandledEvent
]


def parse_event(event: dict[str, Any]) -> BillingEvent:
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    obj = _as_dict((event.get("data") or {}).get("object"))
    metadata = obj.get("metadata") or {}

    if event_type == "checkout.session.completed":
        subscription = obj.get("subscription")
        expanded = subscription if isinstance(subscription, dict) else None
        return CheckoutCompleted(
            event_id=event_id,
            session_id=obj.get("id"),
            user_id=_parse_user_id(metadata.get("user_id"), obj.get("client_reference_id")),
            subscription_id=subscription if isinstance(subscription, str) else None,
            subscription=expanded,
        )
    if event_type in {"customer.subscription.created", "customer.subscription.updated"}:
        return SubscriptionChanged(event_id=event_id, event_type=event_type, subscription=obj)
    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(
            event_id=event_id,
            subscription_id=obj.get("id"),
            user_id=_parse_user_id(metadata.get("user_id")),
        )
    if event_type in {"invoice.paid", "invoice.payment_failed"}:
        return InvoiceEvent(
            event_id=event_id,
            paid=event_type == "invoice.paid",
            invoice_id=obj.get("id"),
            customer_id=obj.get("customer") if isinstance(obj.get("customer"), str) else None,
        )
    return UnhandledEvent(event_id=event_id, event_type=event_type)


class SubscriptionStore(Protocol):
    def create_subscription(self, **fields: Any) -> dict[str, Any]: ...

    def update_subscription(self, subscription_id: int, **fields: Any) -> None: ...

    def get_latest_subscription(self, user_id: int) -> dict[str, Any] | None: ...


class SubscriptionReconciler:
    """Apply verified Stripe events to the local subscription record.

    Effects are idempotent: a replayed event rewrites the same fields on the
    same record, so at-least-once delivery never duplicates rows.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        retrieve_subscription: Callable[[str], dict[str, Any]] = retrieve_subscription,
    ) -> None:
        self.store = store
        self.retrieve_subscription = retrieve_subscription

    def handle_event(self, event: dict[str, Any]) -> dict[str, bool]:
        event_id = str(event.get("id") or "")
        logger.info("Processing event: %s (%s)", event.get("type"), event_id)

        if event_id.startswith(TEST_EVENT_PREFIX):
            logger.info("Test event detected, returning verification response.")
            return {"verified": True}

        parsed = parse_event(event)
        if isinstance(parsed, CheckoutCompleted):
            self._checkout_completed(parsed)
        elif isinstance(parsed, SubscriptionChanged):
            self.apply_subscription(parsed.subscription)
        elif isinstance(parsed, SubscriptionDeleted):
            self._subscription_deleted(parsed)
        elif isinstance(parsed, InvoiceEvent):
            if parsed.paid:
                logger.info("Invoice paid: %s for customer %s", parsed.invoice_id, parsed.customer_id)
            else:
                logger.warning(
                    "Payment failed: %s for customer %s", parsed.invoice_id, parsed.customer_id
                )
        else:
            logger.info("Unhandled event type: %s", parsed.event_type)

        return {"received": True}

    def _checkout_completed(self, event: CheckoutCompleted) -> None:
        if not event.user_id:
            logger.error("No user ID found in checkout session %s.", event.session_id)
            return
        logger.info("Checkout completed for user %s.", event.user_id)

        if event.subscription is not None:
            self.apply_subscription(event.subscription)
        elif event.subscription_id:
            self.apply_subscription(self.retrieve_subscription(event.subscription_id))

    def apply_subscription(self, subscription: dict[str, Any]) -> dict[str, Any] | None:
        """Upsert the user's latest record from a subscription object."""
        metadata = subscription.get("metadata") or {}
        user_id = _parse_user_id(metadata.get("user_id"))
        if not user_id:
            logger.error("No user ID found in subscription %s metadata.", subscription.get("id"))
            return None

        plan = str(metadata.get("plan") or "starter").lower()
        if plan not in PLANS:
            logger.warning("Unknown plan %r on subscription %s; using starter.", plan, subscription.get("id"))
            plan = "starter"
        status = map_status(subscription.get("status"))
        logger.info("Subscription %s for user %s: %s", subscription.get("id"), user_id, status)

        customer = subscription.get("customer")
        fields: dict[str, Any] = {
            "status": status,
            "stripe_subscription_id": subscription.get("id"),
            "stripe_customer_id": customer if isinstance(customer, str) else _as_dict(customer).get("id"),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        }
        period_start = _timestamp(_period_value(subscription, "current_period_start"))
        period_end = _timestamp(_period_value(subscription, "current_period_end"))
        if period_start is not None:
            fields["current_period_start"] = period_start
        if period_end is not None:
            fields["current_period_end"] = period_end

        existing = self.store.get_latest_subscription(user_id)
        if existing:
            self.store.update_subscription(existing["id"], **fields)
            return {**existing, **fields}
        return self.store.create_subscription(user_id=user_id, plan=plan, **fields)

    def _subscription_deleted(self, event: SubscriptionDeleted) -> None:
        if not event.user_id:
            logger.error("No user ID found in deleted subscription %s metadata.", event.subscription_id)
            return
        logger.info("Subscription deleted for user %s.", event.user_id)

        existing = self.store.get_latest_subscription(event.user_id)
        if existing:
            self.store.update_subscription(existing["id"], status="canceled")
