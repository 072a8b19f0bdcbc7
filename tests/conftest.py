"""Shared fixtures. Environment is set before the app module is imported."""

import hashlib
import hmac
import json
import os
import time

import pytest

os.environ.update(
    {
        "ENVIRONMENT": "test",
        "STRICT_ENV_VALIDATION": "false",
        "PAYMENTS_ENABLED": "true",
        "AUTH_SECRET": "test-auth-secret-with-enough-length-1234",
        "FRONTEND_URL": "https://app.example.com",
        "STRIPE_SECRET_KEY": "sk_test_dummy",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_secret",
        "OWNER_OPEN_ID": "owner-1",
        "OPENROUTER_API_KEY": "test-key",
    }
)
for _name in ("STRIPE_PRICE_STARTER", "STRIPE_PRICE_PROFESSIONAL", "CACHE_MAX_KEYS"):
    os.environ.pop(_name, None)

from auth import create_token  # noqa: E402
from billing import SubscriptionReconciler  # noqa: E402
from cache import ResponseCache  # noqa: E402

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSubscriptionStore:
    """In-memory stand-in for the subscriptions table."""

    def __init__(self):
        self.records: list[dict] = []
        self._next_id = 1

    def create_subscription(self, **fields):
        record = {
            "id": self._next_id,
            "status": "trialing",
            "stripe_customer_id": None,
            "stripe_subscription_id": None,
            "current_period_start": None,
            "current_period_end": None,
            "cancel_at_period_end": False,
            **fields,
        }
        self._next_id += 1
        self.records.append(record)
        return dict(record)

    def update_subscription(self, subscription_id, **fields):
        for record in self.records:
            if record["id"] == subscription_id:
                record.update(fields)
                return
        raise KeyError(subscription_id)

    def get_latest_subscription(self, user_id):
        matches = [record for record in self.records if record["user_id"] == user_id]
        return dict(matches[-1]) if matches else None


class FakeLLM:
    def __init__(self, reply: str = "generated text"):
        self.reply = reply
        self.calls: list[list] = []

    def invoke(self, messages):
        from langchain_core.messages import AIMessage

        self.calls.append(list(messages))
        return AIMessage(content=self.reply)


def subscription_event(
    event_type="customer.subscription.updated",
    *,
    event_id="evt_1",
    subscription_id="sub_1",
    status="active",
    user_id="42",
    plan="starter",
    period_start=1_700_000_000,
    period_end=1_702_592_000,
    cancel_at_period_end=False,
):
    metadata = {}
    if user_id is not None:
        metadata["user_id"] = user_id
    if plan is not None:
        metadata["plan"] = plan
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": subscription_id,
                "object": "subscription",
                "customer": "cus_1",
                "status": status,
                "metadata": metadata,
                "current_period_start": period_start,
                "current_period_end": period_end,
                "cancel_at_period_end": cancel_at_period_end,
            }
        },
    }


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256)
    return f"t={ts},v1={digest.hexdigest()}"


def signed_body(event: dict) -> tuple[str, dict[str, str]]:
    payload = json.dumps(event)
    return payload, {"stripe-signature": stripe_signature(payload), "content-type": "application/json"}


def auth_headers(open_id: str = "user-1", name: str = "Test User", email: str = "test@example.com"):
    token = create_token(
        {"sub": open_id, "name": name, "email": email},
        os.environ["AUTH_SECRET"],
        3600,
    )
    return {"authorization": f"Bearer {token}"}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeSubscriptionStore()


@pytest.fixture
def fake_llm(monkeypatch):
    import main

    llm = FakeLLM()
    monkeypatch.setattr(main, "_get_llm", lambda: llm)
    return llm


@pytest.fixture
def users(monkeypatch):
    """Replace user persistence with a dict keyed by open id."""
    import main

    table: dict[str, dict] = {}

    def fake_upsert_user(*, open_id, name=None, email=None, login_method=None, role=None):
        user = table.get(open_id)
        if user is None:
            user = {"id": len(table) + 1, "open_id": open_id, "role": "user"}
            table[open_id] = user
        user.update({"name": name or user.get("name"), "email": email or user.get("email")})
        if role:
            user["role"] = role
        return dict(user)

    monkeypatch.setattr(main, "upsert_user", fake_upsert_user)
    return table


@pytest.fixture
def client(store, clock, users):
    from fastapi.testclient import TestClient

    import main

    original_cache = main.app.state.response_cache
    original_reconciler = main.app.state.reconciler

    def no_remote_lookup(subscription_id):
        raise AssertionError(f"unexpected Stripe lookup for {subscription_id}")

    main.app.state.response_cache = ResponseCache(clock=clock)
    main.app.state.reconciler = SubscriptionReconciler(store=store, retrieve_subscription=no_remote_lookup)
    try:
        with TestClient(main.app) as test_client:
            yield test_client
    finally:
        main.app.state.response_cache = original_cache
        main.app.state.reconciler = original_reconciler
