"""
Pytest configuration for the billing reconciler tests.
Sets the required environment before the application settings are read.
"""

import hashlib
import hmac
import json
import os
import time
from typing import Any, Dict, Optional

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_PRICE_ID_MONTHLY", "price_monthly_test")
os.environ.setdefault("STRIPE_PRICE_ID_YEARLY", "price_yearly_test")
os.environ.setdefault("APPLE_SHARED_SECRET", "apple_shared_secret")
os.environ.setdefault("APPLE_BUNDLE_ID", "com.ronnie39.renvo")
os.environ.setdefault("AUTH_JWT_SECRET", "jwt_test_secret")

import pytest

from billing_reconciler.core.config import BillingConfig
from billing_reconciler.domain.catalog import DEFAULT_TIERS
from billing_reconciler.infrastructure.persistence.sqlite import SQLitePersistence
from billing_reconciler.services.idempotency import IdempotencyLedger
from billing_reconciler.services.stripe_webhook import StripeWebhookReconciler

WEBHOOK_SECRET = "whsec_test_secret"
BUNDLE_ID = "com.ronnie39.renvo"


def _sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe computes it."""
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _make_event(event_id: str, event_type: str, obj: Dict[str, Any]) -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode("utf-8")


@pytest.fixture
def billing_config():
    return BillingConfig(
        provider_secret_key="sk_test_dummy",
        webhook_signing_secret=WEBHOOK_SECRET,
        platform_shared_secret="apple_shared_secret",
        bundle_id=BUNDLE_ID,
        price_id_monthly="price_monthly_test",
        price_id_yearly="price_yearly_test",
    )


@pytest.fixture
def persistence(tmp_path):
    store = SQLitePersistence(tmp_path / "billing.db")
    store.seed_tiers(DEFAULT_TIERS)
    yield store
    store.close()


@pytest.fixture
def ledger(persistence):
    return IdempotencyLedger(persistence)


@pytest.fixture
def reconciler(persistence, ledger, billing_config):
    return StripeWebhookReconciler(persistence, ledger, billing_config)


@pytest.fixture
def deliver(reconciler):
    """Sign and hand one event to the reconciler."""

    def _deliver(event_id: str, event_type: str, obj: Dict[str, Any]):
        payload = _make_event(event_id, event_type, obj)
        return reconciler.handle(payload, _sign_payload(payload))

    return _deliver


@pytest.fixture
def stripe_record(persistence):
    """A user mid-upgrade: subscription created, first invoice not yet paid."""
    return persistence.upsert_record(
        "user-1",
        tier_id="premium",
        status="trialing",
        provider="stripe",
        provider_customer_id="cus_1",
        provider_subscription_id="sub_1",
        billing_cycle="monthly",
    )


@pytest.fixture
def sign_payload():
    return _sign_payload


@pytest.fixture
def make_event():
    return _make_event
