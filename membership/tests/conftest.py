"""
Shared fixtures: settings with test price ids, an in-memory store and a fake
billing gateway that keeps Stripe-shaped subscription objects.
"""
import copy
import hashlib
import hmac
import itertools
import json
import time
from collections import defaultdict
from datetime import datetime, timezone

import pytest

from membership.config import Settings
from membership.errors import ProviderNotFound
from membership.gateway import BillingGateway
from membership.gateway_policy import GatewayCallPolicy
from membership.models import (
    BillingInterval,
    CheckoutSession,
    InvoicePreview,
    PaymentMethodSummary,
    ProviderSubscriptionSnapshot,
    SubscriptionRecord,
    SubscriptionStatus,
    Tier,
)
from membership.notifications import RecordingNotifier
from membership.pricing import PriceTable
from membership.service import SubscriptionService
from membership.store import InMemoryEventLedger, InMemorySubscriptionStore, UserLocks
from membership.webhooks import WebhookDispatcher

WEBHOOK_SECRET = "whsec_test_secret"

PRICE_PREMIUM_MONTH = "price_premium_month"
PRICE_PREMIUM_YEAR = "price_premium_year"
PRICE_ELITE_MONTH = "price_elite_month"
PRICE_ELITE_YEAR = "price_elite_year"

# 2025-06-01T00:00:00Z
PERIOD_END_TS = 1748736000
PERIOD_END = datetime(2025, 6, 1, tzinfo=timezone.utc)


class FakeGateway(BillingGateway):
    """In-memory BillingGateway.

    Subscriptions are stored as Stripe-shaped dicts so the same objects can be
    used as webhook payloads. Failures can be queued per method.
    """

    def __init__(self):
        self.subscriptions = {}
        self.calls = []
        self.failures = defaultdict(list)
        self.idempotent_results = {}
        self.preview_result = InvoicePreview()
        self.payment_methods = []
        self._ids = itertools.count(1)

    # ---- test helpers ----

    def fail_next(self, method, exc, times=1):
        self.failures[method].extend([exc] * times)

    def calls_to(self, method):
        return [args for name, args in self.calls if name == method]

    def add_subscription(self, customer_id, price_id, status="active", metadata=None,
                         cancel_at_period_end=False, period_end=PERIOD_END_TS, sub_id=None,
                         default_payment_method=None):
        sub_id = sub_id or f"sub_{next(self._ids)}"
        self.subscriptions[sub_id] = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "current_period_end": period_end,
            "metadata": dict(metadata or {}),
            "default_payment_method": default_payment_method,
            "items": {"data": [{"id": f"si_{sub_id}", "price": {"id": price_id}}]},
        }
        return sub_id

    def payload(self, sub_id):
        return copy.deepcopy(self.subscriptions[sub_id])

    def _enter(self, method, *args):
        self.calls.append((method, args))
        if self.failures[method]:
            raise self.failures[method].pop(0)

    def _snapshot(self, sub_id):
        return ProviderSubscriptionSnapshot.from_provider(self.payload(sub_id))

    def _require(self, sub_id):
        if sub_id not in self.subscriptions:
            raise ProviderNotFound(f"No such subscription: '{sub_id}'")
        return self.subscriptions[sub_id]

    @staticmethod
    def _merge_metadata(sub, metadata):
        for key, value in (metadata or {}).items():
            if value == "":
                sub["metadata"].pop(key, None)
            else:
                sub["metadata"][key] = value

    # ---- BillingGateway ----

    async def ensure_customer(self, record, email=None):
        self._enter("ensure_customer", record.user_id, email)
        return record.external_customer_id or f"cus_{record.user_id}"

    async def start_checkout(self, customer_id, price_id, success_url, cancel_url, metadata):
        self._enter("start_checkout", customer_id, price_id, success_url, cancel_url, metadata)
        session_id = f"cs_test_{next(self._ids)}"
        return CheckoutSession(session_id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    async def retrieve_subscription(self, subscription_id):
        self._enter("retrieve_subscription", subscription_id)
        self._require(subscription_id)
        return self._snapshot(subscription_id)

    async def change_subscription_item(self, subscription_id, new_price_id, proration_mode="create_prorations",
                                       metadata=None, idempotency_key=None):
        self._enter("change_subscription_item", subscription_id, new_price_id, proration_mode, metadata, idempotency_key)
        sub = self._require(subscription_id)
        sub["items"]["data"][0]["price"] = {"id": new_price_id}
        sub["cancel_at_period_end"] = False
        self._merge_metadata(sub, {"downgrade_to_tier": "", "downgrade_to_interval": "", **(metadata or {})})
        return self._snapshot(subscription_id)

    async def create_subscription(self, customer_id, price_id, metadata, idempotency_key, default_payment_method=None):
        self._enter("create_subscription", customer_id, price_id, metadata, idempotency_key, default_payment_method)
        if idempotency_key in self.idempotent_results:
            return self._snapshot(self.idempotent_results[idempotency_key])
        sub_id = self.add_subscription(customer_id, price_id, metadata=metadata,
                                       period_end=PERIOD_END_TS + 30 * 86400,
                                       default_payment_method=default_payment_method)
        self.idempotent_results[idempotency_key] = sub_id
        return self._snapshot(sub_id)

    async def schedule_cancel_at_period_end(self, subscription_id, metadata=None):
        self._enter("schedule_cancel_at_period_end", subscription_id, metadata)
        sub = self._require(subscription_id)
        sub["cancel_at_period_end"] = True
        self._merge_metadata(sub, {"downgrade_to_tier": "", "downgrade_to_interval": "", **(metadata or {})})
        return self._snapshot(subscription_id)

    async def cancel_immediately(self, subscription_id, idempotency_key=None):
        self._enter("cancel_immediately", subscription_id, idempotency_key)
        sub = self._require(subscription_id)
        sub["status"] = "canceled"
        return self._snapshot(subscription_id)

    async def clear_scheduled_cancel(self, subscription_id):
        self._enter("clear_scheduled_cancel", subscription_id)
        sub = self._require(subscription_id)
        sub["cancel_at_period_end"] = False
        self._merge_metadata(sub, {"downgrade_to_tier": "", "downgrade_to_interval": ""})
        return self._snapshot(subscription_id)

    async def preview_invoice(self, customer_id, subscription_id, proposed_items):
        self._enter("preview_invoice", customer_id, subscription_id, proposed_items)
        return self.preview_result

    async def list_payment_methods(self, customer_id):
        self._enter("list_payment_methods", customer_id)
        return list(self.payment_methods)


def paid_record(user_id="user_1", tier=Tier.ELITE, sub_id="sub_elite", customer_id="cus_1",
                price_id=PRICE_ELITE_MONTH, interval=BillingInterval.MONTH, **extra):
    return SubscriptionRecord(
        user_id=user_id,
        tier=tier,
        status=extra.pop("status", SubscriptionStatus.ACTIVE),
        external_customer_id=customer_id,
        external_subscription_id=sub_id,
        price_id=price_id,
        interval=interval,
        current_period_end=extra.pop("current_period_end", PERIOD_END),
        version=extra.pop("version", 1),
        **extra,
    )


def make_event(event_type, obj, created=1000, event_id=None):
    return {
        "id": event_id or f"evt_{event_type}_{created}",
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook bodies"""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_body(event) -> str:
    return json.dumps(event)


@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        price_premium_monthly=PRICE_PREMIUM_MONTH,
        price_premium_yearly=PRICE_PREMIUM_YEAR,
        price_elite_monthly=PRICE_ELITE_MONTH,
        price_elite_yearly=PRICE_ELITE_YEAR,
        frontend_url="http://localhost:3000",
        gateway_timeout_seconds=2.0,
        read_retry_attempts=3,
        retry_wait_multiplier=0.0,
        retry_wait_max=0.0,
    )


@pytest.fixture
def prices(settings):
    return PriceTable.from_settings(settings)


@pytest.fixture
def policy(settings):
    return GatewayCallPolicy.from_settings(settings)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store():
    return InMemorySubscriptionStore()


@pytest.fixture
def locks():
    return UserLocks()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ledger():
    return InMemoryEventLedger()


@pytest.fixture
def service(gateway, store, prices, settings, locks, policy, notifier):
    return SubscriptionService(gateway, store, prices, settings, locks, policy, notifier)


@pytest.fixture
def dispatcher(gateway, store, locks, prices, policy, ledger, notifier):
    return WebhookDispatcher(
        gateway, store, locks, prices, policy,
        webhook_secret=WEBHOOK_SECRET, ledger=ledger, notifier=notifier,
    )
