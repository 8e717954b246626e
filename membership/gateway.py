"""
Billing provider gateway
Narrow interface over the external billing provider, plus the Stripe implementation.

Every method is a single remote call: nothing is retried here. Retry and
timeout policy belongs to the caller (see gateway_policy).
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import stripe

from membership.errors import ProviderError, ProviderNotFound, ProviderTransientError
from membership.models import (
    META_DOWNGRADE_INTERVAL,
    META_DOWNGRADE_TIER,
    META_USER_ID,
    CheckoutSession,
    InvoiceLine,
    InvoicePreview,
    PaymentMethodSummary,
    ProviderSubscriptionSnapshot,
    SubscriptionRecord,
    payload_field,
)

logger = logging.getLogger(__name__)


class BillingGateway(ABC):
    """All calls the lifecycle manager makes to the billing provider"""

    @abstractmethod
    async def ensure_customer(self, record: SubscriptionRecord, email: Optional[str] = None) -> str:
        """Return the stored customer id, or create a customer (caller persists the id)"""

    @abstractmethod
    async def start_checkout(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        ...

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscriptionSnapshot:
        """Raises ProviderNotFound when the provider has no such subscription"""

    @abstractmethod
    async def change_subscription_item(
        self,
        subscription_id: str,
        new_price_id: str,
        proration_mode: str = "create_prorations",
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderSubscriptionSnapshot:
        ...

    @abstractmethod
    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        default_payment_method: Optional[str] = None,
    ) -> ProviderSubscriptionSnapshot:
        ...

    @abstractmethod
    async def schedule_cancel_at_period_end(
        self, subscription_id: str, metadata: Optional[Dict[str, str]] = None
    ) -> ProviderSubscriptionSnapshot:
        ...

    @abstractmethod
    async def cancel_immediately(
        self, subscription_id: str, idempotency_key: Optional[str] = None
    ) -> ProviderSubscriptionSnapshot:
        ...

    @abstractmethod
    async def clear_scheduled_cancel(self, subscription_id: str) -> ProviderSubscriptionSnapshot:
        """Undo a pending cancellation, including any downgrade marker"""

    @abstractmethod
    async def preview_invoice(
        self, customer_id: str, subscription_id: str, proposed_items: List[Dict[str, Any]]
    ) -> InvoicePreview:
        ...

    @abstractmethod
    async def list_payment_methods(self, customer_id: str) -> List[PaymentMethodSummary]:
        ...


# Clearing a metadata key on Stripe is done by sending an empty string
CLEARED_DOWNGRADE_MARKER = {META_DOWNGRADE_TIER: "", META_DOWNGRADE_INTERVAL: ""}


def translate_stripe_error(exc: Exception) -> ProviderError:
    """Map a Stripe SDK exception onto the gateway error taxonomy"""
    if isinstance(exc, stripe.InvalidRequestError) and getattr(exc, "code", None) == "resource_missing":
        return ProviderNotFound(str(exc))
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return ProviderTransientError(str(exc))
    if isinstance(exc, stripe.StripeError):
        status = getattr(exc, "http_status", None)
        if status is not None and status >= 500:
            return ProviderTransientError(str(exc))
        return ProviderError(str(exc))
    return ProviderError(str(exc))


class StripeGateway(BillingGateway):
    """BillingGateway backed by the Stripe SDK.

    The SDK is synchronous, so each call runs in a worker thread. The API key is
    passed per request instead of being set on the stripe module.
    """

    def __init__(self, api_key: str, payment_method_types: Optional[List[str]] = None):
        if not api_key:
            raise ValueError("STRIPE_SECRET_KEY not configured, please set in environment variables")
        self._api_key = api_key
        self._payment_method_types = payment_method_types or ["card"]

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as e:
            raise translate_stripe_error(e) from e

    async def ensure_customer(self, record: SubscriptionRecord, email: Optional[str] = None) -> str:
        if record.external_customer_id:
            return record.external_customer_id

        customer_data: Dict[str, Any] = {"metadata": {META_USER_ID: record.user_id}}
        if email:
            customer_data["email"] = email
        customer = await self._call(
            stripe.Customer.create,
            idempotency_key=f"customer-{record.user_id}",
            **customer_data,
        )
        logger.info("Created Stripe customer %s for user %s", customer.id, record.user_id)
        return customer.id

    async def start_checkout(self, customer_id, price_id, success_url, cancel_url, metadata) -> CheckoutSession:
        session = await self._call(
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=self._payment_method_types,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            allow_promotion_codes=True,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
        return CheckoutSession(session_id=session.id, url=session.url)

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscriptionSnapshot:
        subscription = await self._call(stripe.Subscription.retrieve, subscription_id)
        return ProviderSubscriptionSnapshot.from_provider(subscription)

    async def _first_item_id(self, subscription_id: str) -> str:
        subscription = await self._call(stripe.Subscription.retrieve, subscription_id)
        data = payload_field(payload_field(subscription, "items"), "data") or []
        if not data:
            raise ProviderError(f"Subscription {subscription_id} has no items")
        return data[0]["id"]

    async def change_subscription_item(
        self,
        subscription_id,
        new_price_id,
        proration_mode="create_prorations",
        metadata=None,
        idempotency_key=None,
    ) -> ProviderSubscriptionSnapshot:
        item_id = await self._first_item_id(subscription_id)
        params: Dict[str, Any] = {
            "cancel_at_period_end": False,
            "proration_behavior": proration_mode,
            "items": [{"id": item_id, "price": new_price_id}],
            "metadata": {**CLEARED_DOWNGRADE_MARKER, **(metadata or {})},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        subscription = await self._call(stripe.Subscription.modify, subscription_id, **params)
        return ProviderSubscriptionSnapshot.from_provider(subscription)

    async def create_subscription(
        self, customer_id, price_id, metadata, idempotency_key, default_payment_method=None
    ) -> ProviderSubscriptionSnapshot:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if default_payment_method:
            params["default_payment_method"] = default_payment_method
        subscription = await self._call(stripe.Subscription.create, **params)
        return ProviderSubscriptionSnapshot.from_provider(subscription)

    async def schedule_cancel_at_period_end(self, subscription_id, metadata=None) -> ProviderSubscriptionSnapshot:
        subscription = await self._call(
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
            metadata={**CLEARED_DOWNGRADE_MARKER, **(metadata or {})},
        )
        return ProviderSubscriptionSnapshot.from_provider(subscription)

    async def cancel_immediately(self, subscription_id, idempotency_key=None) -> ProviderSubscriptionSnapshot:
        params: Dict[str, Any] = {"prorate": True}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        subscription = await self._call(stripe.Subscription.cancel, subscription_id, **params)
        return ProviderSubscriptionSnapshot.from_provider(subscription)

    async def clear_scheduled_cancel(self, subscription_id) -> ProviderSubscriptionSnapshot:
        subscription = await self._call(
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
            metadata=CLEARED_DOWNGRADE_MARKER,
        )
        return ProviderSubscriptionSnapshot.from_provider(subscription)

    async def preview_invoice(self, customer_id, subscription_id, proposed_items) -> InvoicePreview:
        # Items without an id replace the subscription's existing item
        if any("id" not in item for item in proposed_items):
            item_id = await self._first_item_id(subscription_id)
            proposed_items = [item if "id" in item else {"id": item_id, **item} for item in proposed_items]
        invoice = await self._call(
            stripe.Invoice.create_preview,
            customer=customer_id,
            subscription=subscription_id,
            subscription_details={"items": proposed_items, "proration_behavior": "create_prorations"},
        )
        lines = []
        for line in payload_field(payload_field(invoice, "lines"), "data") or []:
            lines.append(InvoiceLine(
                description=payload_field(line, "description", ""),
                amount_cents=int(payload_field(line, "amount", 0)),
                proration=_line_proration_flag(line),
            ))
        return InvoicePreview(
            total_cents=int(payload_field(invoice, "total", 0)),
            currency=payload_field(invoice, "currency", "usd"),
            lines=lines,
        )

    async def list_payment_methods(self, customer_id) -> List[PaymentMethodSummary]:
        methods = await self._call(stripe.PaymentMethod.list, customer=customer_id, type="card")
        summaries = []
        for method in payload_field(methods, "data") or []:
            card = payload_field(method, "card")
            summaries.append(PaymentMethodSummary(
                id=method["id"],
                brand=payload_field(card, "brand"),
                last4=payload_field(card, "last4"),
                exp_month=payload_field(card, "exp_month"),
                exp_year=payload_field(card, "exp_year"),
            ))
        return summaries


def _line_proration_flag(line) -> Optional[bool]:
    """Stripe moved the proration flag under parent details in newer API versions"""
    flag = payload_field(line, "proration")
    if flag is not None:
        return bool(flag)
    details = payload_field(payload_field(line, "parent"), "subscription_item_details")
    flag = payload_field(details, "proration")
    return None if flag is None else bool(flag)
