"""
Stripe webhook dispatcher
Verifies signed billing events and routes them, through an explicit
event type -> handler table, to handlers that mutate SubscriptionRecord.

Delivery is at-least-once and unordered, so every handler is a deterministic
function of (stored record, payload):
- an exact redelivery is short-circuited by the processed-event ledger
- an event older than the newest one applied (provider_event_ts) is ignored
- subscription.deleted only acts while the record still references that subscription
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
from pydantic import BaseModel

from membership.downgrades import DowngradeCompleter
from membership.errors import (
    ProviderError,
    ProviderNotFound,
    ProviderTransientError,
    SignatureVerificationFailed,
)
from membership.gateway import BillingGateway
from membership.gateway_policy import GatewayCallPolicy
from membership.models import (
    META_INTERVAL,
    META_TIER,
    META_USER_ID,
    BillingInterval,
    ProviderSubscriptionSnapshot,
    SubscriptionRecord,
    SubscriptionStatus,
    Tier,
    newest_ts,
    payload_dict,
    payload_field,
    reference_id,
)
from membership.notifications import (
    DOWNGRADE_COMPLETE,
    LoggingNotifier,
    Notifier,
    PAYMENT_FAILED,
    PAYMENT_RECOVERED,
    SUBSCRIPTION_ENDED,
    SUBSCRIPTION_RENEWED,
    SUBSCRIPTION_STARTED,
    TIER_CHANGED,
    send_quietly,
)
from membership.pricing import PriceEntry, PriceTable
from membership.store import InMemoryEventLedger, ProcessedEventLedger, SubscriptionStore, UserLocks, mutate

logger = logging.getLogger(__name__)

# Outcome statuses
PROCESSED = "processed"
UNCHANGED = "unchanged"
NOT_FOUND = "not_found"
UNHANDLED = "unhandled"
DUPLICATE = "duplicate"
DEFERRED = "deferred"  # provider failure, left for manual reconciliation


class DispatchOutcome(BaseModel):
    event_id: Optional[str] = None
    event_type: str
    status: str
    user_id: Optional[str] = None
    detail: Optional[str] = None


Handler = Callable[[Any, Optional[int], Optional[str]], Awaitable[DispatchOutcome]]


def _is_stale(record: SubscriptionRecord, event_ts: Optional[int]) -> bool:
    # Same-second events are applied; only strictly older ones are dropped
    return (
        event_ts is not None
        and record.provider_event_ts is not None
        and int(event_ts) < int(record.provider_event_ts)
    )


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Newer API versions moved invoice.subscription under parent.subscription_details"""
    sub = reference_id(payload_field(invoice, "subscription"))
    if sub:
        return sub
    details = payload_field(payload_field(invoice, "parent"), "subscription_details")
    return reference_id(payload_field(details, "subscription"))


class WebhookDispatcher:
    def __init__(
        self,
        gateway: BillingGateway,
        store: SubscriptionStore,
        locks: UserLocks,
        prices: PriceTable,
        policy: GatewayCallPolicy,
        webhook_secret: str = "",
        ledger: Optional[ProcessedEventLedger] = None,
        notifier: Optional[Notifier] = None,
        mutation_attempts: int = 5,
    ):
        self.gateway = gateway
        self.store = store
        self.locks = locks
        self.prices = prices
        self.policy = policy
        self.webhook_secret = webhook_secret
        self.ledger = ledger or InMemoryEventLedger()
        self.notifier = notifier or LoggingNotifier()
        self.mutation_attempts = mutation_attempts
        self.downgrades = DowngradeCompleter(gateway, store, locks, prices, policy, mutation_attempts)

        # Transition table: provider event type -> handler
        self.handlers: Dict[str, Handler] = {
            "checkout.session.completed": self.handle_checkout_completed,
            "customer.subscription.created": self.handle_subscription_created,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.payment_succeeded": self.handle_payment_succeeded,
            "invoice.payment_failed": self.handle_payment_failed,
        }

    # ========== Boundary ==========

    def verify(self, payload: bytes, signature_header: Optional[str]):
        """Verify the Stripe-Signature header against the raw body and return the event"""
        if not self.webhook_secret:
            raise ValueError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature_header:
            logger.warning("SECURITY: webhook rejected, missing stripe-signature header")
            raise SignatureVerificationFailed("Missing stripe-signature header")
        try:
            return stripe.Webhook.construct_event(payload, signature_header, self.webhook_secret)
        except ValueError as e:
            logger.warning("SECURITY: webhook rejected, invalid payload: %s", e)
            raise SignatureVerificationFailed(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            logger.warning("SECURITY: webhook rejected, invalid signature: %s", e)
            raise SignatureVerificationFailed(f"Invalid signature: {e}") from e

    async def dispatch(self, event: Any) -> DispatchOutcome:
        event_id = payload_field(event, "id")
        event_type = payload_field(event, "type", "unknown")
        event_ts = payload_field(event, "created")
        obj = payload_field(payload_field(event, "data"), "object") or {}

        if event_id and await self.ledger.seen(event_id):
            logger.info("Duplicate webhook %s [id: %s] already processed", event_type, event_id)
            return DispatchOutcome(event_id=event_id, event_type=event_type, status=DUPLICATE)

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled event type: %s [id: %s] - acknowledging", event_type, event_id)
            return DispatchOutcome(event_id=event_id, event_type=event_type, status=UNHANDLED)

        logger.info("Received webhook event: %s [id: %s]", event_type, event_id)
        try:
            outcome = await handler(obj, event_ts, event_id)
        except ProviderError as e:
            # Acknowledged anyway to avoid redelivery storms; not marked processed
            logger.error(
                "Provider failure while handling %s [id: %s], needs manual reconciliation: %s",
                event_type, event_id, e,
            )
            return DispatchOutcome(event_id=event_id, event_type=event_type, status=DEFERRED, detail=str(e))

        if event_id:
            await self.ledger.mark_processed(event_id, event_type)
        outcome.event_id = event_id
        outcome.event_type = event_type
        logger.info("Processed %s [id: %s]: %s", event_type, event_id, outcome.status)
        return outcome

    # ========== Helpers ==========

    async def _mutate(self, user_id: str, compute) -> Optional[SubscriptionRecord]:
        return await mutate(self.store, self.locks, user_id, compute, self.mutation_attempts)

    def _resolve(self, snapshot: ProviderSubscriptionSnapshot, record: SubscriptionRecord) -> Optional[PriceEntry]:
        entry = self.prices.resolve_tier(snapshot.metadata, snapshot.price_id)
        if entry is None and record.tier != Tier.BASIC:
            # Unknown price with no tier metadata: keep the paid tier we already have
            entry = PriceEntry(record.tier, record.interval or BillingInterval.MONTH)
        return entry

    @staticmethod
    def _outcome(status: str, before: Optional[SubscriptionRecord], after: Optional[SubscriptionRecord],
                 user_id: Optional[str], detail: Optional[str] = None) -> DispatchOutcome:
        if status == PROCESSED and after is not None and before is not None and after.version == before.version:
            status = UNCHANGED
        return DispatchOutcome(event_type="", status=status, user_id=user_id, detail=detail)

    def _refresh(self, snapshot, event_ts, event_label):
        """Compute function that applies a snapshot to the record if the event is not stale"""
        def compute(current: Optional[SubscriptionRecord]) -> Optional[SubscriptionRecord]:
            if current is None:
                return None
            if _is_stale(current, event_ts):
                logger.warning(
                    "Ignore old %s: db_ts=%s > event_ts=%s (user %s)",
                    event_label, current.provider_event_ts, event_ts, current.user_id,
                )
                return None
            entry = self._resolve(snapshot, current)
            if entry is None:
                logger.error(
                    "Cannot resolve tier for subscription %s (price %s), leaving user %s unchanged",
                    snapshot.id, snapshot.price_id, current.user_id,
                )
                return None
            proposed = current.with_snapshot(snapshot, entry.tier, entry.interval, event_ts)
            if proposed.same_state_as(current) and proposed.provider_event_ts == current.provider_event_ts:
                return None
            return proposed
        return compute

    # ========== Handlers ==========

    async def handle_checkout_completed(self, session, event_ts=None, event_id=None) -> DispatchOutcome:
        metadata = payload_dict(payload_field(session, "metadata"))
        user_id = metadata.get(META_USER_ID)
        customer_id = reference_id(payload_field(session, "customer"))
        subscription_id = reference_id(payload_field(session, "subscription"))

        if not subscription_id:
            logger.warning("checkout.session.completed without subscription (session %s)", payload_field(session, "id"))
            return self._outcome(UNCHANGED, None, None, user_id, "no subscription on session")

        record = await self.store.get(user_id) if user_id else None
        if record is None and customer_id:
            record = await self.store.find_by_customer(customer_id)
        if record is None and not user_id:
            logger.warning("User not found for checkout session: customer_id=%s", customer_id)
            return self._outcome(NOT_FOUND, None, None, None)
        user_id = user_id or record.user_id

        try:
            snapshot = await self.policy.call_read(self.gateway.retrieve_subscription, subscription_id)
        except ProviderNotFound:
            logger.warning("Subscription %s from checkout no longer exists at provider", subscription_id)
            return self._outcome(UNCHANGED, record, record, user_id, "subscription not found")
        except ProviderTransientError as e:
            entry = self.prices.resolve_tier(metadata, None)
            if entry is None:
                raise
            logger.warning(
                "Could not retrieve subscription %s (%s), using checkout metadata tier %s",
                subscription_id, e, entry.tier.value,
            )
            snapshot = ProviderSubscriptionSnapshot(
                id=subscription_id,
                customer_id=customer_id,
                status=SubscriptionStatus.ACTIVE.value,
                metadata={META_TIER: entry.tier.value, META_INTERVAL: entry.interval.value},
            )

        refresh = self._refresh(snapshot, event_ts, "checkout.session.completed")

        def compute(current):
            base = current or SubscriptionRecord.basic(user_id, external_customer_id=customer_id)
            proposed = refresh(base)
            if proposed is None and current is None:
                return base
            return proposed

        after = await self._mutate(user_id, compute)
        if after.has_subscription and (record is None or not record.has_subscription):
            await send_quietly(self.notifier, user_id, SUBSCRIPTION_STARTED, {"tier": after.tier.value})
        return self._outcome(PROCESSED, record, after, user_id)

    async def handle_subscription_created(self, subscription, event_ts=None, event_id=None) -> DispatchOutcome:
        snapshot = ProviderSubscriptionSnapshot.from_provider(subscription)
        record = await self.store.find_by_customer(snapshot.customer_id)
        if record is None:
            logger.warning("User not found with customer_id=%s (subscription %s)", snapshot.customer_id, snapshot.id)
            return self._outcome(NOT_FOUND, None, None, None)

        refresh = self._refresh(snapshot, event_ts, "customer.subscription.created")

        def compute(current):
            if current is None:
                return None
            if (
                current.has_subscription
                and current.external_subscription_id != snapshot.id
                and not current.cancel_at_period_end
            ):
                logger.warning(
                    "User %s already has live subscription %s, ignoring created %s",
                    current.user_id, current.external_subscription_id, snapshot.id,
                )
                return None
            return refresh(current)

        after = await self._mutate(record.user_id, compute)
        return self._outcome(PROCESSED, record, after, record.user_id)

    async def handle_subscription_updated(self, subscription, event_ts=None, event_id=None) -> DispatchOutcome:
        snapshot = ProviderSubscriptionSnapshot.from_provider(subscription)
        record = await self.store.find_by_subscription(snapshot.id)
        reattach = False
        if record is None and snapshot.is_active:
            # A read-repair may have collapsed the record while this subscription was not active
            record = await self.store.find_by_customer(snapshot.customer_id)
            reattach = record is not None and not record.has_subscription
            if not reattach:
                record = None
        if record is None:
            logger.warning("User not found for subscription %s (event %s)", snapshot.id, event_id)
            return self._outcome(NOT_FOUND, None, None, None)
        if reattach:
            logger.info("Re-attaching active subscription %s to user %s", snapshot.id, record.user_id)

        refresh = self._refresh(snapshot, event_ts, "customer.subscription.updated")

        def compute(current):
            if current is None:
                return None
            if reattach:
                if current.has_subscription:
                    return None
            elif current.external_subscription_id != snapshot.id:
                return None
            return refresh(current)

        after = await self._mutate(record.user_id, compute)
        if after is not None and after.version != record.version:
            if record.cancel_at_period_end and not after.cancel_at_period_end:
                await send_quietly(self.notifier, record.user_id, SUBSCRIPTION_RENEWED, {"tier": after.tier.value})
            if record.tier != after.tier:
                await send_quietly(self.notifier, record.user_id, TIER_CHANGED, {
                    "previous_tier": record.tier.value, "new_tier": after.tier.value,
                })
        return self._outcome(PROCESSED, record, after, record.user_id)

    async def handle_subscription_deleted(self, subscription, event_ts=None, event_id=None) -> DispatchOutcome:
        snapshot = ProviderSubscriptionSnapshot.from_provider(subscription)
        ended_id = snapshot.id
        record = await self.store.find_by_subscription(ended_id)
        if record is None:
            logger.warning("User not found for deleted subscription %s (event %s)", ended_id, event_id)
            return self._outcome(NOT_FOUND, None, None, None)

        if record.scheduled_downgrade_tier is not None:
            return await self._complete_downgrade(record, snapshot, event_ts)

        def compute(current):
            if current is None or current.external_subscription_id != ended_id:
                return None
            return current.collapsed().evolve(provider_event_ts=newest_ts(current.provider_event_ts, event_ts))

        after = await self._mutate(record.user_id, compute)
        if after is not None and after.version != record.version:
            logger.info("User %s subscription %s ended, collapsed to basic", record.user_id, ended_id)
            await send_quietly(self.notifier, record.user_id, SUBSCRIPTION_ENDED, {"previous_tier": record.tier.value})
        return self._outcome(PROCESSED, record, after, record.user_id)

    async def _complete_downgrade(self, record, ended: ProviderSubscriptionSnapshot, event_ts) -> DispatchOutcome:
        """Start the replacement subscription at the scheduled lower tier"""
        after = await self.downgrades.complete(
            record, ended.id, ended.customer_id, ended.default_payment_method, event_ts
        )
        if after is not None and after.version != record.version:
            await send_quietly(self.notifier, record.user_id, DOWNGRADE_COMPLETE, {
                "previous_tier": record.tier.value, "new_tier": after.tier.value,
            })
        return self._outcome(PROCESSED, record, after, record.user_id)

    async def _invoice_record(self, invoice, event_label, event_id) -> Optional[SubscriptionRecord]:
        customer_id = reference_id(payload_field(invoice, "customer"))
        record = await self.store.find_by_customer(customer_id)
        if record is None:
            logger.warning("User not found with customer_id=%s for %s (event %s)", customer_id, event_label, event_id)
        return record

    async def handle_payment_succeeded(self, invoice, event_ts=None, event_id=None) -> DispatchOutcome:
        record = await self._invoice_record(invoice, "invoice.payment_succeeded", event_id)
        if record is None:
            return self._outcome(NOT_FOUND, None, None, None)
        invoice_sub = _invoice_subscription_id(invoice)

        def compute(current):
            if current is None or current.status != SubscriptionStatus.PAST_DUE or not current.has_subscription:
                return None
            if invoice_sub and invoice_sub != current.external_subscription_id:
                return None
            if _is_stale(current, event_ts):
                return None
            return current.evolve(
                status=SubscriptionStatus.ACTIVE,
                provider_event_ts=newest_ts(current.provider_event_ts, event_ts),
            )

        after = await self._mutate(record.user_id, compute)
        if after is not None and after.version != record.version:
            await send_quietly(self.notifier, record.user_id, PAYMENT_RECOVERED, {"tier": after.tier.value})
        return self._outcome(PROCESSED, record, after, record.user_id)

    async def handle_payment_failed(self, invoice, event_ts=None, event_id=None) -> DispatchOutcome:
        record = await self._invoice_record(invoice, "invoice.payment_failed", event_id)
        if record is None:
            return self._outcome(NOT_FOUND, None, None, None)
        invoice_sub = _invoice_subscription_id(invoice)

        def compute(current):
            if current is None or not current.has_subscription:
                return None
            if invoice_sub and invoice_sub != current.external_subscription_id:
                return None
            if current.status == SubscriptionStatus.PAST_DUE or _is_stale(current, event_ts):
                return None
            return current.evolve(
                status=SubscriptionStatus.PAST_DUE,
                provider_event_ts=newest_ts(current.provider_event_ts, event_ts),
            )

        after = await self._mutate(record.user_id, compute)
        if after is not None and after.version != record.version:
            await send_quietly(self.notifier, record.user_id, PAYMENT_FAILED, {
                "amount_due": payload_field(invoice, "amount_due"),
                "currency": payload_field(invoice, "currency"),
            })
        return self._outcome(PROCESSED, record, after, record.user_id)
