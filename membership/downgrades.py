"""
Scheduled downgrade completion
When a subscription carrying a downgrade marker ends, a replacement
subscription is started at the scheduled tier and the record is swapped onto it.

The webhook dispatcher (subscription.deleted) and reconciliation (a read that
finds the subscription already ended) both finish downgrades here. The
replacement is created with one idempotency key per ended subscription, so
however many times or ways the end is observed, one replacement exists.
"""
import logging
from typing import Optional

from membership.errors import InvalidTierOrInterval, ProviderError
from membership.gateway import BillingGateway
from membership.gateway_policy import GatewayCallPolicy
from membership.models import (
    META_INTERVAL,
    META_TIER,
    META_USER_ID,
    BillingInterval,
    SubscriptionRecord,
    newest_ts,
)
from membership.pricing import PriceTable
from membership.store import SubscriptionStore, UserLocks, mutate

logger = logging.getLogger(__name__)


def replacement_idempotency_key(ended_subscription_id: str) -> str:
    """One replacement subscription per ended subscription"""
    return f"downgrade:{ended_subscription_id}"


class DowngradeCompleter:
    def __init__(
        self,
        gateway: BillingGateway,
        store: SubscriptionStore,
        locks: UserLocks,
        prices: PriceTable,
        policy: GatewayCallPolicy,
        mutation_attempts: int = 5,
    ):
        self.gateway = gateway
        self.store = store
        self.locks = locks
        self.prices = prices
        self.policy = policy
        self.mutation_attempts = mutation_attempts

    async def complete(
        self,
        record: SubscriptionRecord,
        ended_id: str,
        customer_id: Optional[str] = None,
        default_payment_method: Optional[str] = None,
        event_ts: Optional[int] = None,
    ) -> Optional[SubscriptionRecord]:
        """Start the replacement subscription and swap the record onto it.

        Falls back to basic when the scheduled tier has no configured price.
        Provider errors propagate and leave the record untouched, so the
        caller can try again later with the same idempotency key.
        """
        tier = record.scheduled_downgrade_tier
        interval = record.scheduled_downgrade_interval or record.interval or BillingInterval.MONTH
        customer_id = record.external_customer_id or customer_id
        try:
            price_id = self.prices.price_for(tier, interval)
        except InvalidTierOrInterval as e:
            logger.error("Scheduled downgrade for user %s has no price (%s), collapsing to basic", record.user_id, e)
            price_id = None

        replacement = None
        if price_id and customer_id:
            payment_method = default_payment_method or await self._fallback_payment_method(customer_id)
            replacement = await self.policy.call_write(
                self.gateway.create_subscription,
                customer_id,
                price_id,
                {META_USER_ID: record.user_id, META_TIER: tier.value, META_INTERVAL: interval.value},
                replacement_idempotency_key(ended_id),
                default_payment_method=payment_method,
            )
            logger.info(
                "Created replacement subscription %s (%s/%s) for user %s",
                replacement.id, tier.value, interval.value, record.user_id,
            )

        def compute(current):
            if current is None:
                return None
            if replacement is not None and current.external_subscription_id == replacement.id:
                return None
            if current.external_subscription_id != ended_id:
                return None
            base = current.collapsed().evolve(provider_event_ts=newest_ts(current.provider_event_ts, event_ts))
            if replacement is None:
                return base
            return base.with_snapshot(replacement, tier, interval)

        return await mutate(self.store, self.locks, record.user_id, compute, self.mutation_attempts)

    async def _fallback_payment_method(self, customer_id: str) -> Optional[str]:
        try:
            methods = await self.policy.call_read(self.gateway.list_payment_methods, customer_id)
        except ProviderError as e:
            logger.warning("Could not list payment methods for %s: %s", customer_id, e)
            return None
        return methods[0].id if methods else None
