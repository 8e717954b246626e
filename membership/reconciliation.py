"""
Reconciliation
Re-derives a user's SubscriptionRecord from the provider's authoritative
subscription state. Divergence is expected and always resolved in favour of
the provider snapshot.

A record carrying a scheduled downgrade is never simply collapsed: when its
subscription has ended the downgrade is completed the same way the
subscription.deleted webhook completes it.
"""
import logging
from typing import Optional

from membership.downgrades import DowngradeCompleter
from membership.errors import ProviderError, ProviderNotFound
from membership.gateway import BillingGateway
from membership.gateway_policy import GatewayCallPolicy
from membership.models import BillingInterval, ProviderSubscriptionSnapshot, SubscriptionRecord, SubscriptionStatus
from membership.notifications import DOWNGRADE_COMPLETE, LoggingNotifier, Notifier, send_quietly
from membership.pricing import PriceEntry, PriceTable
from membership.store import SubscriptionStore, UserLocks, mutate

logger = logging.getLogger(__name__)

ENDED_STATUSES = (SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED)


class ReconciliationEngine:
    def __init__(
        self,
        gateway: BillingGateway,
        store: SubscriptionStore,
        locks: UserLocks,
        prices: PriceTable,
        policy: GatewayCallPolicy,
        mutation_attempts: int = 5,
        notifier: Optional[Notifier] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.locks = locks
        self.prices = prices
        self.policy = policy
        self.mutation_attempts = mutation_attempts
        self.notifier = notifier or LoggingNotifier()
        self.downgrades = DowngradeCompleter(gateway, store, locks, prices, policy, mutation_attempts)

    async def reconcile(self, user_id: str) -> SubscriptionRecord:
        record = await self.store.get(user_id)
        if record is None:
            logger.info("No subscription record for user %s, creating basic", user_id)
            return await mutate(
                self.store, self.locks, user_id,
                lambda current: None if current is not None else SubscriptionRecord.basic(user_id),
                self.mutation_attempts,
            )

        # Basic needs no external check
        if not record.has_subscription:
            return record

        subscription_id = record.external_subscription_id
        snapshot: Optional[ProviderSubscriptionSnapshot] = None
        missing = False
        try:
            snapshot = await self.policy.call_read(self.gateway.retrieve_subscription, subscription_id)
        except ProviderNotFound:
            missing = True
            logger.warning("Subscription %s for user %s not found at provider", subscription_id, user_id)
        except ProviderError as e:
            logger.error("Could not retrieve subscription %s for user %s: %s", subscription_id, user_id, e)

        if record.scheduled_downgrade_tier is not None and (snapshot is None or not snapshot.is_active):
            return await self._reconcile_scheduled_downgrade(record, snapshot, missing)

        def compute(current: Optional[SubscriptionRecord]) -> Optional[SubscriptionRecord]:
            # A webhook may have moved the record to another subscription since the read
            if current is None or current.external_subscription_id != subscription_id:
                return None
            if snapshot is None or not snapshot.is_active:
                if snapshot is not None:
                    logger.info("Subscription %s is %s, collapsing user %s to basic", subscription_id, snapshot.status, user_id)
                else:
                    logger.info("Collapsing user %s to basic", user_id)
                return current.collapsed()
            entry = self.prices.resolve_tier(snapshot.metadata, snapshot.price_id)
            if entry is None:
                logger.warning(
                    "Unknown price %s on subscription %s, keeping tier %s for user %s",
                    snapshot.price_id, subscription_id, current.tier.value, user_id,
                )
                entry = PriceEntry(current.tier, current.interval or BillingInterval.MONTH)
            proposed = current.with_snapshot(snapshot, entry.tier, entry.interval)
            if proposed.same_state_as(current):
                return None
            logger.info("Reconciled user %s with provider state of %s", user_id, subscription_id)
            return proposed

        return await mutate(self.store, self.locks, user_id, compute, self.mutation_attempts)

    async def _reconcile_scheduled_downgrade(
        self,
        record: SubscriptionRecord,
        snapshot: Optional[ProviderSubscriptionSnapshot],
        missing: bool,
    ) -> SubscriptionRecord:
        user_id = record.user_id
        subscription_id = record.external_subscription_id

        if missing or (snapshot is not None and snapshot.record_status in ENDED_STATUSES):
            try:
                after = await self.downgrades.complete(
                    record,
                    subscription_id,
                    snapshot.customer_id if snapshot else None,
                    snapshot.default_payment_method if snapshot else None,
                )
            except ProviderError as e:
                logger.error(
                    "Could not complete scheduled downgrade of user %s off %s, keeping record: %s",
                    user_id, subscription_id, e,
                )
                return record
            if after is not None and after.version != record.version:
                logger.info("Completed scheduled downgrade of user %s to %s", user_id, after.tier.value)
                await send_quietly(self.notifier, user_id, DOWNGRADE_COMPLETE, {
                    "previous_tier": record.tier.value, "new_tier": after.tier.value,
                })
            return after or record

        # The marker is kept until the subscription can be read
        if snapshot is None:
            logger.warning("Keeping scheduled downgrade of user %s until %s can be read", user_id, subscription_id)
            return record

        def compute(current: Optional[SubscriptionRecord]) -> Optional[SubscriptionRecord]:
            if current is None or current.external_subscription_id != subscription_id:
                return None
            proposed = current.evolve(status=snapshot.record_status)
            if proposed.same_state_as(current):
                return None
            logger.info("Subscription %s of user %s is %s, downgrade still scheduled", subscription_id, user_id, snapshot.status)
            return proposed

        return await mutate(self.store, self.locks, user_id, compute, self.mutation_attempts)
