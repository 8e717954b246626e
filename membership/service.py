"""
Subscription service
Facade used by the rest of the application: register, status, upgrade,
downgrade, cancel, reactivate and proration preview.

Validation errors are raised before any provider call. Provider writes are made
once with an idempotency key and never retried; the local record is then
updated from the provider's answer in a single mutation.
"""
import logging
import uuid
from typing import List, Optional, Union

from membership import tier_policy
from membership.config import Settings, get_settings
from membership.content_release import ReleasedContent, available_content
from membership.errors import (
    ActionNotApplicable,
    AlreadyAtTargetTier,
    BillingActionFailed,
    InvalidTierOrInterval,
    NoActiveSubscription,
    ProviderError,
    ProviderNotFound,
    ProviderTransientError,
    ProviderUnavailable,
    RecordNotFound,
)
from membership.gateway import BillingGateway
from membership.gateway_policy import GatewayCallPolicy
from membership.models import (
    META_DOWNGRADE_INTERVAL,
    META_DOWNGRADE_TIER,
    META_INTERVAL,
    META_TIER,
    META_USER_ID,
    ActionResult,
    BillingInterval,
    PaymentMethodSummary,
    ProrationPreview,
    SubscriptionRecord,
    SubscriptionStatusView,
    Tier,
)
from membership.notifications import (
    CANCELLATION_SCHEDULED,
    DOWNGRADE_SCHEDULED,
    LoggingNotifier,
    Notifier,
    SUBSCRIPTION_ENDED,
    SUBSCRIPTION_RENEWED,
    SUBSCRIPTION_STARTED,
    TIER_CHANGED,
    send_quietly,
)
from membership.pricing import PriceTable
from membership.proration import ProrationCalculator
from membership.reconciliation import ReconciliationEngine
from membership.store import SubscriptionStore, UserLocks, mutate

logger = logging.getLogger(__name__)


def parse_tier(value: Union[Tier, str, None]) -> Tier:
    try:
        return Tier(str(value).lower()) if not isinstance(value, Tier) else value
    except ValueError:
        raise InvalidTierOrInterval(f"Invalid tier: {value}")


def parse_interval(value: Union[BillingInterval, str, None]) -> Optional[BillingInterval]:
    if value is None or isinstance(value, BillingInterval):
        return value
    try:
        return BillingInterval(str(value).lower())
    except ValueError:
        raise InvalidTierOrInterval(f"Invalid interval: {value}")


def status_view(record: SubscriptionRecord) -> SubscriptionStatusView:
    effective = tier_policy.record_effective_tier(record)
    return SubscriptionStatusView(
        user_id=record.user_id,
        tier=record.tier,
        effective_tier=effective,
        status=record.status,
        interval=record.interval,
        current_period_end=record.current_period_end,
        cancel_at_period_end=record.cancel_at_period_end,
        scheduled_downgrade_tier=record.scheduled_downgrade_tier,
        scheduled_downgrade_interval=record.scheduled_downgrade_interval,
        is_free=effective == Tier.BASIC,
    )


class SubscriptionService:
    def __init__(
        self,
        gateway: BillingGateway,
        store: SubscriptionStore,
        prices: PriceTable,
        settings: Optional[Settings] = None,
        locks: Optional[UserLocks] = None,
        policy: Optional[GatewayCallPolicy] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.store = store
        self.prices = prices
        self.locks = locks or UserLocks()
        self.policy = policy or GatewayCallPolicy.from_settings(self.settings)
        self.notifier = notifier or LoggingNotifier()
        self.mutation_attempts = self.settings.record_mutation_attempts
        self.reconciler = ReconciliationEngine(
            gateway, store, self.locks, prices, self.policy, self.mutation_attempts, notifier=self.notifier
        )
        self.proration = ProrationCalculator(gateway, prices, self.policy)

    # ========== Helpers ==========

    async def _mutate(self, user_id: str, compute) -> Optional[SubscriptionRecord]:
        return await mutate(self.store, self.locks, user_id, compute, self.mutation_attempts)

    async def _require_record(self, user_id: str) -> SubscriptionRecord:
        record = await self.store.get(user_id)
        if record is None:
            raise RecordNotFound(f"No subscription record for user {user_id}")
        return record

    async def _require_subscription(self, user_id: str) -> SubscriptionRecord:
        record = await self._require_record(user_id)
        if not record.has_subscription:
            raise NoActiveSubscription("No paid subscription found for this user")
        return record

    async def _translate(self, user_id: str, exc: ProviderError) -> Exception:
        if isinstance(exc, ProviderTransientError):
            logger.error("Billing provider unavailable for user %s: %s", user_id, exc)
            return ProviderUnavailable("Billing provider is temporarily unavailable, please try again", {"reason": str(exc)})
        if isinstance(exc, ProviderNotFound):
            # Local record is stale; heal it before reporting
            logger.warning("Subscription for user %s missing at provider, reconciling", user_id)
            await self.reconciler.reconcile(user_id)
            return NoActiveSubscription("Subscription no longer exists at the billing provider")
        logger.error("Billing provider rejected request for user %s: %s", user_id, exc)
        return BillingActionFailed(str(exc))

    async def _write(self, user_id: str, fn, *args, **kwargs):
        try:
            return await self.policy.call_write(fn, *args, **kwargs)
        except ProviderError as e:
            raise await self._translate(user_id, e) from e

    async def _read(self, user_id: str, fn, *args, **kwargs):
        try:
            return await self.policy.call_read(fn, *args, **kwargs)
        except ProviderError as e:
            raise await self._translate(user_id, e) from e

    @staticmethod
    def _idempotency_key(action: str, user_id: str) -> str:
        return f"{action}:{user_id}:{uuid.uuid4().hex}"

    # ========== Operations ==========

    async def register_basic(self, user_id: str) -> SubscriptionRecord:
        """Create the basic/active record; an existing record (paid or not) is left alone"""
        created = []

        def compute(current):
            if current is not None:
                return None
            created.append(True)
            return SubscriptionRecord.basic(user_id)

        record = await self._mutate(user_id, compute)
        if created:
            logger.info("Registered user %s on basic tier", user_id)
            await send_quietly(self.notifier, user_id, SUBSCRIPTION_STARTED, {"tier": Tier.BASIC.value})
        return record

    async def status(self, user_id: str) -> SubscriptionStatusView:
        record = await self.reconciler.reconcile(user_id)
        return status_view(record)

    async def upgrade(
        self,
        user_id: str,
        target_tier: Union[Tier, str],
        interval: Union[BillingInterval, str, None] = BillingInterval.MONTH,
        email: Optional[str] = None,
    ) -> ActionResult:
        target = parse_tier(target_tier)
        interval = parse_interval(interval) or BillingInterval.MONTH
        if target == Tier.BASIC:
            raise InvalidTierOrInterval("Basic tier requires no billing, use register_basic")

        record = await self.store.get(user_id) or await self.register_basic(user_id)

        if record.has_subscription:
            if target == record.tier and interval == record.interval:
                raise AlreadyAtTargetTier(f"Already subscribed to {target.value} ({interval.value})")
            if tier_policy.is_downgrade(record.tier, target):
                raise InvalidTierOrInterval(
                    f"{target.value} is lower than current tier {record.tier.value}, use downgrade"
                )
        price_id = self.prices.price_for(target, interval)

        if not record.has_subscription:
            return await self._start_checkout(record, target, interval, price_id, email)

        subscription_id = record.external_subscription_id
        snapshot = await self._write(
            user_id,
            self.gateway.change_subscription_item,
            subscription_id,
            price_id,
            "create_prorations",
            metadata={META_TIER: target.value, META_INTERVAL: interval.value},
            idempotency_key=self._idempotency_key("upgrade", user_id),
        )

        def compute(current):
            if current is None or current.external_subscription_id != subscription_id:
                return None
            return current.with_snapshot(snapshot, target, interval)

        updated = await self._mutate(user_id, compute)
        logger.info("User %s changed subscription to %s (%s)", user_id, target.value, interval.value)
        await send_quietly(self.notifier, user_id, TIER_CHANGED, {
            "previous_tier": record.tier.value, "new_tier": updated.tier.value, "interval": interval.value,
        })
        return ActionResult(success=True, message=f"Subscription changed to {target.value} ({interval.value})")

    async def _start_checkout(self, record, target, interval, price_id, email) -> ActionResult:
        user_id = record.user_id
        customer_id = await self._write(user_id, self.gateway.ensure_customer, record, email)
        if customer_id != record.external_customer_id:
            def remember_customer(current):
                if current is None or current.external_customer_id == customer_id:
                    return None
                return current.evolve(external_customer_id=customer_id)

            await self._mutate(user_id, remember_customer)

        session = await self._write(
            user_id,
            self.gateway.start_checkout,
            customer_id,
            price_id,
            self.settings.checkout_success_url,
            self.settings.checkout_cancel_url,
            {META_USER_ID: user_id, META_TIER: target.value, META_INTERVAL: interval.value},
        )
        logger.info("Checkout session %s created for user %s (%s/%s)", session.session_id, user_id, target.value, interval.value)
        return ActionResult(
            success=True,
            session_id=session.session_id,
            redirect_url=session.url,
            message=f"Checkout started for {target.value} ({interval.value})",
        )

    async def downgrade(
        self,
        user_id: str,
        target_tier: Union[Tier, str],
        interval: Union[BillingInterval, str, None] = None,
    ) -> ActionResult:
        target = parse_tier(target_tier)
        interval = parse_interval(interval)
        record = await self._require_subscription(user_id)

        if target == record.tier:
            raise AlreadyAtTargetTier(f"Already on {target.value}")
        if not tier_policy.is_downgrade(record.tier, target):
            raise InvalidTierOrInterval(f"{target.value} is not lower than current tier {record.tier.value}")

        if target == Tier.BASIC:
            interval = None
            metadata = {}
        else:
            interval = interval or record.interval or BillingInterval.MONTH
            # Fail now rather than when the subscription ends
            self.prices.price_for(target, interval)
            metadata = {META_DOWNGRADE_TIER: target.value, META_DOWNGRADE_INTERVAL: interval.value}

        subscription_id = record.external_subscription_id
        snapshot = await self._write(
            user_id, self.gateway.schedule_cancel_at_period_end, subscription_id, metadata
        )

        def compute(current):
            if current is None or current.external_subscription_id != subscription_id:
                return None
            return current.evolve(
                cancel_at_period_end=True,
                scheduled_downgrade_tier=target if target != Tier.BASIC else None,
                scheduled_downgrade_interval=interval,
                current_period_end=snapshot.current_period_end or current.current_period_end,
            )

        updated = await self._mutate(user_id, compute)
        effective_date = updated.current_period_end.isoformat()
        if target == Tier.BASIC:
            await send_quietly(self.notifier, user_id, CANCELLATION_SCHEDULED, {"effective_date": effective_date})
            message = "Your subscription will be downgraded to the free Basic plan at the end of your billing period"
        else:
            await send_quietly(self.notifier, user_id, DOWNGRADE_SCHEDULED, {
                "new_tier": target.value, "effective_date": effective_date,
            })
            message = f"Your subscription will change to {target.value} ({interval.value}) at the end of your billing period"
        logger.info("User %s scheduled downgrade %s -> %s", user_id, record.tier.value, target.value)
        return ActionResult(success=True, message=message)

    async def cancel(self, user_id: str, immediate: bool = False) -> ActionResult:
        record = await self._require_subscription(user_id)
        subscription_id = record.external_subscription_id

        if immediate:
            await self._write(
                user_id,
                self.gateway.cancel_immediately,
                subscription_id,
                idempotency_key=f"cancel:{subscription_id}",
            )

            def collapse(current):
                if current is None or current.external_subscription_id != subscription_id:
                    return None
                return current.collapsed()

            await self._mutate(user_id, collapse)
            logger.info("User %s canceled subscription %s immediately", user_id, subscription_id)
            await send_quietly(self.notifier, user_id, SUBSCRIPTION_ENDED, {"previous_tier": record.tier.value})
            return ActionResult(success=True, message="Your subscription has been canceled immediately")

        snapshot = await self._write(user_id, self.gateway.schedule_cancel_at_period_end, subscription_id, {})

        def flag(current):
            if current is None or current.external_subscription_id != subscription_id:
                return None
            return current.evolve(
                cancel_at_period_end=True,
                scheduled_downgrade_tier=None,
                scheduled_downgrade_interval=None,
                current_period_end=snapshot.current_period_end or current.current_period_end,
            )

        updated = await self._mutate(user_id, flag)
        await send_quietly(self.notifier, user_id, CANCELLATION_SCHEDULED, {
            "effective_date": updated.current_period_end.isoformat(),
        })
        return ActionResult(success=True, message="Subscription will be canceled at the end of the billing period")

    async def reactivate(self, user_id: str) -> ActionResult:
        record = await self._require_subscription(user_id)
        if not record.cancel_at_period_end:
            raise ActionNotApplicable("Subscription has no pending cancellation or downgrade")

        subscription_id = record.external_subscription_id
        snapshot = await self._write(user_id, self.gateway.clear_scheduled_cancel, subscription_id)

        def compute(current):
            if current is None or current.external_subscription_id != subscription_id:
                return None
            return current.evolve(
                cancel_at_period_end=False,
                scheduled_downgrade_tier=None,
                scheduled_downgrade_interval=None,
                current_period_end=snapshot.current_period_end or current.current_period_end,
            )

        await self._mutate(user_id, compute)
        await send_quietly(self.notifier, user_id, SUBSCRIPTION_RENEWED, {"tier": record.tier.value})
        return ActionResult(success=True, message="Your subscription has been reactivated")

    async def preview_change(
        self,
        user_id: str,
        target_tier: Union[Tier, str],
        interval: Union[BillingInterval, str, None] = None,
    ) -> ProrationPreview:
        target = parse_tier(target_tier)
        interval = parse_interval(interval)
        record = await self._require_record(user_id)
        try:
            return await self.proration.preview(record, target, interval)
        except ProviderError as e:
            raise await self._translate(user_id, e) from e

    async def list_payment_methods(self, user_id: str) -> List[PaymentMethodSummary]:
        record = await self._require_record(user_id)
        if not record.external_customer_id:
            return []
        return await self._read(user_id, self.gateway.list_payment_methods, record.external_customer_id)

    async def released_content(self, user_id: str) -> List[ReleasedContent]:
        """Content unlocked for the user's effective tier, counted from signup"""
        record = await self.reconciler.reconcile(user_id)
        return available_content(record.tier, record.signup_date, status=record.status)
