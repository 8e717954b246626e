"""
Subscription data model definitions
Tier/status enums, the per-user SubscriptionRecord, provider snapshots and API result shapes
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime
from pydantic import BaseModel, Field, model_validator

from membership.utils.time import FAR_FUTURE, from_unix, utcnow


class Tier(str, Enum):
    """Entitlement tiers (total order basic < premium < elite)"""
    BASIC = "basic"
    PREMIUM = "premium"
    ELITE = "elite"


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class SubscriptionStatus(str, Enum):
    """Provider subscription statuses mirrored on the local record"""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"


# Metadata keys written on the provider subscription
META_USER_ID = "user_id"
META_TIER = "tier"
META_INTERVAL = "interval"
META_DOWNGRADE_TIER = "downgrade_to_tier"
META_DOWNGRADE_INTERVAL = "downgrade_to_interval"

# Fields that describe entitlement state (excludes bookkeeping: version, timestamps)
STATE_FIELDS = (
    "tier",
    "status",
    "external_customer_id",
    "external_subscription_id",
    "price_id",
    "interval",
    "current_period_end",
    "cancel_at_period_end",
    "scheduled_downgrade_tier",
    "scheduled_downgrade_interval",
)


def coerce_status(raw: Optional[str]) -> SubscriptionStatus:
    """Map a provider status string onto SubscriptionStatus.

    Statuses the provider added later (e.g. "paused") are not entitled, so they
    are stored as incomplete.
    """
    try:
        return SubscriptionStatus(raw)
    except ValueError:
        return SubscriptionStatus.INCOMPLETE


def newest_ts(current: Optional[int], candidate: Optional[int]) -> Optional[int]:
    if candidate is None:
        return current
    if current is None:
        return int(candidate)
    return max(int(current), int(candidate))


class SubscriptionRecord(BaseModel):
    """Durable local truth for one user's entitlement"""
    user_id: str
    tier: Tier = Tier.BASIC
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    interval: Optional[BillingInterval] = None
    current_period_end: datetime = FAR_FUTURE
    cancel_at_period_end: bool = False
    scheduled_downgrade_tier: Optional[Tier] = None
    scheduled_downgrade_interval: Optional[BillingInterval] = None
    provider_event_ts: Optional[int] = None  # newest provider event.created applied
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_invariants(self):
        if self.external_subscription_id is None:
            if self.tier != Tier.BASIC or self.status != SubscriptionStatus.ACTIVE:
                raise ValueError("record without external subscription must be basic/active")
        elif self.tier == Tier.BASIC:
            raise ValueError("basic tier cannot carry an external subscription")
        return self

    @classmethod
    def basic(cls, user_id: str, external_customer_id: Optional[str] = None, **extra) -> "SubscriptionRecord":
        """Canonical free-tier record"""
        return cls(user_id=user_id, external_customer_id=external_customer_id, **extra)

    @property
    def has_subscription(self) -> bool:
        return self.external_subscription_id is not None

    @property
    def signup_date(self) -> datetime:
        """Registration time; the content release schedule counts days from here"""
        return self.created_at

    @property
    def ends_in_basic(self) -> bool:
        return self.cancel_at_period_end and self.scheduled_downgrade_tier is None

    def evolve(self, **changes) -> "SubscriptionRecord":
        """Validated copy with changes applied (model_copy would skip the invariant check)"""
        return SubscriptionRecord(**{**self.model_dump(), **changes})

    def collapsed(self) -> "SubscriptionRecord":
        """Basic/active copy of this record; keeps identity, customer and bookkeeping"""
        return SubscriptionRecord.basic(
            self.user_id,
            external_customer_id=self.external_customer_id,
            provider_event_ts=self.provider_event_ts,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def with_snapshot(
        self,
        snapshot: "ProviderSubscriptionSnapshot",
        tier: Tier,
        interval: Optional[BillingInterval],
        event_ts: Optional[int] = None,
    ) -> "SubscriptionRecord":
        """Apply one provider snapshot as a whole.

        The downgrade marker is only carried while a cancellation is pending;
        otherwise any scheduled downgrade is cleared.
        """
        marker = snapshot.downgrade_marker() if snapshot.cancel_at_period_end else None
        return self.evolve(
            tier=tier,
            interval=interval,
            status=snapshot.record_status,
            external_customer_id=snapshot.customer_id or self.external_customer_id,
            external_subscription_id=snapshot.id,
            price_id=snapshot.price_id or self.price_id,
            current_period_end=snapshot.current_period_end or self.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            scheduled_downgrade_tier=marker[0] if marker else None,
            scheduled_downgrade_interval=marker[1] if marker else None,
            provider_event_ts=newest_ts(self.provider_event_ts, event_ts),
        )

    def state(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in STATE_FIELDS}

    def same_state_as(self, other: "SubscriptionRecord") -> bool:
        return self.state() == other.state()


def payload_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a provider payload (plain dict or SDK object)"""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def payload_dict(obj: Any) -> Dict[str, Any]:
    if not obj:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    if callable(getattr(obj, "to_dict", None)):
        return obj.to_dict()
    return {key: obj[key] for key in obj.keys()}


def _first_item(subscription: Any) -> Any:
    items = payload_field(subscription, "items")
    data = payload_field(items, "data") if items is not None and not isinstance(items, list) else items
    if not data:
        return None
    return data[0]


def reference_id(value: Any) -> Optional[str]:
    """Expandable provider references arrive either as an id string or an object"""
    if value is None or isinstance(value, str):
        return value
    return payload_field(value, "id")


class ProviderSubscriptionSnapshot(BaseModel):
    """Authoritative subscription state as currently held by the billing provider"""
    id: str
    customer_id: Optional[str] = None
    status: str
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)
    default_payment_method: Optional[str] = None

    @classmethod
    def from_provider(cls, subscription: Any) -> "ProviderSubscriptionSnapshot":
        item = _first_item(subscription)
        # Newer API versions moved the period end onto subscription items
        period_end = payload_field(subscription, "current_period_end") or payload_field(item, "current_period_end")
        return cls(
            id=payload_field(subscription, "id"),
            customer_id=reference_id(payload_field(subscription, "customer")),
            status=payload_field(subscription, "status", "incomplete"),
            price_id=reference_id(payload_field(item, "price")),
            current_period_end=from_unix(period_end),
            cancel_at_period_end=bool(payload_field(subscription, "cancel_at_period_end", False)),
            metadata={k: str(v) for k, v in payload_dict(payload_field(subscription, "metadata")).items() if v not in (None, "")},
            default_payment_method=reference_id(payload_field(subscription, "default_payment_method")),
        )

    @property
    def record_status(self) -> SubscriptionStatus:
        return coerce_status(self.status)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    def downgrade_marker(self) -> Optional[Tuple[Tier, Optional[BillingInterval]]]:
        """Scheduled downgrade target carried in metadata, if any"""
        raw_tier = self.metadata.get(META_DOWNGRADE_TIER)
        if not raw_tier:
            return None
        try:
            tier = Tier(raw_tier)
        except ValueError:
            return None
        if tier == Tier.BASIC:
            return None
        raw_interval = self.metadata.get(META_DOWNGRADE_INTERVAL)
        try:
            interval = BillingInterval(raw_interval) if raw_interval else None
        except ValueError:
            interval = None
        return tier, interval


class CheckoutSession(BaseModel):
    session_id: str
    url: Optional[str] = None


class InvoiceLine(BaseModel):
    description: str = ""
    amount_cents: int = 0
    proration: Optional[bool] = None  # provider's own flag, when it sends one


class InvoicePreview(BaseModel):
    total_cents: int = 0
    currency: str = "usd"
    lines: List[InvoiceLine] = Field(default_factory=list)


class PaymentMethodSummary(BaseModel):
    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None


class ProrationLine(BaseModel):
    description: str
    amount_cents: int
    kind: str  # "proration" or "regular"


class ProrationPreview(BaseModel):
    """Charge estimate for a tier/interval change"""
    immediate_charge_cents: int = 0
    next_billing_amount_cents: int = 0
    currency: str = "usd"
    line_items: List[ProrationLine] = Field(default_factory=list)
    proration_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None


class ActionResult(BaseModel):
    """Result shape returned by facade operations"""
    success: bool
    session_id: Optional[str] = None
    redirect_url: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


class SubscriptionStatusView(BaseModel):
    """Authoritative read of a user's subscription"""
    user_id: str
    tier: Tier
    effective_tier: Tier
    status: SubscriptionStatus
    interval: Optional[BillingInterval] = None
    current_period_end: datetime
    cancel_at_period_end: bool = False
    scheduled_downgrade_tier: Optional[Tier] = None
    scheduled_downgrade_interval: Optional[BillingInterval] = None
    is_free: bool = True
