"""
Tier ordering and access rules
Pure functions, no state
"""
from typing import FrozenSet, Optional, Union

from membership.models import SubscriptionRecord, SubscriptionStatus, Tier


# Plan hierarchy for comparison (lower index = lower tier)
TIER_RANK = {
    Tier.BASIC: 0,
    Tier.PREMIUM: 1,
    Tier.ELITE: 2,
}

PAID_TIERS = frozenset({Tier.PREMIUM, Tier.ELITE})


def rank(tier: Union[Tier, str]) -> int:
    return TIER_RANK[Tier(tier)]


def is_paid(tier: Union[Tier, str]) -> bool:
    return Tier(tier) in PAID_TIERS


def is_upgrade(current: Tier, target: Tier) -> bool:
    return rank(target) > rank(current)


def is_downgrade(current: Tier, target: Tier) -> bool:
    return rank(target) < rank(current)


def effective_tier(tier: Union[Tier, str], status: Optional[SubscriptionStatus] = SubscriptionStatus.ACTIVE) -> Tier:
    """Tier used for access checks.

    Any status other than active collapses to basic, even while the stored tier
    still shows the paid value pending reconciliation.
    """
    if status is not None and SubscriptionStatus(status) != SubscriptionStatus.ACTIVE:
        return Tier.BASIC
    return Tier(tier)


def record_effective_tier(record: SubscriptionRecord) -> Tier:
    return effective_tier(record.tier, record.status)


def has_access(
    user_tier: Union[Tier, str],
    required_tier: Union[Tier, str],
    status: Optional[SubscriptionStatus] = SubscriptionStatus.ACTIVE,
) -> bool:
    return rank(effective_tier(user_tier, status)) >= rank(required_tier)


def record_has_access(record: SubscriptionRecord, required_tier: Union[Tier, str]) -> bool:
    return has_access(record.tier, required_tier, record.status)


def valid_upgrade_targets(current: Union[Tier, str]) -> FrozenSet[Tier]:
    return frozenset(t for t in Tier if rank(t) > rank(current))


def valid_downgrade_targets(current: Union[Tier, str]) -> FrozenSet[Tier]:
    return frozenset(t for t in Tier if rank(t) < rank(current))
