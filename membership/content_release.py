"""
Tier-gated content release schedule
Each tier unlocks items a number of days after signup. A user sees the
schedules of their effective tier and every lower tier.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from pydantic import BaseModel

from membership import tier_policy
from membership.models import SubscriptionStatus, Tier
from membership.utils.time import ensure_utc, utcnow


class ScheduledContent(BaseModel):
    content_id: str
    days_after_signup: int
    type: str  # exercise | module
    name: str


class ReleasedContent(ScheduledContent):
    tier: Tier
    release_date: datetime


def _exercise(content_id: str, days: int, name: str) -> ScheduledContent:
    return ScheduledContent(content_id=content_id, days_after_signup=days, type="exercise", name=name)


def _module(content_id: str, days: int, name: str) -> ScheduledContent:
    return ScheduledContent(content_id=content_id, days_after_signup=days, type="module", name=name)


CONTENT_RELEASE_SCHEDULE: Dict[Tier, List[ScheduledContent]] = {
    # 5 core exercises immediately, no further releases
    Tier.BASIC: [_exercise(f"basic-exercise-{i}", 0, f"Core Exercise {i}") for i in range(1, 6)],
    # 10 exercises immediately, then one new exercise every 30 days
    Tier.PREMIUM: (
        [_exercise(f"premium-exercise-{i}", 0, f"Premium Exercise {i}") for i in range(1, 11)]
        + [_exercise(f"premium-monthly-{i}", 30 * i, f"Monthly Exercise {i}") for i in range(1, 7)]
    ),
    Tier.ELITE: [
        _module("elite-module-1", 0, "Strength & Balance Module"),
        _module("elite-module-2", 0, "Flexibility & Mobility Module"),
        _module("elite-module-3", 0, "Cardio & Endurance Module"),
        _module("elite-module-4", 30, "Joint Health Module"),
        _module("elite-module-5", 60, "Posture & Alignment Module"),
        _module("elite-module-6", 90, "Functional Movement Module"),
        _module("elite-module-7", 120, "Recovery & Relaxation Module"),
        _module("elite-module-8", 150, "Balance & Coordination Module"),
        _module("elite-module-9", 180, "Strength & Power Module"),
    ],
}


def release_date(signup_date: datetime, days_after_signup: int) -> datetime:
    return ensure_utc(signup_date) + timedelta(days=days_after_signup)


def _included_tiers(tier: Union[Tier, str], status: Optional[SubscriptionStatus]) -> List[Tier]:
    top = tier_policy.rank(tier_policy.effective_tier(tier, status))
    return [t for t in Tier if tier_policy.rank(t) <= top]


def _schedule(tier, signup_date, status) -> List[ReleasedContent]:
    items = []
    for included in _included_tiers(tier, status):
        for content in CONTENT_RELEASE_SCHEDULE[included]:
            items.append(ReleasedContent(
                **content.model_dump(),
                tier=included,
                release_date=release_date(signup_date, content.days_after_signup),
            ))
    return items


def available_content(
    tier: Union[Tier, str],
    signup_date: datetime,
    now: Optional[datetime] = None,
    status: Optional[SubscriptionStatus] = SubscriptionStatus.ACTIVE,
) -> List[ReleasedContent]:
    """All content released to a user at `now`"""
    now = ensure_utc(now) if now else utcnow()
    return [item for item in _schedule(tier, signup_date, status) if now >= item.release_date]


def is_content_available(
    content_id: str,
    tier: Union[Tier, str],
    signup_date: datetime,
    now: Optional[datetime] = None,
    status: Optional[SubscriptionStatus] = SubscriptionStatus.ACTIVE,
) -> bool:
    return any(item.content_id == content_id for item in available_content(tier, signup_date, now, status))


def next_release(
    tier: Union[Tier, str],
    signup_date: datetime,
    now: Optional[datetime] = None,
    status: Optional[SubscriptionStatus] = SubscriptionStatus.ACTIVE,
) -> Optional[ReleasedContent]:
    """Earliest item not yet released, or None once the schedule is exhausted"""
    now = ensure_utc(now) if now else utcnow()
    upcoming = [item for item in _schedule(tier, signup_date, status) if item.release_date > now]
    if not upcoming:
        return None
    return min(upcoming, key=lambda item: (item.release_date, item.content_id))
