"""
Price -> tier resolution table
Maps provider price identifiers to (tier, interval), configured per deployment
"""
from typing import Dict, Mapping, NamedTuple, Optional, Tuple

from membership.errors import InvalidTierOrInterval
from membership.models import META_INTERVAL, META_TIER, BillingInterval, Tier


class PriceEntry(NamedTuple):
    tier: Tier
    interval: BillingInterval


class PriceTable:
    """Bidirectional lookup between price ids and (tier, interval)"""

    def __init__(self, prices: Mapping[Tuple[Tier, BillingInterval], str]):
        self._by_key: Dict[Tuple[Tier, BillingInterval], str] = {}
        self._by_price: Dict[str, PriceEntry] = {}
        for (tier, interval), price_id in prices.items():
            if not price_id:
                continue
            key = (Tier(tier), BillingInterval(interval))
            if key[0] == Tier.BASIC:
                raise ValueError("basic tier has no billed price")
            self._by_key[key] = price_id
            self._by_price[price_id] = PriceEntry(*key)

    @classmethod
    def from_settings(cls, settings) -> "PriceTable":
        return cls({
            (Tier.PREMIUM, BillingInterval.MONTH): settings.price_premium_monthly,
            (Tier.PREMIUM, BillingInterval.YEAR): settings.price_premium_yearly,
            (Tier.ELITE, BillingInterval.MONTH): settings.price_elite_monthly,
            (Tier.ELITE, BillingInterval.YEAR): settings.price_elite_yearly,
        })

    def price_for(self, tier: Tier, interval: BillingInterval) -> str:
        price_id = self._by_key.get((Tier(tier), BillingInterval(interval)))
        if not price_id:
            raise InvalidTierOrInterval(
                f"No price configured for tier '{Tier(tier).value}' with interval '{BillingInterval(interval).value}'"
            )
        return price_id

    def resolve(self, price_id: Optional[str]) -> Optional[PriceEntry]:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def resolve_tier(self, metadata: Mapping[str, str], price_id: Optional[str]) -> Optional[PriceEntry]:
        """Explicit tier metadata wins; otherwise fall back to the billed price"""
        by_price = self.resolve(price_id)
        raw_tier = (metadata or {}).get(META_TIER)
        if raw_tier:
            try:
                tier = Tier(raw_tier)
            except ValueError:
                tier = None
            if tier is not None and tier != Tier.BASIC:
                raw_interval = metadata.get(META_INTERVAL)
                try:
                    interval = BillingInterval(raw_interval)
                except ValueError:
                    interval = by_price.interval if by_price else BillingInterval.MONTH
                return PriceEntry(tier, interval)
        return by_price
