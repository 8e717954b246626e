"""
Unit tests for price id <-> tier resolution
"""
import pytest

from membership.errors import InvalidTierOrInterval
from membership.models import BillingInterval, Tier
from membership.pricing import PriceEntry, PriceTable
from membership.tests.conftest import PRICE_ELITE_YEAR, PRICE_PREMIUM_MONTH


def test_price_for_and_resolve(prices):
    assert prices.price_for(Tier.PREMIUM, BillingInterval.MONTH) == PRICE_PREMIUM_MONTH
    assert prices.resolve(PRICE_ELITE_YEAR) == PriceEntry(Tier.ELITE, BillingInterval.YEAR)
    assert prices.resolve("price_unknown") is None
    assert prices.resolve(None) is None


def test_basic_has_no_price(prices):
    with pytest.raises(InvalidTierOrInterval):
        prices.price_for(Tier.BASIC, BillingInterval.MONTH)


def test_unconfigured_price_is_invalid():
    table = PriceTable({(Tier.PREMIUM, BillingInterval.MONTH): "price_p", (Tier.ELITE, BillingInterval.YEAR): None})
    with pytest.raises(InvalidTierOrInterval):
        table.price_for(Tier.ELITE, BillingInterval.YEAR)


def test_metadata_tier_wins_over_price(prices):
    entry = prices.resolve_tier({"tier": "elite", "interval": "year"}, PRICE_PREMIUM_MONTH)
    assert entry == PriceEntry(Tier.ELITE, BillingInterval.YEAR)


def test_falls_back_to_price_without_metadata(prices):
    assert prices.resolve_tier({}, PRICE_ELITE_YEAR) == PriceEntry(Tier.ELITE, BillingInterval.YEAR)
    assert prices.resolve_tier({"tier": "bogus"}, PRICE_ELITE_YEAR) == PriceEntry(Tier.ELITE, BillingInterval.YEAR)
    assert prices.resolve_tier({}, "price_unknown") is None
