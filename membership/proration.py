"""
Proration preview
Turns a tier/interval change into a charge estimate using the provider's
upcoming invoice preview. Never mutates state.
"""
import logging
import re
from typing import List, Optional

from membership.errors import NoActiveSubscription
from membership.gateway import BillingGateway
from membership.gateway_policy import GatewayCallPolicy
from membership.models import (
    BillingInterval,
    InvoiceLine,
    ProrationLine,
    ProrationPreview,
    SubscriptionRecord,
    Tier,
)
from membership.pricing import PriceTable
from membership.utils.time import utcnow

logger = logging.getLogger(__name__)

PRORATION = "proration"
REGULAR = "regular"

# Stripe describes mid-cycle adjustments as "Remaining time on ..." / "Unused time on ..."
_PARTIAL_PERIOD = re.compile(r"\b(remaining|unused)\b", re.IGNORECASE)


def classify_line(line: InvoiceLine) -> str:
    if line.proration or _PARTIAL_PERIOD.search(line.description or ""):
        return PRORATION
    return REGULAR


def partition_lines(lines: List[InvoiceLine]) -> List[ProrationLine]:
    return [
        ProrationLine(description=line.description, amount_cents=line.amount_cents, kind=classify_line(line))
        for line in lines
    ]


class ProrationCalculator:
    def __init__(self, gateway: BillingGateway, prices: PriceTable, policy: GatewayCallPolicy):
        self.gateway = gateway
        self.prices = prices
        self.policy = policy

    async def preview(
        self,
        record: SubscriptionRecord,
        target_tier: Tier,
        target_interval: Optional[BillingInterval] = None,
    ) -> ProrationPreview:
        target_tier = Tier(target_tier)
        if target_tier == Tier.BASIC:
            # basic has no billed price, nothing to ask the provider
            return ProrationPreview(proration_date=utcnow())

        if not record.has_subscription:
            raise NoActiveSubscription("No active subscription to change")

        interval = BillingInterval(target_interval or record.interval or BillingInterval.MONTH)
        price_id = self.prices.price_for(target_tier, interval)

        invoice = await self.policy.call_read(
            self.gateway.preview_invoice,
            record.external_customer_id,
            record.external_subscription_id,
            [{"price": price_id}],
        )

        line_items = partition_lines(invoice.lines)
        immediate = sum(line.amount_cents for line in line_items if line.kind == PRORATION)
        next_amount = sum(line.amount_cents for line in line_items if line.kind == REGULAR)
        logger.debug(
            "Proration preview for user %s -> %s/%s: immediate=%d next=%d",
            record.user_id, target_tier.value, interval.value, immediate, next_amount,
        )
        return ProrationPreview(
            immediate_charge_cents=immediate,
            next_billing_amount_cents=next_amount,
            currency=invoice.currency,
            line_items=line_items,
            proration_date=utcnow(),
            next_billing_date=record.current_period_end,
        )
