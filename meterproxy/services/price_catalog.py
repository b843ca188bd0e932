"""
Price Catalog
=============

Static mapping from Stripe price id to plan tier and monthly unit quota.
Price ids come from settings so each deployment can point at its own
Stripe dashboard; tiers and quotas are fixed.

Unknown price ids fall back to the lowest tier and log a configuration
warning. They never fail the webhook.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from meterproxy.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Plan:
    tier: str
    quota: int


BASIC = Plan("basic", 10_000)
PRO = Plan("pro", 50_000)
PREMIUM = Plan("premium", 200_000)


class PriceCatalog:
    def __init__(self, prices: Dict[str, Plan], default: Plan = BASIC) -> None:
        self._prices = dict(prices)
        self.default = default

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriceCatalog":
        return cls(
            {
                settings.stripe_price_basic: BASIC,
                settings.stripe_price_pro: PRO,
                settings.stripe_price_premium: PREMIUM,
            }
        )

    def resolve(self, price_id: Optional[str]) -> Plan:
        plan = self._prices.get(price_id or "")
        if plan is None:
            logger.warning(
                "Unknown Stripe price id %r; falling back to tier %s. "
                "Configure METERPROXY_STRIPE_PRICE_* to match the Stripe dashboard.",
                price_id,
                self.default.tier,
            )
            return self.default
        return plan
