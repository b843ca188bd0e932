"""
Quota Ledger: Pre-flight Admission Decision
===========================================

PURPOSE:
    Decides whether a request needing ``tokens_required`` units may proceed
    against a subscription snapshot. Pure: reads the snapshot and the clock,
    never mutates anything.

DECISION ORDER (first match wins):
    1. No subscription              → deny, remaining 0
    2. status != "active"           → deny, remaining 0
    3. current_period_end < now     → deny, remaining 0
    4. quota - used < required      → deny, remaining = quota - used
    5. otherwise                    → admit, remaining = quota - used - required

    A period ending exactly now is still current. A request needing exactly
    the remaining units is admitted with remaining 0.

Denials are values, not exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from meterproxy.models.billing import ACTIVE, SubscriptionSnapshot

__all__ = ["QuotaCheck", "check_quota"]

NO_SUBSCRIPTION = "no_subscription"
INACTIVE = "inactive"
PERIOD_ENDED = "period_ended"
INSUFFICIENT_QUOTA = "insufficient_quota"


@dataclass(frozen=True)
class QuotaCheck:
    """Result of a check_quota() call."""

    allowed: bool
    remaining: int
    message: Optional[str] = None
    reason: Optional[str] = None


def check_quota(
    subscription: Optional[SubscriptionSnapshot],
    tokens_required: int,
    now: Optional[datetime] = None,
) -> QuotaCheck:
    if isinstance(tokens_required, bool) or not isinstance(tokens_required, int) or tokens_required <= 0:
        raise ValueError(f"tokens_required must be a positive integer, got {tokens_required!r}")

    if subscription is None:
        return QuotaCheck(False, 0, "No active subscription found", NO_SUBSCRIPTION)

    if subscription.status != ACTIVE:
        return QuotaCheck(False, 0, f"Subscription is {subscription.status}", INACTIVE)

    now = now or datetime.now(timezone.utc)
    if subscription.current_period_end < now:
        return QuotaCheck(False, 0, "Subscription period has ended", PERIOD_ENDED)

    remaining = subscription.quota - subscription.used
    if remaining < tokens_required:
        return QuotaCheck(
            False,
            remaining,
            f"Insufficient quota. Remaining: {remaining}, Required: {tokens_required}",
            INSUFFICIENT_QUOTA,
        )

    return QuotaCheck(True, remaining - tokens_required)
