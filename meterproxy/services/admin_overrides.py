"""
Administrative overrides on a user's active subscription.

    increase_quota  quota += value            (value > 0)
    reset_quota     used = 0
    extend_period   period end += period_days (period_days > 0)

Overrides go through the same versioned update as metering and webhooks,
so they never lose a concurrent charge.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import timedelta
from enum import Enum
from typing import Optional

from meterproxy.core.errors import MeterProxyError
from meterproxy.models.billing import SubscriptionSnapshot
from meterproxy.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


class OverrideAction(str, Enum):
    INCREASE_QUOTA = "increase_quota"
    RESET_QUOTA = "reset_quota"
    EXTEND_PERIOD = "extend_period"


def increase_quota(subscription: SubscriptionSnapshot, value: int) -> SubscriptionSnapshot:
    return dataclasses.replace(subscription, quota=subscription.quota + value)


def reset_usage(subscription: SubscriptionSnapshot) -> SubscriptionSnapshot:
    return dataclasses.replace(subscription, used=0)


def extend_period(subscription: SubscriptionSnapshot, period_days: int) -> SubscriptionSnapshot:
    return dataclasses.replace(
        subscription,
        current_period_end=subscription.current_period_end + timedelta(days=period_days),
    )


def apply_override(
    store: SubscriptionStore,
    user_id: str,
    action: OverrideAction,
    value: Optional[int] = None,
    period_days: Optional[int] = None,
    max_attempts: int = 5,
) -> SubscriptionSnapshot:
    """Apply one override to the user's active subscription and return it."""
    if action is OverrideAction.INCREASE_QUOTA:
        if not value or value <= 0:
            raise MeterProxyError("MPX-API-002", detail="Invalid quota value", context={"value": value})
        mutate = lambda s: increase_quota(s, value)  # noqa: E731
    elif action is OverrideAction.RESET_QUOTA:
        mutate = reset_usage
    elif action is OverrideAction.EXTEND_PERIOD:
        if not period_days or period_days <= 0:
            raise MeterProxyError(
                "MPX-API-002", detail="Invalid period days", context={"period_days": period_days}
            )
        mutate = lambda s: extend_period(s, period_days)  # noqa: E731
    else:
        raise MeterProxyError("MPX-API-002", detail=f"Invalid action {action!r}")

    subscription = store.find_active_for_user(user_id)
    if subscription is None:
        raise MeterProxyError("MPX-API-003", detail=f"no active subscription for user {user_id}")

    updated = store.update_with_retry(subscription.id, mutate, max_attempts)
    if updated is None:
        raise MeterProxyError("MPX-API-003", detail=f"subscription {subscription.id} disappeared")

    logger.info(
        "Admin override %s applied to subscription %s (user %s)",
        action.value,
        subscription.stripe_subscription_id,
        user_id,
    )
    return updated
