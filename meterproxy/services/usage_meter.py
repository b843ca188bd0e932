"""
Usage Meter: Charging Units Against a Subscription
==================================================

PURPOSE:
    State transitions for the per-period usage counter, and the persisted
    reserve → settle / cancel flow used by the assistant endpoint.

    Pure transitions (return a new snapshot, never mutate):
      - commit()                - add charged units; no admission re-check
      - release()               - return reserved units (clamped at zero)
      - reset_for_new_period()  - zero usage, move the period end

    Persisted flow (UsageMeter):
      1. reserve()  - check_quota on the latest snapshot, then conditionally
                      write commit(snapshot, estimate). A version conflict
                      means another writer moved the row: re-read, re-check.
      2. settle()   - adjust the reservation to the actual cost and append
                      a UsageRecord.
      3. cancel()   - release the whole estimate when the provider failed.

    Two concurrent requests can never both be admitted against the same
    remaining units: only one conditional write per version succeeds.

OVERRUN POLICY:
    If the provider reports more units than were reserved, the actual cost
    is charged even when it takes ``used`` past ``quota``, and a warning is
    logged. The next request is then denied until the period resets.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlmodel import Session

from meterproxy.core.errors import MeterProxyError
from meterproxy.models.billing import SubscriptionSnapshot
from meterproxy.services.quota_ledger import QuotaCheck, check_quota
from meterproxy.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

__all__ = [
    "Admission",
    "Reservation",
    "UsageMeter",
    "commit",
    "release",
    "reset_for_new_period",
]


def commit(subscription: SubscriptionSnapshot, actual_units: int) -> SubscriptionSnapshot:
    """Charge ``actual_units`` against the subscription."""
    if actual_units < 0:
        raise ValueError(f"actual_units must be non-negative, got {actual_units}")
    return dataclasses.replace(subscription, used=subscription.used + actual_units)


def release(subscription: SubscriptionSnapshot, units: int) -> SubscriptionSnapshot:
    if units < 0:
        raise ValueError(f"units must be non-negative, got {units}")
    return dataclasses.replace(subscription, used=max(0, subscription.used - units))


def reset_for_new_period(subscription: SubscriptionSnapshot, new_period_end: datetime) -> SubscriptionSnapshot:
    """Start a new billing period: usage back to zero, everything else kept."""
    return dataclasses.replace(subscription, used=0, current_period_end=new_period_end)


@dataclass(frozen=True)
class Reservation:
    """Units held against a subscription while a completion is in flight."""

    subscription_id: str
    user_id: str
    units: int


@dataclass(frozen=True)
class Admission:
    """Result of a reserve() call."""

    check: QuotaCheck
    reservation: Optional[Reservation] = None

    @property
    def allowed(self) -> bool:
        return self.reservation is not None


class UsageMeter:
    def __init__(self, store: SubscriptionStore, max_attempts: int = 5) -> None:
        self.store = store
        self.max_attempts = max_attempts

    def reserve(self, user_id: str, estimate: int, now: Optional[datetime] = None) -> Admission:
        """Admit and hold ``estimate`` units for the user, or return the denial."""
        for attempt in range(1, self.max_attempts + 1):
            snapshot = self.store.find_active_for_user(user_id)
            check = check_quota(snapshot, estimate, now=now)
            if not check.allowed:
                logger.info("Quota denied for user %s: %s", user_id, check.message)
                return Admission(check)

            if self.store.compare_and_swap(snapshot, commit(snapshot, estimate)):
                return Admission(check, Reservation(snapshot.id, user_id, estimate))

            logger.info(
                "Reservation for user %s lost a version race (attempt %d/%d)",
                user_id,
                attempt,
                self.max_attempts,
            )

        raise MeterProxyError(
            "MPX-DB-001",
            detail=f"could not reserve {estimate} units for user {user_id}",
            context={"user_id": user_id, "attempts": self.max_attempts},
        )

    def settle(
        self,
        reservation: Reservation,
        actual_units: int,
        request_id: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Optional[SubscriptionSnapshot]:
        """Replace the reserved estimate with the actual cost and record it."""
        if actual_units < 0:
            raise ValueError(f"actual_units must be non-negative, got {actual_units}")

        delta = actual_units - reservation.units
        if delta > 0:
            logger.warning(
                "Actual cost %d exceeds reserved %d for subscription %s; charging actual",
                actual_units,
                reservation.units,
                reservation.subscription_id,
            )

        def adjust(s: SubscriptionSnapshot) -> SubscriptionSnapshot:
            return commit(s, delta) if delta >= 0 else release(s, -delta)

        def record(session: Session, _stored: SubscriptionSnapshot) -> None:
            self.store.append_usage(
                user_id=reservation.user_id,
                subscription_id=reservation.subscription_id,
                request_id=request_id,
                units=actual_units,
                provider=provider,
                model=model,
                session=session,
            )

        # The charge and its usage record commit in one transaction
        return self.store.update_with_retry(
            reservation.subscription_id, adjust, self.max_attempts, after_write=record
        )

    def cancel(self, reservation: Reservation) -> Optional[SubscriptionSnapshot]:
        """Give back the whole reservation; nothing is charged."""
        logger.info(
            "Releasing %d reserved units on subscription %s",
            reservation.units,
            reservation.subscription_id,
        )
        return self.store.update_with_retry(
            reservation.subscription_id,
            lambda s: release(s, reservation.units),
            self.max_attempts,
        )
