"""
Subscription Store
==================

Storage access for subscription rows and usage records.

Every write to ``subscriptions`` is a conditional update::

    UPDATE subscriptions SET ..., version = version + 1
     WHERE id = :id AND version = :version

and succeeds only if nobody else wrote the row since it was read. Callers
re-read and re-decide on conflict; there are no in-process locks, so any
number of workers may share the database.

Methods accept an optional ``session`` so several operations can share one
transaction; without one, each call runs and commits on its own.
"""

from __future__ import annotations

import dataclasses
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from meterproxy.core.database import Database
from meterproxy.core.errors import MeterProxyError
from meterproxy.models.billing import (
    ACTIVE,
    Subscription,
    SubscriptionSnapshot,
    UsageRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

__all__ = ["SubscriptionStore"]


class SubscriptionStore:
    def __init__(self, database: Database) -> None:
        self.database = database

    @contextmanager
    def _scope(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with self.database.session() as own:
            yield own
            own.commit()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, subscription_id: str, session: Optional[Session] = None) -> Optional[SubscriptionSnapshot]:
        stmt = select(Subscription).where(Subscription.id == subscription_id)
        return self._first(stmt, session)

    def get_by_external_id(
        self, stripe_subscription_id: str, session: Optional[Session] = None
    ) -> Optional[SubscriptionSnapshot]:
        stmt = select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
        return self._first(stmt, session)

    def find_active_for_user(self, user_id: str, session: Optional[Session] = None) -> Optional[SubscriptionSnapshot]:
        """Latest active subscription for a user, or None.

        More than one active row can exist briefly during plan changes; the
        one with the latest period end wins.
        """
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == ACTIVE)
            .order_by(Subscription.current_period_end.desc())
            .execution_options(populate_existing=True)
        )
        with self._scope(session) as s:
            rows = s.exec(stmt).all()
            if not rows:
                return None
            if len(rows) > 1:
                logger.warning(
                    "Multiple active subscriptions for user %s (%d); using %s",
                    user_id,
                    len(rows),
                    rows[0].stripe_subscription_id,
                )
            return SubscriptionSnapshot.from_row(rows[0])

    def list_for_user(self, user_id: str, session: Optional[Session] = None) -> List[SubscriptionSnapshot]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at)
            .execution_options(populate_existing=True)
        )
        with self._scope(session) as s:
            return [SubscriptionSnapshot.from_row(row) for row in s.exec(stmt).all()]

    def _first(self, stmt, session: Optional[Session]) -> Optional[SubscriptionSnapshot]:
        # Rows may have been changed by a Core UPDATE in this same session
        stmt = stmt.execution_options(populate_existing=True)
        with self._scope(session) as s:
            row = s.exec(stmt).first()
            return SubscriptionSnapshot.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(
        self,
        *,
        user_id: str,
        stripe_subscription_id: str,
        tier: str,
        quota: int,
        status: str,
        current_period_end: datetime,
        last_event_at: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> SubscriptionSnapshot:
        """Insert a new subscription with ``used = 0``.

        Raises sqlalchemy IntegrityError if the Stripe subscription id exists.
        """
        row = Subscription(
            user_id=user_id,
            stripe_subscription_id=stripe_subscription_id,
            tier=tier,
            quota=quota,
            used=0,
            status=status,
            current_period_end=current_period_end,
            last_event_at=last_event_at,
        )
        with self._scope(session) as s:
            s.add(row)
            s.flush()
            snapshot = SubscriptionSnapshot.from_row(row)
        logger.info(
            "Subscription %s created for user %s (tier=%s, quota=%d)",
            stripe_subscription_id,
            user_id,
            tier,
            quota,
        )
        return snapshot

    def compare_and_swap(
        self,
        before: SubscriptionSnapshot,
        after: SubscriptionSnapshot,
        session: Optional[Session] = None,
    ) -> bool:
        """Write ``after`` if the row is still at ``before.version``.

        Returns False when another writer got there first.
        """
        if before.id != after.id:
            raise ValueError("compare_and_swap across different subscriptions")

        stmt = (
            update(Subscription)
            .where(Subscription.id == before.id, Subscription.version == before.version)
            .values(
                user_id=after.user_id,
                tier=after.tier,
                quota=after.quota,
                used=after.used,
                status=after.status,
                current_period_end=after.current_period_end,
                last_event_at=after.last_event_at,
                version=before.version + 1,
                updated_at=utcnow(),
            )
        )
        with self._scope(session) as s:
            result = s.connection().execute(stmt)
            swapped = result.rowcount == 1

        if not swapped:
            logger.debug("Version conflict on subscription %s at version %d", before.id, before.version)
        return swapped

    def update_with_retry(
        self,
        subscription_id: str,
        mutate: Callable[[SubscriptionSnapshot], SubscriptionSnapshot],
        max_attempts: int = 5,
        after_write: Optional[Callable[[Session, SubscriptionSnapshot], None]] = None,
    ) -> Optional[SubscriptionSnapshot]:
        """Read, apply ``mutate``, compare-and-swap; repeat on conflict.

        Each attempt is its own transaction. ``after_write`` runs inside the
        winning attempt's transaction with the stored snapshot, so whatever
        it writes commits together with the update. Returns the stored
        snapshot, or None if the subscription does not exist.
        """
        for attempt in range(1, max_attempts + 1):
            with self.database.session() as session:
                current = self.get(subscription_id, session=session)
                if current is None:
                    return None
                desired = mutate(current)
                if desired == current:
                    stored = current
                elif self.compare_and_swap(current, desired, session=session):
                    stored = dataclasses.replace(desired, version=current.version + 1)
                else:
                    stored = None

                if stored is not None:
                    if after_write is not None:
                        after_write(session, stored)
                    session.commit()
                    return stored

            logger.info(
                "Retrying update of subscription %s after conflict (attempt %d/%d)",
                subscription_id,
                attempt,
                max_attempts,
            )

        raise MeterProxyError(
            "MPX-DB-001",
            detail=f"subscription {subscription_id} kept changing under update",
            context={"subscription_id": subscription_id, "attempts": max_attempts},
        )

    # ------------------------------------------------------------------
    # Usage records (append-only)
    # ------------------------------------------------------------------

    def append_usage(
        self,
        *,
        user_id: str,
        subscription_id: str,
        request_id: str,
        units: int,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> None:
        record = UsageRecord(
            user_id=user_id,
            subscription_id=subscription_id,
            request_id=request_id,
            units=units,
            provider=provider,
            model=model,
        )
        with self._scope(session) as s:
            s.add(record)

    def list_usage(self, user_id: str, limit: int = 100, session: Optional[Session] = None) -> List[UsageRecord]:
        stmt = (
            select(UsageRecord)
            .where(UsageRecord.user_id == user_id)
            .order_by(UsageRecord.id.desc())
            .limit(limit)
        )
        with self._scope(session) as s:
            records = s.exec(stmt).all()
            for record in records:
                s.expunge(record)
            return list(records)
