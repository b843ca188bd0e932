"""
Subscription Reconciler: Applying Stripe Lifecycle Events
=========================================================

PURPOSE:
    Keeps the local subscription mirror consistent with Stripe's webhook
    feed, which may deliver an event more than once, late, or out of order.

EVENTS:
    checkout.session.completed       link the Stripe customer to the user
                                     named in metadata.userId
    customer.subscription.created    upsert by Stripe subscription id;
    customer.subscription.updated    tier/quota/status/period end replaced,
                                     usage never touched
    customer.subscription.deleted    status → canceled, row kept; a delete
                                     seen first stores a canceled row
    invoice.payment_succeeded        usage reset for the new period (the
                                     only path that zeroes usage)
    anything else                    logged and acknowledged

EXACTLY-ONCE APPLICATION:
    Each event id is inserted into ``processed_events`` in the same
    transaction as its effect. A replay finds the id and is skipped; two
    concurrent deliveries race on the unique constraint and the loser sees
    a duplicate on retry. Subscription writes are versioned
    compare-and-swap updates; a conflict rolls back the whole transaction
    and the event is re-applied against a fresh read.

STALE EVENTS:
    Subscription events older (by Stripe ``created`` timestamp) than the
    newest one already applied to the row are skipped. Events created in
    the same second apply in delivery order. Cancellation is terminal: a
    delete applies however late it arrives, and no later event moves a
    canceled row back to another status.

MISSING LINKAGE:
    Events that cannot be tied to a local user or subscription are logged
    and acknowledged but not recorded as processed, so they can be
    replayed once the linkage exists.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from meterproxy.core.database import Database
from meterproxy.core.errors import MeterProxyError
from meterproxy.models.billing import (
    CANCELED,
    INCOMPLETE,
    ProcessedEvent,
    SubscriptionSnapshot,
    utcnow,
)
from meterproxy.services import stripe_fields
from meterproxy.services.price_catalog import PriceCatalog
from meterproxy.services.subscription_store import SubscriptionStore
from meterproxy.services.usage_meter import reset_for_new_period
from meterproxy.services.user_store import UserStore

logger = logging.getLogger(__name__)

__all__ = ["EventOutcome", "LifecycleEvent", "SubscriptionReconciler"]

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


class EventOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNLINKED = "unlinked"
    STALE = "stale"


@dataclass(frozen=True)
class LifecycleEvent:
    """A verified Stripe event: id, type, creation time and data.object."""

    id: str
    type: str
    created: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "LifecycleEvent":
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise MeterProxyError("MPX-WHK-003", detail="event without id or type")
        obj = (payload.get("data") or {}).get("object") or {}
        return cls(
            id=event_id,
            type=event_type,
            created=stripe_fields.event_created_at(payload),
            data=obj,
        )


class _VersionConflict(Exception):
    pass


class SubscriptionReconciler:
    def __init__(
        self,
        database: Database,
        store: SubscriptionStore,
        users: UserStore,
        catalog: PriceCatalog,
        max_attempts: int = 5,
    ) -> None:
        self.database = database
        self.store = store
        self.users = users
        self.catalog = catalog
        self.max_attempts = max_attempts
        self._handlers: Dict[str, Callable[[Session, LifecycleEvent], EventOutcome]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            SUBSCRIPTION_CREATED: self._on_subscription_upsert,
            SUBSCRIPTION_UPDATED: self._on_subscription_upsert,
            SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_payment_succeeded,
        }

    def apply_lifecycle_event(self, event: LifecycleEvent | Dict[str, Any]) -> EventOutcome:
        """Apply one Stripe event; safe to call any number of times per event."""
        if isinstance(event, dict):
            event = LifecycleEvent.from_payload(event)

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled Stripe event type %s (%s)", event.type, event.id)
            return EventOutcome.IGNORED

        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.database.session() as session:
                    if not self._claim(session, event):
                        logger.info("Stripe event %s already processed; skipping", event.id)
                        return EventOutcome.DUPLICATE

                    outcome = handler(session, event)
                    if outcome is EventOutcome.UNLINKED:
                        session.rollback()
                    else:
                        session.commit()
                    logger.info("Stripe event %s (%s): %s", event.id, event.type, outcome.value)
                    return outcome
            except _VersionConflict:
                logger.info(
                    "Version conflict applying %s (attempt %d/%d)", event.id, attempt, self.max_attempts
                )
            except IntegrityError as exc:
                # Concurrent delivery of this event, or a concurrent insert of
                # the same subscription; the next attempt sees the winner's row
                logger.info(
                    "Constraint race applying %s (attempt %d/%d): %s",
                    event.id,
                    attempt,
                    self.max_attempts,
                    exc.orig,
                )

        raise MeterProxyError(
            "MPX-DB-001",
            detail=f"could not apply Stripe event {event.id}",
            context={"event_id": event.id, "event_type": event.type, "attempts": self.max_attempts},
        )

    @staticmethod
    def _claim(session: Session, event: LifecycleEvent) -> bool:
        existing = session.exec(select(ProcessedEvent).where(ProcessedEvent.event_id == event.id)).first()
        if existing is not None:
            return False
        session.add(ProcessedEvent(event_id=event.id, event_type=event.type))
        session.flush()
        return True

    def _swap(self, session: Session, before: SubscriptionSnapshot, after: SubscriptionSnapshot) -> None:
        if after == before:
            return
        if not self.store.compare_and_swap(before, after, session=session):
            raise _VersionConflict()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_checkout_completed(self, session: Session, event: LifecycleEvent) -> EventOutcome:
        user_id = stripe_fields.metadata_user_id(event.data)
        customer = stripe_fields.customer_id(event.data)
        if not user_id or not customer:
            logger.error("Checkout session %s missing userId metadata or customer", event.data.get("id"))
            return EventOutcome.UNLINKED

        if self.users.get(user_id, session=session) is None:
            logger.error("Checkout session %s names unknown user %s", event.data.get("id"), user_id)
            return EventOutcome.UNLINKED

        linked = self.users.link_customer(user_id, customer, session=session)
        return EventOutcome.APPLIED if linked else EventOutcome.IGNORED

    def _resolve_owner(self, session: Session, obj: Dict[str, Any]) -> Optional[str]:
        customer = stripe_fields.customer_id(obj)
        if customer:
            user = self.users.get_by_customer_id(customer, session=session)
            if user is not None:
                return user.id

        user_id = stripe_fields.metadata_user_id(obj)
        if user_id and self.users.get(user_id, session=session) is not None:
            if customer:
                self.users.link_customer(user_id, customer, session=session)
            return user_id

        logger.error("User not found for customer %s (subscription %s)", customer, obj.get("id"))
        return None

    def _on_subscription_upsert(self, session: Session, event: LifecycleEvent) -> EventOutcome:
        obj = event.data
        stripe_subscription_id = obj.get("id")
        if not stripe_subscription_id:
            raise MeterProxyError("MPX-WHK-003", detail=f"{event.type} without subscription id")

        plan = self.catalog.resolve(stripe_fields.first_price_id(obj))
        period_end = stripe_fields.subscription_period_end(obj)
        existing = self.store.get_by_external_id(stripe_subscription_id, session=session)

        if existing is None:
            owner = self._resolve_owner(session, obj)
            if owner is None:
                return EventOutcome.UNLINKED
            if period_end is None:
                logger.warning("Subscription %s has no period end; treating as ended", stripe_subscription_id)
                period_end = event.created or utcnow()
            self.store.insert(
                user_id=owner,
                stripe_subscription_id=stripe_subscription_id,
                tier=plan.tier,
                quota=plan.quota,
                status=obj.get("status") or INCOMPLETE,
                current_period_end=period_end,
                last_event_at=event.created,
                session=session,
            )
            return EventOutcome.APPLIED

        if self._is_stale(existing, event):
            logger.warning(
                "Skipping stale %s for %s: event created %s, last applied %s",
                event.type,
                stripe_subscription_id,
                event.created,
                existing.last_event_at,
            )
            return EventOutcome.STALE

        # Stripe never reactivates a canceled subscription
        new_status = obj.get("status") or existing.status
        if existing.status == CANCELED and new_status != CANCELED:
            logger.warning(
                "Ignoring %s for canceled subscription %s (status %s)",
                event.type,
                stripe_subscription_id,
                new_status,
            )
            return EventOutcome.STALE

        updated = dataclasses.replace(
            existing,
            tier=plan.tier,
            quota=plan.quota,
            status=new_status,
            current_period_end=period_end or existing.current_period_end,
            last_event_at=self._newest(existing.last_event_at, event.created),
        )
        self._swap(session, existing, updated)
        return EventOutcome.APPLIED

    def _on_subscription_deleted(self, session: Session, event: LifecycleEvent) -> EventOutcome:
        stripe_subscription_id = event.data.get("id")
        existing = (
            self.store.get_by_external_id(stripe_subscription_id, session=session)
            if stripe_subscription_id
            else None
        )
        if existing is None:
            return self._insert_canceled(session, event)

        # Cancellation is terminal, so it applies even when delivered late
        canceled = dataclasses.replace(
            existing,
            status=CANCELED,
            last_event_at=self._newest(existing.last_event_at, event.created),
        )
        self._swap(session, existing, canceled)
        return EventOutcome.APPLIED

    def _insert_canceled(self, session: Session, event: LifecycleEvent) -> EventOutcome:
        """Record a deletion that arrived before its subscription was created.

        The canceled row makes the late ``created`` event stale instead of
        letting it insert an active subscription.
        """
        obj = event.data
        stripe_subscription_id = obj.get("id")
        if not stripe_subscription_id:
            logger.warning("Deleted subscription event %s carries no subscription id", event.id)
            return EventOutcome.IGNORED

        owner = self._resolve_owner(session, obj)
        if owner is None:
            return EventOutcome.UNLINKED

        plan = self.catalog.resolve(stripe_fields.first_price_id(obj))
        self.store.insert(
            user_id=owner,
            stripe_subscription_id=stripe_subscription_id,
            tier=plan.tier,
            quota=plan.quota,
            status=CANCELED,
            current_period_end=stripe_fields.subscription_period_end(obj) or event.created or utcnow(),
            last_event_at=event.created or utcnow(),
            session=session,
        )
        logger.info("Subscription %s deleted before it was seen; stored as canceled", stripe_subscription_id)
        return EventOutcome.APPLIED

    def _on_invoice_payment_succeeded(self, session: Session, event: LifecycleEvent) -> EventOutcome:
        stripe_subscription_id = stripe_fields.invoice_subscription_id(event.data)
        if not stripe_subscription_id:
            logger.info("Invoice %s has no subscription; nothing to reset", event.data.get("id"))
            return EventOutcome.IGNORED

        existing = self.store.get_by_external_id(stripe_subscription_id, session=session)
        if existing is None:
            logger.error("Invoice %s for unknown subscription %s", event.data.get("id"), stripe_subscription_id)
            return EventOutcome.UNLINKED

        new_end = existing.current_period_end
        invoice_end = stripe_fields.invoice_period_end(event.data)
        if invoice_end is not None and invoice_end > new_end:
            new_end = invoice_end

        self._swap(session, existing, reset_for_new_period(existing, new_end))
        logger.info("Usage reset for subscription %s (period ends %s)", stripe_subscription_id, new_end.isoformat())
        return EventOutcome.APPLIED

    @staticmethod
    def _is_stale(existing: SubscriptionSnapshot, event: LifecycleEvent) -> bool:
        return (
            existing.last_event_at is not None
            and event.created is not None
            and event.created < existing.last_event_at
        )

    @staticmethod
    def _newest(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
        if a is None:
            return b
        if b is None:
            return a
        return max(a, b)
