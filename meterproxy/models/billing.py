"""
Billing Models
==============

SQLModel tables for the mirrored billing state:
- Subscription: one row per Stripe subscription, with the per-period usage counter.
- UsageRecord: append-only audit trail of charged completions.
- ProcessedEvent: ledger of applied Stripe event ids.

``SubscriptionSnapshot`` is the immutable value the quota ledger and usage
meter operate on; rows are converted at the storage boundary.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel

# Stripe subscription statuses; only ACTIVE admits requests
ACTIVE = "active"
TRIALING = "trialing"
PAST_DUE = "past_due"
CANCELED = "canceled"
INCOMPLETE = "incomplete"
INCOMPLETE_EXPIRED = "incomplete_expired"
UNPAID = "unpaid"
PAUSED = "paused"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Subscription(SQLModel, table=True):
    """Stripe subscription mirrored locally, with usage for the current period."""

    __tablename__ = "subscriptions"

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True, max_length=32)
    user_id: str = Field(index=True, max_length=128)
    stripe_subscription_id: str = Field(unique=True, index=True, max_length=255)
    tier: str = Field(default="basic", max_length=32)
    quota: int = Field(default=0)
    used: int = Field(default=0)
    status: str = Field(default=ACTIVE, index=True, max_length=32)
    current_period_end: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    # Optimistic-concurrency counter, bumped on every write
    version: int = Field(default=0)
    last_event_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class UsageRecord(SQLModel, table=True):
    """Append-only record of units charged for one completion."""

    __tablename__ = "usage_records"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=128)
    subscription_id: str = Field(index=True, max_length=32)
    request_id: str = Field(max_length=128)
    units: int = Field(default=0)
    provider: Optional[str] = Field(default=None, nullable=True, max_length=32)
    model: Optional[str] = Field(default=None, nullable=True, max_length=128)
    created_at: datetime = Field(default_factory=utcnow)


class ProcessedEvent(SQLModel, table=True):
    """Stripe event id that has been applied; replays are skipped."""

    __tablename__ = "processed_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True, index=True, max_length=255)
    event_type: str = Field(max_length=128)
    processed_at: datetime = Field(default_factory=utcnow)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Immutable view of a subscription row at a given version."""

    id: str
    user_id: str
    stripe_subscription_id: str
    tier: str
    quota: int
    used: int
    status: str
    current_period_end: datetime
    version: int = 0
    last_event_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return self.quota - self.used

    @classmethod
    def from_row(cls, row: Subscription) -> "SubscriptionSnapshot":
        return cls(
            id=row.id,
            user_id=row.user_id,
            stripe_subscription_id=row.stripe_subscription_id,
            tier=row.tier,
            quota=row.quota,
            used=row.used,
            status=row.status,
            current_period_end=as_utc(row.current_period_end),
            version=row.version,
            last_event_at=as_utc(row.last_event_at),
        )
