"""
Helpers to read Stripe payload fields that vary across API versions.

All functions take the plain ``dict`` decoded from the webhook body and
return ``None`` rather than raising when a field is absent.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

_PERIOD_END_KEYS = ("current_period_end", "currentPeriodEnd", "current_period_end_at")


def _as_timestamp(value: Any) -> Optional[datetime]:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _id_of(value: Any) -> Optional[str]:
    # Expandable fields arrive as an id string or as the expanded object
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id") or None
    return None


def subscription_period_end(subscription: dict) -> Optional[datetime]:
    """Period end of a subscription object.

    Newer API versions moved ``current_period_end`` onto subscription items,
    so the first item is consulted when the top-level field is missing.
    """
    for key in _PERIOD_END_KEYS:
        ts = _as_timestamp(subscription.get(key))
        if ts is not None:
            return ts
    for item in (subscription.get("items") or {}).get("data") or []:
        ts = _as_timestamp(item.get("current_period_end"))
        if ts is not None:
            return ts
    return None


def first_price_id(subscription: dict) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return _id_of(items[0].get("price"))


def customer_id(obj: dict) -> Optional[str]:
    return _id_of(obj.get("customer"))


def metadata_user_id(obj: dict) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    return metadata.get("userId") or metadata.get("user_id") or None


def invoice_subscription_id(invoice: Optional[dict]) -> Optional[str]:
    """Subscription id of an invoice, whatever shape the payload uses."""
    if not invoice:
        return None
    sub_id = _id_of(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _id_of(details.get("subscription"))


def invoice_period_end(invoice: dict) -> Optional[datetime]:
    """Latest line-item period end on an invoice, if any."""
    ends = [
        _as_timestamp((line.get("period") or {}).get("end"))
        for line in (invoice.get("lines") or {}).get("data") or []
    ]
    ends = [end for end in ends if end is not None]
    return max(ends) if ends else None


def event_created_at(event: dict) -> Optional[datetime]:
    return _as_timestamp(event.get("created"))
