"""
Administrative endpoints (admin API key required).

POST /api/admin/override   adjust a user's active subscription
GET  /api/admin/usage/{user_id}   recent usage records for a user
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from meterproxy.auth.api_key_auth import AuthenticatedUser, require_admin
from meterproxy.core.errors import MeterProxyError
from meterproxy.services.admin_overrides import OverrideAction, apply_override

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


class OverrideRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    action: Optional[str] = None
    value: Optional[int] = None
    period_days: Optional[int] = Field(default=None, alias="periodDays")

    model_config = {"populate_by_name": True}


class SubscriptionView(BaseModel):
    id: str
    user_id: str
    stripe_subscription_id: str
    tier: str
    quota: int
    used: int
    remaining: int
    status: str
    current_period_end: datetime


class OverrideResponse(BaseModel):
    success: bool = True
    subscription: SubscriptionView
    message: str


class UsageRecordView(BaseModel):
    request_id: str
    subscription_id: str
    units: int
    provider: Optional[str] = None
    model: Optional[str] = None
    created_at: datetime


@router.post("/override", response_model=OverrideResponse)
async def override_subscription(
    body: OverrideRequest,
    request: Request,
    admin: AuthenticatedUser = Depends(require_admin),
):
    if not body.user_id or not body.action:
        raise MeterProxyError("MPX-API-002", detail="Missing required fields")
    try:
        action = OverrideAction(body.action)
    except ValueError:
        raise MeterProxyError("MPX-API-002", detail=f"Invalid action {body.action!r}")

    state = request.app.state
    updated = await asyncio.to_thread(
        apply_override,
        state.store,
        body.user_id,
        action,
        body.value,
        body.period_days,
        state.settings.cas_max_attempts,
    )
    logger.info("Override %s for user %s by admin %s", action.value, body.user_id, admin.user_id)

    return OverrideResponse(
        subscription=SubscriptionView(
            id=updated.id,
            user_id=updated.user_id,
            stripe_subscription_id=updated.stripe_subscription_id,
            tier=updated.tier,
            quota=updated.quota,
            used=updated.used,
            remaining=updated.remaining,
            status=updated.status,
            current_period_end=updated.current_period_end,
        ),
        message=f"Successfully applied {action.value} for user {body.user_id}",
    )


@router.get("/usage/{user_id}", response_model=List[UsageRecordView])
async def list_usage(
    user_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    _admin: AuthenticatedUser = Depends(require_admin),
):
    records = await asyncio.to_thread(request.app.state.store.list_usage, user_id, limit)
    return [
        UsageRecordView(
            request_id=r.request_id,
            subscription_id=r.subscription_id,
            units=r.units,
            provider=r.provider,
            model=r.model,
            created_at=r.created_at,
        )
        for r in records
    ]
