"""
Stripe webhook endpoint.

POST /api/stripe/webhook
    400  missing or invalid Stripe-Signature, or unparseable payload
    200  {"received": true} for every verified event, including ones that
         were duplicates, stale, or could not be linked to a user
    500  unexpected failure, so Stripe redelivers the event
"""

import asyncio
import json
import logging

import stripe
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from meterproxy.core.errors import MeterProxyError
from meterproxy.services.subscription_reconciler import LifecycleEvent, SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


def verify_event(payload: bytes, signature: str | None, secret: str | None) -> dict:
    """Check the Stripe signature and return the decoded event body."""
    if not secret:
        raise MeterProxyError("MPX-CFG-003", detail="METERPROXY_STRIPE_WEBHOOK_SECRET is not set")
    if not signature:
        raise MeterProxyError("MPX-WHK-001", detail="Stripe-Signature header missing")

    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        raise MeterProxyError("MPX-WHK-002", detail=f"signature verification failed: {e}") from e
    except ValueError as e:
        raise MeterProxyError("MPX-WHK-003", detail=f"invalid payload: {e}") from e

    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise MeterProxyError("MPX-WHK-003", detail="payload is not JSON") from e


@router.post("/stripe/webhook")
async def stripe_webhook(request: Request):
    payload = await request.body()
    body = verify_event(
        payload,
        request.headers.get("stripe-signature"),
        request.app.state.settings.stripe_webhook_secret,
    )
    event = LifecycleEvent.from_payload(body)

    reconciler: SubscriptionReconciler = request.app.state.reconciler
    try:
        await asyncio.to_thread(reconciler.apply_lifecycle_event, event)
    except MeterProxyError:
        raise
    except Exception:
        logger.exception("Webhook handler failed for %s (%s)", event.id, event.type)
        return JSONResponse(status_code=500, content={"error": "Webhook handler failed"})

    return {"received": True}
