"""
Health endpoints.

GET /api/health
    Liveness only; touches nothing outside the process.
GET /api/health/deep   (admin)
    Checks the database, the completion provider configuration and the
    Stripe webhook secret, each under a time limit. Answers 503 when any
    component is down so load balancers can act on the status alone.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Dict, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from meterproxy.auth.api_key_auth import AuthenticatedUser, require_admin
from meterproxy.core.database import Database
from meterproxy.core.errors import MeterProxyError
from meterproxy.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s

logger = logging.getLogger(__name__)

router = APIRouter()

CHECK_TIMEOUT_S = 2.0
SLOW_DATABASE_MS = 250

# Worst status wins
_SEVERITY = {"ok": 0, "degraded": 1, "down": 2}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def liveness():
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": APP_VERSION,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": _now(),
    }


@router.get("/health/deep")
async def deep_health(request: Request, _admin: AuthenticatedUser = Depends(require_admin)):
    state = request.app.state
    components = dict(
        await asyncio.gather(
            _run_check("database", asyncio.to_thread(_database_status, state.database)),
            _run_check("completion_provider", _provider_status(state.assistant)),
            _run_check("stripe_webhook", _webhook_status(state.settings)),
        )
    )
    overall = max((c["status"] for c in components.values()), key=_SEVERITY.__getitem__)

    return JSONResponse(
        status_code=503 if overall == "down" else 200,
        content={
            "status": overall,
            "version": APP_VERSION,
            "uptime_s": round(get_uptime_s(), 1),
            "checked_at": _now(),
            "components": components,
        },
    )


async def _run_check(name: str, check: Awaitable[Dict]) -> Tuple[str, Dict]:
    try:
        return name, await asyncio.wait_for(check, timeout=CHECK_TIMEOUT_S)
    except asyncio.TimeoutError:
        return name, {"status": "down", "detail_safe": f"No answer within {CHECK_TIMEOUT_S}s"}
    except Exception as exc:
        logger.warning("Health check %s failed: %s", name, exc)
        return name, {"status": "down", "detail_safe": f"Check failed: {type(exc).__name__}"}


def _database_status(database: Database) -> Dict:
    started = time.perf_counter()
    with database.engine.connect() as conn:
        conn.execute(text("SELECT 1")).scalar_one()
    latency_ms = round((time.perf_counter() - started) * 1000, 1)
    return {"status": "degraded" if latency_ms > SLOW_DATABASE_MS else "ok", "latency_ms": latency_ms}


async def _provider_status(assistant) -> Dict:
    try:
        info = assistant.provider.get_model_info()
    except MeterProxyError as exc:
        return {"status": "down", "detail_safe": f"Not configured ({exc.code})"}
    return {"status": "ok", "detail_safe": f"{info['provider']} / {info['model']}"}


async def _webhook_status(settings) -> Dict:
    if settings.stripe_webhook_secret:
        return {"status": "ok"}
    return {"status": "down", "detail_safe": "Webhook signing secret not set"}
