"""
Request correlation middleware.

Every request gets a request id: the caller's ``X-Request-ID`` when it is
a plausible token, a fresh one otherwise. The id is stored on
``request.state.request_id``, bound into the logging context, echoed in
the response headers, and written to usage records as the opaque payload
identifier. ``X-Correlation-ID`` follows the same rules and defaults to
the request id.
"""
from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"
CORRELATION_ID_HEADER = "x-correlation-id"

# Ids end up in the database and in log lines
_ACCEPTABLE_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _accept_id(value: Optional[str]) -> Optional[str]:
    if value and _ACCEPTABLE_ID.match(value):
        return value
    return None


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _accept_id(request.headers.get(REQUEST_ID_HEADER)) or uuid.uuid4().hex
        correlation_id = _accept_id(request.headers.get(CORRELATION_ID_HEADER)) or request_id
        request.state.request_id = request_id

        started = time.perf_counter()
        with structlog.contextvars.bound_contextvars(request_id=request_id, correlation_id=correlation_id):
            try:
                response = await call_next(request)
            except Exception:
                self._log(request, None, started)
                raise
            self._log(request, response.status_code, started)

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response

    @staticmethod
    def _log(request: Request, status_code: Optional[int], started: float) -> None:
        user = getattr(request.state, "user", None)
        level = logging.INFO if status_code is not None and status_code < 500 else logging.WARNING
        logger.log(
            level,
            "request_completed",
            extra={
                "http.method": request.method,
                "http.path": request.url.path,
                "http.status_code": status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "user_id": user.user_id if user is not None else None,
            },
        )
