"""
Exception handler that turns MeterProxyError into an HTTP response.

Body::

    {"error": {"code", "kind", "title", "message", "retryable",
               "remediation", "request_id"}}

``message`` is the registry's safe message; ``exc.detail`` and
``exc.context`` only reach the logs. Retryable errors carry a
``Retry-After`` header.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from meterproxy.core.errors import MeterProxyError
from meterproxy.core.errors.registry import ErrorEntry, error_registry
from meterproxy.core.structured_logging import current_request_id

logger = logging.getLogger(__name__)

RETRY_AFTER_S = 1

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Used for codes raised in code but missing from registry.yaml
_UNREGISTERED = ErrorEntry(
    code="",
    domain="",
    title="Internal error",
    severity="ERROR",
    retryable=False,
    http_status=500,
    safe_message="An unexpected error occurred.",
)


async def meterproxy_error_handler(request: Request, exc: MeterProxyError) -> JSONResponse:
    entry = error_registry.get(exc.code)
    if entry is None:
        logger.error("unregistered_error_code", extra={"error.code": exc.code, "error.message": exc.detail})
        entry = _UNREGISTERED

    kind = exc.kind.name.lower()
    logger.log(
        _LOG_LEVELS.get(entry.severity, logging.ERROR),
        entry.title,
        extra={
            "error.code": exc.code,
            "error.kind": kind,
            "error.message": exc.detail,
            "http.path": request.url.path,
            **{f"error.ctx.{k}": v for k, v in exc.context.items()},
        },
    )

    headers = {"Retry-After": str(RETRY_AFTER_S)} if entry.retryable else None
    return JSONResponse(
        status_code=entry.http_status,
        headers=headers,
        content={
            "error": {
                "code": exc.code,
                "kind": kind,
                "title": entry.title,
                "message": entry.safe_message,
                "retryable": entry.retryable,
                "remediation": list(entry.remediation),
                "request_id": getattr(request.state, "request_id", None) or current_request_id(),
            }
        },
    )
