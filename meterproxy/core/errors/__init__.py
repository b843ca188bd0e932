"""
Error code system.

MeterProxyError is the single exception type for structured failures. It
carries a registry code ``MPX-<KIND>-<NNN>`` whose middle segment is the
error kind, so callers match on ``exc.kind`` instead of on subclasses.
The error middleware looks the code up in the registry and produces a
structured JSON response.

Usage:
    from meterproxy.core.errors import MeterProxyError
    raise MeterProxyError("MPX-UPS-001", detail="venice returned 503", context={"status": 503})

Admission denials are not errors: the quota ledger returns them as values.
"""

from __future__ import annotations

import re
from enum import Enum

CODE_PATTERN = re.compile(r"^MPX-[A-Z]{2,6}-\d{3}$")


class ErrorKind(str, Enum):
    """Failure kinds; the value is the code's middle segment."""

    CONFIGURATION = "CFG"       # missing credentials, unknown provider; fatal, never retried
    UPSTREAM = "UPS"            # completion provider non-success, transport failure or timeout
    MALFORMED_RESPONSE = "RSP"  # upstream answered 2xx with an unusable payload
    WEBHOOK = "WHK"             # billing provider signature/payload rejected
    STORAGE = "DB"              # optimistic-concurrency conflict after retries
    REQUEST = "API"             # caller sent an invalid request
    AUTH = "AUTH"               # missing/invalid credentials or insufficient role


class MeterProxyError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "MPX-UPS-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind(self.code.split("-")[1])
