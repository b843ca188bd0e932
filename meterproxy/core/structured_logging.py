"""
Logging setup.

structlog renders every record as one JSON object; stdlib loggers
(``logging.getLogger(__name__)``, used throughout the package) go through
the same processor chain. Per-request fields such as ``request_id``,
``correlation_id`` and ``user_id`` live in structlog's contextvars, are
bound by the correlation middleware and the auth dependency, and appear on
every line logged while the request is handled, including lines from
worker threads started with ``asyncio.to_thread``.

With ``json_output=False`` (debug mode) lines are rendered for humans.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time
from typing import Any, Optional

import structlog

APP_VERSION = "1.0.0"
SERVICE_NAME = "meterproxy"

_started_at = time.monotonic()

# Loggers that are chatty at INFO and say nothing useful about billing
_QUIET_LOGGERS = ("httpcore", "httpx", "openai", "stripe", "asyncio", "sqlalchemy.engine", "alembic.runtime")


def get_uptime_s() -> float:
    return time.monotonic() - _started_at


def bind_request_context(**fields: Any) -> None:
    """Attach fields to every log line for the rest of the current request."""
    structlog.contextvars.bind_contextvars(**fields)


def current_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("request_id")


def _add_service(logger: Any, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("version", APP_VERSION)
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_service,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
    ]


def _file_handler(log_dir: str, log_file: str, max_bytes: int, backup_count: int) -> Optional[logging.Handler]:
    try:
        os.makedirs(log_dir, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"meterproxy: cannot write logs to {log_dir}: {exc}; using stderr only", file=sys.stderr)
        return None


def setup_logging(
    log_level: int | str = logging.INFO,
    log_dir: Optional[str] = None,
    json_output: bool = True,
    log_file: str = "meterproxy.jsonl",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Configure structlog and the stdlib root logger. Call once at startup."""
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared, structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_dir:
        file_handler = _file_handler(log_dir, log_file, max_bytes, backup_count)
        if file_handler is not None:
            handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
