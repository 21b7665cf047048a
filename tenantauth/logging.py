"""structlog setup shared by every tenantauth module.

Output is JSON by default. ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE`` are
read once at import time; call :func:`configure_logging` to change them later.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# substrings of event keys whose string values are masked
_MASKED_KEYS = ("password", "secret", "token", "authorization", "google_id")
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    value = correlation_id or str(uuid.uuid4())
    request_id_var.set(value)
    return value


def _add_request_id(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    value = request_id_var.get()
    if value:
        event.setdefault("correlation_id", value)
    return event


def _mask_value(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _mask_value(value)
    return f"{local[:2]}***@{domain}"


def _mask_sensitive(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    """Mask secrets, tokens and email addresses before rendering."""
    for key, value in event.items():
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered in ("email", "to") or lowered.endswith("_email"):
            event[key] = _mask_email(value)
        elif any(marker in lowered for marker in _MASKED_KEYS):
            event[key] = _mask_value(value)
    return event


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
