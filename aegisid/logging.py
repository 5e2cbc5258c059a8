from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Values under these keys are never rendered, not even partially
_SECRET_MARKERS = ("password", "secret", "token", "authorization", "otp", "code")
# Contact data keeps its domain so deliverability issues stay debuggable
_CONTACT_MARKERS = ("email",)
# Counters and classifiers that merely contain a marker substring
_SAFE_KEYS = frozenset(
    {"error_code", "status_code", "country_code", "backup_codes_remaining", "token_kind"}
)

REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate the correlation id for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request(
    request_id: Optional[str] = None,
    *,
    client_ip: Optional[str] = None,
    path: Optional[str] = None,
) -> str:
    """Start a request scope: fresh contextvars plus a correlation id."""
    structlog.contextvars.clear_contextvars()
    cid = set_correlation_id(request_id)
    bound: Dict[str, Any] = {}
    if client_ip:
        bound["client_ip"] = client_ip
    if path:
        bound["path"] = path
    if bound:
        structlog.contextvars.bind_contextvars(**bound)
    return cid


def _mask_contact(value: str) -> str:
    if "@" not in value:
        return REDACTED
    local, domain = value.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Scrub credentials and contact data from an event before rendering.

    Keys match by substring, so ``refresh_token`` and ``to_email`` are caught
    too. Credential values are dropped entirely; emails keep their domain.
    Non-string values (counts, flags) pass through.
    """
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS or key == "event":
            continue
        value = event_dict[key]
        if value is None or not isinstance(value, str):
            continue
        if any(marker in lower_key for marker in _SECRET_MARKERS):
            event_dict[key] = REDACTED
        elif any(marker in lower_key for marker in _CONTACT_MARKERS):
            event_dict[key] = _mask_contact(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline; unset arguments fall back to LOG_* env vars."""
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", False)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
