from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Set per request by the X-Request-ID middleware in agrigrow.app
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Matched against keys lower-cased with "_" and "-" removed, so refresh_token,
# refreshToken and refresh-token are all caught
_CREDENTIAL_MARKERS = ("password", "token", "secret", "authorization")
_EMAIL_MARKER = "email"


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _normalize_key(key: str) -> str:
    return key.lower().replace("_", "").replace("-", "")


def mask_email(value: str) -> str:
    """``ada@farm.example`` -> ``a***@farm.example``; the domain stays readable."""
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _mask_credential(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}***"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_account_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask passwords, tokens, JWT secrets and email addresses in log events."""
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        normalized = _normalize_key(key)
        if any(marker in normalized for marker in _CREDENTIAL_MARKERS):
            event_dict[key] = _mask_credential(value)
        elif _EMAIL_MARKER in normalized and isinstance(value, str):
            event_dict[key] = mask_email(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging() -> None:
    """Configure structlog from LOG_LEVEL, LOG_JSON and LOG_DEV_MODE.

    JSON lines are the default; LOG_DEV_MODE (or LOG_JSON=false) switches to
    the coloured console renderer.
    """
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    console = _env_flag("LOG_DEV_MODE", False) or not _env_flag("LOG_JSON", True)
    if console:
        output = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        output = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_correlation_id,
            _redact_account_secrets,
            *output,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
