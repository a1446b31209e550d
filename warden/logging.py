from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Key fragments whose values are credentials and never reach a log line
_SECRET_PARTS = frozenset({"password", "secret", "token", "code", "authorization"})
_PASSTHROUGH_KEYS = frozenset({"event", "level", "timestamp", "error_code", "status_code"})
_MASK = "***"

EventDict = Dict[str, Any]


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id (generated when omitted) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _is_secret_key(key: str) -> bool:
    return any(part in _SECRET_PARTS for part in key.lower().split("_"))


def _mask_email(value: str) -> str:
    _, at, domain = value.rpartition("@")
    return f"{_MASK}@{domain}" if at else _MASK


def _redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Blank out secret-bearing keys and strip the local part of email addresses."""
    for key, value in list(event_dict.items()):
        if key in _PASSTHROUGH_KEYS or not isinstance(value, str) or not value:
            continue
        if _is_secret_key(key):
            event_dict[key] = _MASK
        elif "email" in key.lower():
            event_dict[key] = _mask_email(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``development_mode`` or ``json_output=False`` switch
    to the colored console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def hash_identifier(value: str) -> str:
    """Stable, non-reversible stand-in for a login identifier in log events."""
    return hashlib.sha256(value.encode()).hexdigest()[:16]
