from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request id, set by the HTTP middleware and echoed as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Keys whose string values are masked in log output. "identifier" covers the
# phone/email an OTP is bound to; "code" covers the OTP itself.
_PII_KEYS = frozenset(
    {
        "password",
        "secret",
        "token",
        "authorization",
        "email",
        "phone",
        "identifier",
        "code",
        "to",
    }
)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) to the current context."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


def redact_value(value: str) -> str:
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:2]}***@{domain}"
    if len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return lowered in _PII_KEYS or any(part in _PII_KEYS for part in lowered.split("_"))


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    correlation_id = get_correlation_id()
    if correlation_id:
        event_dict.setdefault("correlation_id", correlation_id)
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask identifiers, codes and tokens before anything is rendered."""
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and _is_sensitive(key):
            event_dict[key] = redact_value(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    Console rendering is used when ``dev_mode`` is set or JSON output is
    turned off; otherwise one JSON object is printed per event.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    level = logging.getLevelName(log_level.upper())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            level if isinstance(level, int) else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
