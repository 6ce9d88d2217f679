"""structlog setup shared by every rememberme module.

Loggers are configured once at import from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE`` (see :class:`rememberme.config.Settings`). Serials, tokens
and cookie values never reach the rendered output in clear.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

import structlog

from rememberme.config import Settings

CORRELATION_KEY = "correlation_id"

_SECRET_KEYS = ("token", "serial", "secret", "password", "cookie")


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get(CORRELATION_KEY)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(**{CORRELATION_KEY: cid})
    return cid


def _mask(value: str) -> str:
    if len(value) <= 4:
        return value
    return f"{value[:2]}***{value[-2:]}"


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-bearing values, keeping two chars at each end."""
    for key, value in event_dict.items():
        if isinstance(value, str) and any(part in key.lower() for part in _SECRET_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _level_number(level: str) -> int:
    number = logging.getLevelName(level.upper())
    return number if isinstance(number, int) else logging.INFO


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_settings = Settings.from_env()
configure_logging(
    _settings.log_level,
    json_output=_settings.log_json,
    development_mode=_settings.log_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
