"""Logging configuration utilities."""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.contextvars import bind_contextvars


REDACTED = "[REDACTED]"

# Compared lower-cased; covers both snake_case log keys and camelCase wire keys.
SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "authorization",
    "access_key",
    "secret_key",
    "private_config",
    "privateconfiguration",
    "certificate_data",
    "management_token",
}


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if isinstance(key, str) and key.lower() in SENSITIVE_KEYS else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(item) for item in value)
    return value


def _redact_sensitive(_, __, event_dict: dict) -> dict:
    """Redact sensitive fields, including inside nested payloads."""
    return _redact(event_dict)


def _level(log_level: str) -> int:
    level = logging.getLevelName(log_level.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Route structlog output to stderr; stdout carries the command result."""
    level = _level(log_level)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
    ]
    if log_format == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_request_context(
    service_name: Optional[str] = None,
    slot: Optional[str] = None,
    kind: Optional[str] = None,
) -> None:
    """Bind correlation fields for a change request using contextvars."""
    if service_name:
        bind_contextvars(serviceName=service_name)
    if slot:
        bind_contextvars(slot=slot)
    if kind:
        bind_contextvars(kind=kind)
