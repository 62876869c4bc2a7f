"""Structured logging for registration attempts.

Every event carries the CLI invocation's correlation id and, while the
orchestrator is driving a stage, the attempt id and stage id. Values under
credential, card and approval-token keys are redacted before rendering.
"""

from __future__ import annotations

import logging
import sys
import uuid
from typing import Any, Optional

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars, unbind_contextvars

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

REDACTED = "[redacted]"

# Matched against lowercased keys, including nested dict keys
SENSITIVE_KEYS = ("password", "card", "cvv", "cvc", "secret", "token", "api_key", "authorization")


def start_invocation(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id for one CLI invocation and return it."""
    cid = correlation_id or uuid.uuid4().hex[:8]
    bind_contextvars(correlation_id=cid)
    return cid


def set_attempt_context(attempt_id: str, stage: str = "") -> None:
    """Attribute subsequent events to an attempt, and a stage when given."""
    bind_contextvars(attempt_id=attempt_id)
    if stage:
        bind_contextvars(stage=stage)
    else:
        unbind_contextvars("stage")


def set_stage(stage: str) -> None:
    bind_contextvars(stage=stage)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if _is_sensitive(str(k)) else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    return value


def redact_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Replace credential and payment values with a placeholder."""
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        event_dict[key] = REDACTED if _is_sensitive(key) else _scrub(value)
    return event_dict


def configure_logging(
    level: str = "info",
    format_type: str = "json",
    stream: Any = None,
) -> None:
    """
    Configure structured logging.

    Args:
        level: Log level (debug, info, warn, error)
        format_type: 'json' for one object per line, anything else for the console renderer
        stream: Output stream (default: sys.stderr)
    """
    log_level = LEVELS.get(level.lower(), logging.INFO)

    processors: list[structlog.types.Processor] = [
        merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> Any:
    """Logger bound with ``logger_name``, e.g. ``get_logger("browser.lifecycle")``."""
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


def log_stage_timing(stage: str, duration_seconds: float) -> None:
    get_logger("timing").info("stage_timing", stage=stage, duration_seconds=round(duration_seconds, 3))


configure_logging()
