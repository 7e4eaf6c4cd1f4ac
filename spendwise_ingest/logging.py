"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

# Event keys whose values must never reach a log sink
SECRET_KEYS = frozenset(
    {"access_token", "refresh_token", "client_secret", "authorization"}
)
REDACTED = "[redacted]"


def redact_secrets(
    _logger: Any, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Mask OAuth material bound to an event, including one level of nesting."""
    for key, value in event_dict.items():
        if key.lower() in SECRET_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in SECRET_KEYS else v for k, v in value.items()
            }
    return event_dict


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Configure structlog for the ingestion process.

    Events go to stdout as JSON lines, or through the console renderer
    when *json* is false.  Run-scoped keys bound with
    :func:`bind_run_context` are merged into every event, and token
    values are masked by :func:`redact_secrets` before rendering.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.format_exc_info,
    ]

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            # Records from plain stdlib loggers (httpx, sqlalchemy) get the same treatment
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs every request URL at INFO, which includes query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)


def bind_run_context(*, account_id: str, run_id: str) -> None:
    """Attach the account and run identifiers to all subsequent log events."""
    structlog.contextvars.bind_contextvars(account_id=account_id, run_id=run_id)


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars("account_id", "run_id")
