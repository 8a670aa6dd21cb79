"""Structured logging configuration.

Configures structlog with JSON output in production and a console renderer in
development. Every module logs through ``structlog.get_logger(__name__)``
with dotted event names, e.g. ``retry_executor.rate_limited``.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "llm_fossil.service",
        "event": "llm_service.call_completed",
        "call_id": "call_3f2a...",
        "purpose": "semantic-tagging",
        "context": "ci",
        "provider": "openai",
        "total_tokens": 412
    }
"""

from __future__ import annotations

import logging
import sys
import uuid

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def new_call_id() -> str:
    """Generate a call identifier used to correlate attempts and records."""
    return f"call_{uuid.uuid4().hex[:16]}"


def bind_call_context(call_id: str, purpose: str, context: str) -> None:
    """Bind the current call to log context.

    Every log entry emitted while the call is in flight carries these keys,
    including entries from providers and the retry executor.
    """
    structlog.contextvars.bind_contextvars(
        call_id=call_id,
        purpose=purpose,
        context=context,
    )


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()


def unbind_call_context() -> None:
    """Remove the keys bound by ``bind_call_context``."""
    structlog.contextvars.unbind_contextvars("call_id", "purpose", "context")
