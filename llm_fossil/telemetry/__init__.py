"""Telemetry package: structured logging and log-context helpers."""

from __future__ import annotations

from llm_fossil.telemetry.logging import (
    bind_call_context,
    clear_context,
    configure_logging,
    new_call_id,
    unbind_call_context,
)

__all__ = [
    "bind_call_context",
    "clear_context",
    "configure_logging",
    "new_call_id",
    "unbind_call_context",
]
