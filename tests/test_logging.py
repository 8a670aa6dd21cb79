"""Tests for logging configuration and call-context helpers."""

from __future__ import annotations

import re

import pytest
import structlog

from llm_fossil.telemetry import (
    bind_call_context,
    clear_context,
    configure_logging,
    new_call_id,
    unbind_call_context,
)


@pytest.fixture(autouse=True)
def _reset_structlog():
    clear_context()
    yield
    clear_context()
    structlog.reset_defaults()


def test_call_ids_are_unique_and_prefixed():
    ids = {new_call_id() for _ in range(50)}

    assert len(ids) == 50
    assert all(re.fullmatch(r"call_[0-9a-f]{16}", call_id) for call_id in ids)


def test_bind_and_unbind_call_context():
    structlog.contextvars.bind_contextvars(request_source="cli")
    bind_call_context("call_1", "semantic-tagging", "ci")

    assert structlog.contextvars.get_contextvars() == {
        "request_source": "cli",
        "call_id": "call_1",
        "purpose": "semantic-tagging",
        "context": "ci",
    }

    unbind_call_context()

    # Only the call keys are removed
    assert structlog.contextvars.get_contextvars() == {"request_source": "cli"}


def test_clear_context_removes_everything():
    bind_call_context("call_1", "p", "c")
    clear_context()

    assert structlog.contextvars.get_contextvars() == {}


@pytest.mark.parametrize("json_logs", [True, False])
def test_configure_logging(json_logs):
    configure_logging(json_logs=json_logs, log_level="DEBUG")

    assert structlog.is_configured()
    renderer = structlog.get_config()["processors"][-1]
    if json_logs:
        assert isinstance(renderer, structlog.processors.JSONRenderer)
    else:
        assert isinstance(renderer, structlog.dev.ConsoleRenderer)
