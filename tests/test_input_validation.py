"""Tests for request validation and fossil payload sanitization."""

from __future__ import annotations

import pytest

from llm_fossil.core.errors import RequestValidationError
from llm_fossil.core.input_validation import (
    MAX_MESSAGE_LENGTH,
    MAX_MESSAGES,
    sanitize_for_fossil,
    validate_call_request,
)
from llm_fossil.routing.types import CallRequest


def _raw(*contents: str, **fields) -> dict:
    return {"messages": [{"role": "user", "content": c} for c in contents], **fields}


class TestValidateCallRequest:
    def test_mapping_accepted(self):
        request = validate_call_request(_raw("Hello", purpose="excerpt-generation"))

        assert isinstance(request, CallRequest)
        assert request.purpose == "excerpt-generation"
        assert request.context == "unknown"

    def test_call_request_accepted(self):
        request = CallRequest.model_validate(_raw("Hello"))
        assert validate_call_request(request).messages == request.messages

    def test_null_bytes_stripped(self):
        request = validate_call_request(_raw("He\x00llo"))
        assert request.messages[0].content == "Hello"

    def test_no_messages_rejected(self):
        with pytest.raises(RequestValidationError):
            validate_call_request({"messages": []})

    def test_blank_content_rejected(self):
        with pytest.raises(RequestValidationError, match="no message content"):
            validate_call_request(_raw("   ", "\x00"))

    def test_too_many_messages(self):
        with pytest.raises(RequestValidationError, match="Too many messages"):
            validate_call_request(_raw(*["hi"] * (MAX_MESSAGES + 1)))

    def test_message_too_long(self):
        with pytest.raises(RequestValidationError, match="too long"):
            validate_call_request(_raw("x" * (MAX_MESSAGE_LENGTH + 1)))

    @pytest.mark.parametrize(
        "raw",
        [
            {"messages": [{"role": "robot", "content": "hi"}]},
            {"messages": [{"role": "user"}]},
            _raw("hi", value_score=1.5),
            _raw("hi", routing_preference="nearest"),
            _raw("hi", unexpected_field=True),
            _raw("hi", purpose=""),
        ],
    )
    def test_malformed_shapes_rejected(self, raw):
        with pytest.raises(RequestValidationError, match="Malformed call request"):
            validate_call_request(raw)

    def test_non_mapping_rejected(self):
        with pytest.raises(RequestValidationError):
            validate_call_request(["not", "a", "request"])  # type: ignore[arg-type]

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_call_request({"messages": "nope"})


class TestSanitizeForFossil:
    def test_secret_keys_redacted(self):
        payload = {
            "api_key": "sk-live-123",
            "Authorization": "Bearer abc",
            "purpose": "tagging",
        }

        sanitized = sanitize_for_fossil(payload)

        assert sanitized["api_key"] == "[REDACTED]"
        assert sanitized["Authorization"] == "[REDACTED]"
        assert sanitized["purpose"] == "tagging"

    def test_nested_mappings_and_lists(self):
        payload = {"request": {"headers": [{"x_secret": "s"}], "password": "pw"}}

        sanitized = sanitize_for_fossil(payload)

        assert sanitized["request"]["password"] == "[REDACTED]"
        assert sanitized["request"]["headers"][0]["x_secret"] == "[REDACTED]"

    def test_numeric_token_counts_kept(self):
        sanitized = sanitize_for_fossil({"prompt_tokens": 12})
        assert sanitized == {"prompt_tokens": 12}

    def test_input_not_mutated(self):
        payload = {"token": "abc"}
        sanitize_for_fossil(payload)
        assert payload == {"token": "abc"}
