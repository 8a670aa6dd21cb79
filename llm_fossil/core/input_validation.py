"""Input validation utilities for call requests.

All requests are validated before they reach the budget guard or any
provider. Malformed shapes are programmer errors and raise
``RequestValidationError``; they are never retried or absorbed.

Validation philosophy:
- Normalize before validation (strip null bytes)
- Fail closed (reject empty or oversized input)
- Validate early (at the service boundary)
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import ValidationError

from llm_fossil.core.errors import RequestValidationError
from llm_fossil.routing.types import CallRequest, Message

log = structlog.get_logger(__name__)

# Maximum sizes for a single request
MAX_MESSAGES = 100
MAX_MESSAGE_LENGTH = 100_000

# Keys whose values are replaced before a payload is fossilized
_SENSITIVE_KEY_PARTS = ("api_key", "apikey", "token", "secret", "password", "auth")
_REDACTED = "[REDACTED]"


def validate_call_request(raw: CallRequest | Mapping[str, Any]) -> CallRequest:
    """Validate and normalize a call request.

    Args:
        raw: A CallRequest or a mapping with the same fields

    Returns:
        Normalized CallRequest (null bytes removed from message content)

    Raises:
        RequestValidationError: If the request shape or content is invalid
    """
    if isinstance(raw, CallRequest):
        request = raw
    elif isinstance(raw, Mapping):
        try:
            request = CallRequest.model_validate(dict(raw))
        except ValidationError as exc:
            errors = [
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            ]
            log.warning("input_validation.request_rejected", errors=errors)
            raise RequestValidationError(
                f"Malformed call request: {'; '.join(errors)}"
            ) from exc
    else:
        raise RequestValidationError(
            f"Call request must be a mapping or CallRequest, got {type(raw).__name__}"
        )

    if len(request.messages) > MAX_MESSAGES:
        raise RequestValidationError(
            f"Too many messages. Maximum {MAX_MESSAGES} allowed."
        )

    messages: list[Message] = []
    for index, message in enumerate(request.messages):
        content = message.content.replace("\x00", "")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise RequestValidationError(
                f"messages.{index}: content too long. "
                f"Maximum {MAX_MESSAGE_LENGTH} characters allowed."
            )
        messages.append(Message(role=message.role, content=content))

    if not any(message.content.strip() for message in messages):
        raise RequestValidationError("Call request has no message content")

    return request.with_messages(messages)


def sanitize_for_fossil(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``payload`` with secret-looking values redacted.

    Nested mappings are sanitized recursively; lists are left untouched
    apart from mappings they contain.
    """
    sanitized: dict[str, Any] = {}
    for key, value in payload.items():
        lowered = str(key).lower()
        if any(part in lowered for part in _SENSITIVE_KEY_PARTS) and isinstance(
            value, str
        ):
            sanitized[key] = _REDACTED
        elif isinstance(value, Mapping):
            sanitized[key] = sanitize_for_fossil(value)
        elif isinstance(value, list):
            sanitized[key] = [
                sanitize_for_fossil(item) if isinstance(item, Mapping) else item
                for item in value
            ]
        else:
            sanitized[key] = value
    return sanitized
