"""Error taxonomy for call orchestration.

Two families live here:

- Exceptions, reserved for programmer errors: invalid configuration and
  malformed request shapes. These propagate to the caller.
- ``ProviderError`` values, returned (not raised) by providers for expected
  failures. The retry executor branches on ``ProviderError.kind`` and never
  lets these escape as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class LLMFossilError(Exception):
    """Base exception for all llm_fossil programmer errors."""


class ConfigurationError(LLMFossilError):
    """Raised when the service is wired with an unusable configuration."""


class RequestValidationError(LLMFossilError, ValueError):
    """Raised when a call request is malformed (fatal, never retried)."""


class ErrorKind(StrEnum):
    """Classification of a failed attempt or gate rejection."""

    VALIDATION = "validation"
    BUDGET_EXCEEDED = "budget_exceeded"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_FAULT = "provider_fault"
    TIMEOUT = "timeout"

    @property
    def is_fatal(self) -> bool:
        """Fatal kinds abort the whole provider chain."""
        return self is ErrorKind.VALIDATION

    @property
    def is_retryable(self) -> bool:
        """Only rate limiting is retried on the same provider."""
        return self is ErrorKind.RATE_LIMITED


@dataclass(frozen=True)
class ProviderError:
    """Classified failure returned by ``Provider.invoke``.

    Attributes:
        kind: Failure class driving retry/advance/abort
        message: Human-readable detail (never contains credentials)
        retry_after: Provider-supplied retry hint in seconds, if any
        status_code: HTTP status or process exit code when known
    """

    kind: ErrorKind
    message: str
    retry_after: float | None = None
    status_code: int | None = None


# ------------------------------------------------------------------ #
# Text classification
# ------------------------------------------------------------------ #

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "429",
    "rate limit",
    "rate_limit",
    "too many requests",
    "try again later",
)
_UNAVAILABLE_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "model not found",
    "unknown model",
    "connection refused",
    "could not connect",
    "service unavailable",
    "temporarily unavailable",
    "not running",
)
_MALFORMED_PATTERNS: tuple[str, ...] = (
    "invalid request",
    "invalid_request_error",
    "malformed",
    "bad request",
    "context length",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)


def classify_failure_text(text: str) -> ErrorKind:
    """Map free-form provider error text to an ErrorKind.

    Rules are checked in order; the first match wins. Text that matches
    nothing is an unclassified provider fault.
    """
    haystack = text.lower()
    if _first_match(haystack, _RATE_LIMIT_PATTERNS):
        return ErrorKind.RATE_LIMITED
    if _first_match(haystack, _MALFORMED_PATTERNS):
        return ErrorKind.VALIDATION
    if _first_match(haystack, _TIMEOUT_PATTERNS):
        return ErrorKind.TIMEOUT
    if _first_match(haystack, _UNAVAILABLE_PATTERNS):
        return ErrorKind.PROVIDER_UNAVAILABLE
    return ErrorKind.PROVIDER_FAULT


def classify_http_status(status_code: int, body: str = "") -> ErrorKind:
    """Map an HTTP status from a hosted provider to an ErrorKind."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (400, 413, 422):
        return ErrorKind.VALIDATION
    if status_code in (401, 402, 403, 404):
        return ErrorKind.PROVIDER_UNAVAILABLE
    if status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if status_code in (502, 503):
        return ErrorKind.PROVIDER_UNAVAILABLE
    return classify_failure_text(body)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
