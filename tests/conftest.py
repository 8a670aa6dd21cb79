"""
Shared test fixtures for pytest.

Provides common fakes and configuration for all test modules:
- settings: memory-only test configuration with fast retries
- make_provider: factory for scripted fake providers
- recording_sleep: awaitable sleep that records delays instead of waiting
- make_request: helper building validated CallRequests
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from llm_fossil.config import Environment, Settings, get_settings
from llm_fossil.core.errors import ProviderError
from llm_fossil.routing.providers import InvokeResult, Provider
from llm_fossil.routing.tokens import FREE, ModelPricing, estimate_text_tokens
from llm_fossil.routing.types import CallRequest, ProviderKind, ProviderResponse


# ------------------------------------------------------------------ #
# Settings isolation
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch):
    """Keep host environment variables out of Settings and reset the cache."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Memory-only settings with millisecond backoff."""
    return Settings(
        _env_file=None,
        environment=Environment.TEST,
        memory_only=True,
        retry_attempts=3,
        retry_delay_ms=10,
        rate_limit_max_delay_ms=1000,
        call_timeout_seconds=5.0,
    )


# ------------------------------------------------------------------ #
# Fake providers
# ------------------------------------------------------------------ #


class FakeProvider(Provider):
    """Provider whose outcomes are scripted in order.

    Each invoke consumes the next outcome; the last one repeats. An
    outcome may be a ProviderResponse, a ProviderError, an exception to
    raise, or a string (shorthand for a successful response text).
    """

    def __init__(
        self,
        name: str,
        kind: ProviderKind = ProviderKind.HOSTED,
        outcomes: list[Any] | None = None,
        available: bool = True,
        pricing: ModelPricing = FREE,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.kind = kind
        self.model = f"{name}-model"
        self.pricing = pricing
        self.available = available
        self.delay = delay
        self.outcomes = list(outcomes or [f"{name} says hi"])
        self.calls = 0
        self.requests: list[CallRequest] = []
        self.availability_checks = 0

    async def is_available(self) -> bool:
        self.availability_checks += 1
        return self.available

    async def invoke(self, request: CallRequest) -> InvokeResult:
        self.calls += 1
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str):
            return ProviderResponse(
                text=outcome,
                prompt_tokens=self.estimate_tokens(request.messages),
                completion_tokens=estimate_text_tokens(outcome),
                model=self.model,
            )
        assert isinstance(outcome, (ProviderResponse, ProviderError))
        return outcome


@pytest.fixture
def make_provider():
    """Factory fixture: make_provider("openai", outcomes=[...])."""

    def _make(name: str = "fake", **kwargs: Any) -> FakeProvider:
        return FakeProvider(name, **kwargs)

    return _make


class RecordingSleep:
    """Drop-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_request():
    """Factory fixture building CallRequests from plain strings."""

    def _make(*contents: str, **fields: Any) -> CallRequest:
        messages = [{"role": "user", "content": content} for content in contents or ("Hello",)]
        return CallRequest.model_validate({"messages": messages, **fields})

    return _make
