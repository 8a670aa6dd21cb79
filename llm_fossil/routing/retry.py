"""Sequential provider execution with rate-limit retries.

Providers are tried one at a time in router order. Per provider:

1. Probe availability; an unavailable provider is skipped without invoking.
2. Invoke under the per-invocation timeout.
3. Branch on the outcome:
   - success: stop, return the response
   - RATE_LIMITED: retry the same provider (tenacity), waiting
     ``base_delay * attempt_number`` or the provider's retry hint, capped
   - PROVIDER_UNAVAILABLE / PROVIDER_FAULT / TIMEOUT: advance to the next
     provider without retrying
   - VALIDATION: abort the whole chain (a malformed request will not get
     better on another backend)

Every invocation produces exactly one AttemptRecord, reported through the
``on_attempt`` callback so callers can persist usage as it happens.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
)

from llm_fossil.core.errors import ErrorKind, ProviderError
from llm_fossil.routing.providers import InvokeResult, Provider
from llm_fossil.routing.types import CallRequest, ProviderResponse

log = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class AttemptRecord:
    """One provider invocation.

    Attributes:
        provider: Provider name
        model: Model reported by (or configured on) the provider
        attempt: 1-based position of this invocation within the call
        provider_attempt: 1-based position within this provider's retries
        started_at: Wall-clock start (UTC)
        duration_ms: Invocation latency
        response: Provider output on success
        error: Classified failure otherwise
        cost: Actual cost charged for this invocation
    """

    provider: str
    model: str
    attempt: int
    provider_attempt: int
    started_at: datetime
    duration_ms: float
    response: ProviderResponse | None = None
    error: ProviderError | None = None
    cost: float = 0.0

    @property
    def success(self) -> bool:
        return self.response is not None


@dataclass
class ExecutionOutcome:
    """Result of running a request through the provider chain."""

    response: ProviderResponse | None
    provider: Provider | None
    attempts: list[AttemptRecord] = field(default_factory=list)
    error: ProviderError | None = None
    providers_tried: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.response is not None

    @property
    def total_cost(self) -> float:
        return sum(record.cost for record in self.attempts)


class RetryExecutor:
    """Runs a request through ordered providers with bounded retries."""

    def __init__(
        self,
        retry_attempts: int = 3,
        retry_delay_ms: int = 1000,
        rate_limit_max_delay_ms: int = 60_000,
        timeout_seconds: float = 60.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self._retry_attempts = retry_attempts
        self._base_delay = retry_delay_ms / 1000.0
        self._max_delay = rate_limit_max_delay_ms / 1000.0
        self._timeout = timeout_seconds
        self._sleep = sleep

    async def attempt(
        self,
        providers: list[Provider],
        request: CallRequest,
        on_attempt: Callable[[AttemptRecord], Awaitable[None]] | None = None,
    ) -> ExecutionOutcome:
        """Try ``providers`` in order until one succeeds.

        Args:
            providers: Router-ordered providers
            request: Budget-approved request to dispatch
            on_attempt: Awaited once per invocation with its record

        Returns:
            ExecutionOutcome; ``error`` holds the last classified failure
            when every provider failed
        """
        attempts: list[AttemptRecord] = []
        tried: list[str] = []
        last_error: ProviderError | None = None
        timeout = request.timeout_seconds or self._timeout

        for provider in providers:
            if not await self._is_available(provider):
                last_error = ProviderError(
                    kind=ErrorKind.PROVIDER_UNAVAILABLE,
                    message=f"{provider.name} is not available",
                )
                continue

            tried.append(provider.name)
            result = await self._run_provider(provider, request, timeout, attempts, on_attempt)

            if isinstance(result, ProviderResponse):
                log.info(
                    "retry_executor.succeeded",
                    provider=provider.name,
                    attempts=len(attempts),
                )
                return ExecutionOutcome(
                    response=result,
                    provider=provider,
                    attempts=attempts,
                    providers_tried=tried,
                )

            last_error = result
            if result.kind.is_fatal:
                log.warning(
                    "retry_executor.aborted",
                    provider=provider.name,
                    error_kind=result.kind.value,
                    error=result.message,
                )
                break

            log.warning(
                "retry_executor.provider_failed",
                provider=provider.name,
                error_kind=result.kind.value,
                error=result.message,
            )

        if last_error is None:
            last_error = ProviderError(
                kind=ErrorKind.PROVIDER_UNAVAILABLE,
                message="No providers configured for this request",
            )
        log.warning(
            "retry_executor.exhausted",
            providers_tried=tried,
            attempts=len(attempts),
            error_kind=last_error.kind.value,
        )
        return ExecutionOutcome(
            response=None,
            provider=None,
            attempts=attempts,
            error=last_error,
            providers_tried=tried,
        )

    async def _is_available(self, provider: Provider) -> bool:
        try:
            available = await provider.is_available()
        except Exception:
            log.exception("retry_executor.availability_probe_failed", provider=provider.name)
            return False
        if not available:
            log.info("retry_executor.provider_skipped", provider=provider.name)
        return available

    async def _run_provider(
        self,
        provider: Provider,
        request: CallRequest,
        timeout: float,
        attempts: list[AttemptRecord],
        on_attempt: Callable[[AttemptRecord], Awaitable[None]] | None,
    ) -> InvokeResult:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            retry=retry_if_result(_is_rate_limited),
            wait=self._wait,
            sleep=self._sleep,
            before_sleep=_log_rate_limited,
            retry_error_callback=_last_result,
        )
        return await retrying(
            self._invoke_once, provider, request, timeout, attempts, on_attempt
        )

    async def _invoke_once(
        self,
        provider: Provider,
        request: CallRequest,
        timeout: float,
        attempts: list[AttemptRecord],
        on_attempt: Callable[[AttemptRecord], Awaitable[None]] | None,
    ) -> InvokeResult:
        started_at = datetime.now(UTC)
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(provider.invoke(request), timeout=timeout)
        except TimeoutError:
            result = ProviderError(
                kind=ErrorKind.TIMEOUT,
                message=f"{provider.name} did not respond within {timeout}s",
            )
        except Exception as exc:
            log.exception("retry_executor.provider_raised", provider=provider.name)
            result = ProviderError(
                kind=ErrorKind.PROVIDER_FAULT,
                message=f"{type(exc).__name__}: {exc}",
            )
        duration_ms = (time.perf_counter() - start) * 1000

        if isinstance(result, ProviderResponse):
            record = AttemptRecord(
                provider=provider.name,
                model=result.model or provider.model,
                attempt=len(attempts) + 1,
                provider_attempt=_provider_attempt(attempts, provider.name),
                started_at=started_at,
                duration_ms=duration_ms,
                response=result,
                cost=provider.actual_cost(result.prompt_tokens, result.completion_tokens),
            )
        else:
            record = AttemptRecord(
                provider=provider.name,
                model=provider.model,
                attempt=len(attempts) + 1,
                provider_attempt=_provider_attempt(attempts, provider.name),
                started_at=started_at,
                duration_ms=duration_ms,
                error=result,
            )
        attempts.append(record)

        if on_attempt is not None:
            await on_attempt(record)
        return result

    def _wait(self, retry_state: RetryCallState) -> float:
        """Backoff before the next attempt on the same provider.

        Provider hints win over the linear schedule but never exceed
        ``rate_limit_max_delay_ms``.
        """
        outcome = retry_state.outcome
        error = outcome.result() if outcome is not None and not outcome.failed else None
        if isinstance(error, ProviderError) and error.retry_after is not None:
            return min(error.retry_after, self._max_delay)
        return self._base_delay * retry_state.attempt_number


def _is_rate_limited(result: InvokeResult) -> bool:
    return isinstance(result, ProviderError) and result.kind.is_retryable


def _last_result(retry_state: RetryCallState) -> InvokeResult:
    if retry_state.outcome is None:
        return ProviderError(kind=ErrorKind.PROVIDER_FAULT, message="No attempt was recorded")
    return retry_state.outcome.result()


def _log_rate_limited(retry_state: RetryCallState) -> None:
    log.warning(
        "retry_executor.rate_limited",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
    )


def _provider_attempt(attempts: list[AttemptRecord], provider_name: str) -> int:
    return sum(1 for record in attempts if record.provider == provider_name) + 1
