"""LLMService - the single entry point for language-model calls.

Every call flows through the same pipeline:

1. Validate and normalize the request
2. Fingerprint it and replay a fossilized result when one exists
3. Estimate tokens and cost, then gate through the BudgetGuard
4. Order providers with the Router
5. Execute with the RetryExecutor, recording one UsageRecord per attempt
6. Fossilize successful output, or fall back deterministically

Callers always get a usable CallResult back. Exceptions escape only for
programmer errors (malformed requests, bad configuration).
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from llm_fossil.config import Settings, get_settings
from llm_fossil.core.errors import ErrorKind
from llm_fossil.core.input_validation import sanitize_for_fossil, validate_call_request
from llm_fossil.fossils import (
    FileFossilStore,
    FossilEntry,
    FossilLedger,
    FossilSource,
    InMemoryFossilStore,
    canonical_call_content,
    fingerprint,
)
from llm_fossil.routing.budget import BudgetGuard
from llm_fossil.routing.fallback import FallbackResponder
from llm_fossil.routing.providers import Provider, ProviderRegistry
from llm_fossil.routing.retry import AttemptRecord, RetryExecutor, SleepFn
from llm_fossil.routing.router import Router
from llm_fossil.routing.tokens import estimate_tokens
from llm_fossil.routing.types import CallRequest, CallResult, ProviderResponse
from llm_fossil.telemetry import bind_call_context, new_call_id, unbind_call_context
from llm_fossil.usage import (
    InMemoryUsageLedger,
    JsonFileUsageLedger,
    UsageAnalytics,
    UsageLedger,
    UsageRecord,
    UsageReport,
)

log = structlog.get_logger(__name__)

CALL_FOSSIL_TYPE = "llm_call"
FALLBACK_PROVIDER = "fallback"
FOSSIL_CACHE_PROVIDER = "fossil-cache"


class LLMService:
    """Budgeted, multi-provider LLM calls with a fossil ledger.

    Use as an async context manager so the usage ledger is opened and
    flushed with the service::

        async with LLMService(settings) as service:
            result = await service.call({...})

    Args:
        settings: Application settings (defaults to ``get_settings()``)
        registry: Provider registry (defaults to one built from settings)
        usage_ledger: Usage record sink (defaults by ``memory_only``)
        fossil_ledger: Fossil ledger (defaults by ``memory_only``)
        fallback: Fallback responder
        sleep: Awaitable used for retry backoff; inject to avoid real waits
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        registry: ProviderRegistry | None = None,
        usage_ledger: UsageLedger | None = None,
        fossil_ledger: FossilLedger | None = None,
        fallback: FallbackResponder | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings

        self._registry = registry if registry is not None else ProviderRegistry.from_settings(s)

        if usage_ledger is not None:
            self._usage = usage_ledger
        elif s.memory_only:
            self._usage = InMemoryUsageLedger()
        else:
            self._usage = JsonFileUsageLedger(s.usage_log_path)

        if fossil_ledger is not None:
            self._fossils = fossil_ledger
        elif s.memory_only:
            self._fossils = FossilLedger(InMemoryFossilStore())
        else:
            self._fossils = FossilLedger(FileFossilStore(s.fossil_storage_path))

        self._guard = BudgetGuard(
            max_tokens_per_call=s.max_tokens_per_call,
            max_cost_per_call=s.max_cost_per_call,
            min_value_score=s.min_value_score,
        )
        self._router = Router(
            self._registry,
            preference=s.routing_preference,
            complexity_threshold=s.complexity_threshold,
            cost_sensitivity=s.cost_sensitivity,
        )
        self._executor = RetryExecutor(
            retry_attempts=s.retry_attempts,
            retry_delay_ms=s.retry_delay_ms,
            rate_limit_max_delay_ms=s.rate_limit_max_delay_ms,
            timeout_seconds=s.call_timeout_seconds,
            sleep=sleep,
        )
        self._fallback = fallback or FallbackResponder()
        self._analytics = UsageAnalytics(high_cost_threshold=s.high_cost_threshold)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> LLMService:
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def open(self) -> None:
        await self._usage.open()
        await self._fossils.open()
        log.info(
            "llm_service.opened",
            providers=self._registry.names(),
            memory_only=self._settings.memory_only,
        )

    async def close(self) -> None:
        await self._usage.close()
        await self._registry.aclose()
        log.info("llm_service.closed")

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def fossils(self) -> FossilLedger:
        return self._fossils

    @property
    def usage_ledger(self) -> UsageLedger:
        return self._usage

    def register_provider(self, provider: Provider) -> None:
        self._registry.register(provider)

    async def usage_report(
        self,
        days: int | None = None,
        purpose: str | None = None,
        provider: str | None = None,
    ) -> UsageReport:
        """Compute analytics over the usage ledger."""
        since = datetime.now(UTC) - timedelta(days=days) if days is not None else None
        return self._analytics.compute(
            await self._usage.records(),
            since=since,
            purpose=purpose,
            provider=provider,
        )

    # ------------------------------------------------------------------ #
    # Calls
    # ------------------------------------------------------------------ #

    async def call(self, raw: CallRequest | Mapping[str, Any]) -> CallResult:
        """Execute one language-model call.

        Args:
            raw: A CallRequest or a mapping with the same fields

        Returns:
            CallResult; on budget rejection or provider exhaustion the text
            is fallback output and ``fallback`` is True

        Raises:
            RequestValidationError: If the request is malformed
        """
        request = validate_call_request(raw)
        call_id = new_call_id()
        bind_call_context(call_id, request.purpose, request.context)
        try:
            return await self._call(request, call_id)
        finally:
            unbind_call_context()

    async def _call(self, request: CallRequest, call_id: str) -> CallResult:
        started = time.perf_counter()
        request_fp = fingerprint(
            canonical_call_content(request.messages, request.capability),
            CALL_FOSSIL_TYPE,
            request.purpose,
        )
        title = f"{request.purpose}:{request_fp}"
        log.info("llm_service.call_started", fingerprint=request_fp)

        if self._settings.enable_fossil_cache and not request.force_refresh:
            replayed = await self._replay(request, call_id, request_fp, title, started)
            if replayed is not None:
                return replayed

        est_tokens = estimate_tokens(request.messages)
        route = self._router.order(request, est_tokens)
        candidates = route.providers

        def cost_estimator(tokens: int) -> float:
            # Budget against the most expensive provider that might run.
            return max((p.estimate_cost(tokens) for p in candidates), default=0.0)

        decision = self._guard.evaluate(
            request, est_tokens, cost_estimator(est_tokens), cost_estimator
        )
        if not decision.allow:
            await self._usage.append(
                UsageRecord(
                    call_id=call_id,
                    fingerprint=request_fp,
                    purpose=request.purpose,
                    context=request.context,
                    provider=FALLBACK_PROVIDER,
                    attempt=0,
                    success=False,
                    value_score=request.value_score,
                    error_kind=ErrorKind.BUDGET_EXCEEDED,
                    error_message=decision.reason,
                )
            )
            return self._fallback_result(
                request,
                call_id,
                request_fp,
                started,
                ErrorKind.BUDGET_EXCEEDED,
                decision.reason,
                truncated=decision.truncated,
            )

        dispatched = decision.request
        if decision.truncated:
            route = self._router.order(dispatched, decision.estimated_tokens)

        async def record_attempt(attempt: AttemptRecord) -> None:
            response = attempt.response
            await self._usage.append(
                UsageRecord(
                    timestamp=attempt.started_at,
                    call_id=call_id,
                    fingerprint=request_fp,
                    purpose=request.purpose,
                    context=request.context,
                    provider=attempt.provider,
                    model=attempt.model,
                    attempt=attempt.attempt,
                    input_tokens=response.prompt_tokens if response else 0,
                    output_tokens=response.completion_tokens if response else 0,
                    total_tokens=response.total_tokens if response else 0,
                    cost=attempt.cost,
                    duration_ms=attempt.duration_ms,
                    success=attempt.success,
                    value_score=request.value_score,
                    error_kind=attempt.error.kind if attempt.error else None,
                    error_message=attempt.error.message if attempt.error else None,
                )
            )

        outcome = await self._executor.attempt(route.providers, dispatched, record_attempt)

        if outcome.response is None or outcome.provider is None:
            error = outcome.error
            kind = error.kind if error else ErrorKind.PROVIDER_UNAVAILABLE
            message = error.message if error else "No provider produced a response"
            if not outcome.attempts:
                # Nothing was invoked, but the failure is still accounted for.
                await self._usage.append(
                    UsageRecord(
                        call_id=call_id,
                        fingerprint=request_fp,
                        purpose=request.purpose,
                        context=request.context,
                        provider=FALLBACK_PROVIDER,
                        attempt=0,
                        success=False,
                        value_score=request.value_score,
                        error_kind=kind,
                        error_message=message,
                    )
                )
            return self._fallback_result(
                request,
                call_id,
                request_fp,
                started,
                kind,
                message,
                truncated=decision.truncated,
                attempts=len(outcome.attempts),
                providers_tried=outcome.providers_tried,
            )

        response = outcome.response
        provider = outcome.provider
        fossil_id = None
        if self._settings.enable_fossil_cache:
            fossil_id = await self._fossilize(
                request, call_id, request_fp, title, provider, outcome.total_cost, response
            )

        result = CallResult(
            text=response.text,
            success=True,
            provider=provider.name,
            fingerprint=request_fp,
            call_id=call_id,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            cost=outcome.total_cost,
            duration_ms=_elapsed_ms(started),
            attempts=len(outcome.attempts),
            truncated=decision.truncated,
            fossil_id=fossil_id,
            providers_tried=outcome.providers_tried,
        )
        log.info(
            "llm_service.call_completed",
            provider=result.provider,
            total_tokens=result.total_tokens,
            cost=round(result.cost, 6),
            attempts=result.attempts,
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    async def _replay(
        self,
        request: CallRequest,
        call_id: str,
        request_fp: str,
        title: str,
        started: float,
    ) -> CallResult | None:
        fossil = await self._fossils.find(CALL_FOSSIL_TYPE, title)
        if fossil is None:
            return None

        await self._usage.append(
            UsageRecord(
                call_id=call_id,
                fingerprint=request_fp,
                purpose=request.purpose,
                context=request.context,
                provider=FOSSIL_CACHE_PROVIDER,
                model=str(fossil.metadata.get("model", "")),
                attempt=0,
                success=True,
                value_score=request.value_score,
            )
        )
        log.info("llm_service.replayed", fossil_id=fossil.id, version=fossil.version)
        return CallResult(
            text=fossil.content,
            success=True,
            provider=FOSSIL_CACHE_PROVIDER,
            fingerprint=request_fp,
            call_id=call_id,
            duration_ms=_elapsed_ms(started),
            deduplicated=True,
            fossil_id=fossil.id,
        )

    async def _fossilize(
        self,
        request: CallRequest,
        call_id: str,
        request_fp: str,
        title: str,
        provider: Provider,
        cost: float,
        response: ProviderResponse,
    ) -> str | None:
        metadata = sanitize_for_fossil(
            {
                "request": request.model_dump(
                    mode="json",
                    include={"messages", "capability", "context", "purpose", "value_score"},
                ),
                "request_fingerprint": request_fp,
                "call_id": call_id,
                "provider": provider.name,
                "model": response.model or provider.model,
                "prompt_tokens": response.prompt_tokens,
                "completion_tokens": response.completion_tokens,
                "cost": cost,
                "repository": f"{self._settings.repo_owner}/{self._settings.repo_name}",
            }
        )
        entry = FossilEntry(
            type=CALL_FOSSIL_TYPE,
            title=title,
            content=response.text,
            tags=["llm", request.purpose, request.context],
            metadata=metadata,
            source=FossilSource.LLM,
        )
        try:
            result = await self._fossils.find_or_create(entry, force_update=request.force_refresh)
        except OSError:
            # Storage failures leave the call result intact.
            log.exception("llm_service.fossilize_failed", title=title)
            return None
        return result.fossil.id

    def _fallback_result(
        self,
        request: CallRequest,
        call_id: str,
        request_fp: str,
        started: float,
        kind: ErrorKind,
        message: str | None,
        *,
        truncated: bool = False,
        attempts: int = 0,
        providers_tried: list[str] | None = None,
    ) -> CallResult:
        log.warning(
            "llm_service.fallback",
            error_kind=kind.value,
            error=message,
            attempts=attempts,
        )
        return CallResult(
            text=self._fallback.respond(request.purpose),
            success=False,
            provider=FALLBACK_PROVIDER,
            fingerprint=request_fp,
            call_id=call_id,
            duration_ms=_elapsed_ms(started),
            fallback=True,
            error_kind=kind,
            error_message=message,
            attempts=attempts,
            truncated=truncated,
            providers_tried=list(providers_tried or []),
        )


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
