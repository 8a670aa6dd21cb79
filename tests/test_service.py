"""End-to-end tests for LLMService.

Tests cover:
- Budget rejection returns fallback text without invoking any provider
- Successful calls are fossilized and recorded in the usage ledger
- Identical calls replay the fossil instead of calling a provider
- force_refresh records a new fossil version
- Exhausted provider chains fall back deterministically
- File-backed ledgers survive a service restart
"""

from __future__ import annotations

import json

import pytest
import structlog

from llm_fossil.core.errors import ErrorKind, ProviderError, RequestValidationError
from llm_fossil.routing.budget import REASON_COST_CEILING, REASON_LOW_VALUE
from llm_fossil.routing.fallback import FALLBACK_RESPONSES, GENERIC_FALLBACK
from llm_fossil.routing.providers import ProviderRegistry
from llm_fossil.routing.tokens import ModelPricing
from llm_fossil.routing.types import ProviderKind
from llm_fossil.service import (
    CALL_FOSSIL_TYPE,
    FALLBACK_PROVIDER,
    FOSSIL_CACHE_PROVIDER,
    LLMService,
)

RATE_LIMITED = ProviderError(kind=ErrorKind.RATE_LIMITED, message="429 Too Many Requests")


def _call(content: str = "Summarise the release notes", **fields) -> dict:
    params = {
        "messages": [{"role": "user", "content": content}],
        "purpose": "excerpt-generation",
        "context": "ci",
    }
    params.update(fields)
    return params


@pytest.fixture
def hosted(make_provider):
    return make_provider("openai", kind=ProviderKind.HOSTED)


@pytest.fixture
def service_factory(settings, recording_sleep):
    """Build a service around explicit providers and settings overrides."""

    def _make(*providers, **overrides) -> LLMService:
        configured = settings.model_copy(update=overrides) if overrides else settings
        return LLMService(
            configured,
            registry=ProviderRegistry(list(providers)),
            sleep=recording_sleep,
        )

    return _make


# ------------------------------------------------------------------ #
# Budget gate
# ------------------------------------------------------------------ #


class TestBudgetGate:
    @pytest.mark.asyncio
    async def test_low_value_call_never_reaches_a_provider(self, service_factory, hosted):
        service = service_factory(hosted, min_value_score=0.5)

        async with service:
            result = await service.call(_call(purpose="semantic-tagging", value_score=0.1))
            records = await service.usage_ledger.records()

        assert hosted.calls == 0
        assert result.fallback is True
        assert result.success is False
        assert result.provider == FALLBACK_PROVIDER
        assert result.error_kind == ErrorKind.BUDGET_EXCEEDED
        assert result.error_message == REASON_LOW_VALUE
        assert json.loads(result.text)["semanticCategory"] == "general"

        assert len(records) == 1
        assert records[0].provider == FALLBACK_PROVIDER
        assert records[0].attempt == 0
        assert records[0].success is False
        assert records[0].error_kind == ErrorKind.BUDGET_EXCEEDED
        assert records[0].value_score == 0.1

    @pytest.mark.asyncio
    async def test_cost_ceiling_uses_candidate_pricing(self, service_factory, make_provider):
        expensive = make_provider(
            "premium",
            kind=ProviderKind.HOSTED,
            pricing=ModelPricing(input_per_1k=100.0, output_per_1k=100.0),
        )
        service = service_factory(expensive, max_cost_per_call=0.01)

        async with service:
            result = await service.call(_call())

        assert expensive.calls == 0
        assert result.error_message == REASON_COST_CEILING

    @pytest.mark.asyncio
    async def test_oversized_request_is_truncated_before_dispatch(self, service_factory, hosted):
        service = service_factory(hosted, max_tokens_per_call=20)

        async with service:
            result = await service.call(_call("x" * 400))

        assert result.success is True
        assert result.truncated is True
        sent = hosted.requests[0].messages[0].content
        assert sent.endswith("... [truncated]")
        assert len(sent) <= 80


# ------------------------------------------------------------------ #
# Successful calls and replay
# ------------------------------------------------------------------ #


class TestSuccessfulCalls:
    @pytest.mark.asyncio
    async def test_success_is_recorded_and_fossilized(self, service_factory, hosted):
        service = service_factory(hosted, repo_owner="acme", repo_name="widgets")

        async with service:
            result = await service.call(_call(value_score=0.9))
            records = await service.usage_ledger.records()
            fossil = await service.fossils.get(result.fossil_id)

        assert result.success is True
        assert result.text == "openai says hi"
        assert result.provider == "openai"
        assert result.attempts == 1
        assert result.deduplicated is False
        assert result.fallback is False

        assert len(records) == 1
        assert records[0].provider == "openai"
        assert records[0].call_id == result.call_id
        assert records[0].fingerprint == result.fingerprint
        assert records[0].total_tokens == result.total_tokens

        assert fossil is not None
        assert fossil.type == CALL_FOSSIL_TYPE
        assert fossil.title == f"excerpt-generation:{result.fingerprint}"
        assert fossil.content == "openai says hi"
        assert fossil.tags == ["llm", "excerpt-generation", "ci"]
        assert fossil.metadata["repository"] == "acme/widgets"
        assert fossil.metadata["call_id"] == result.call_id
        assert fossil.source == "llm"

    @pytest.mark.asyncio
    async def test_identical_call_replays_fossil(self, service_factory, hosted):
        service = service_factory(hosted)

        async with service:
            first = await service.call(_call())
            second = await service.call(_call())
            records = await service.usage_ledger.records()

        assert hosted.calls == 1
        assert second.deduplicated is True
        assert second.provider == FOSSIL_CACHE_PROVIDER
        assert second.text == first.text
        assert second.fossil_id == first.fossil_id
        assert second.fingerprint == first.fingerprint
        assert second.call_id != first.call_id

        assert [r.provider for r in records] == ["openai", FOSSIL_CACHE_PROVIDER]
        assert records[1].attempt == 0
        assert records[1].cost == 0.0

    @pytest.mark.asyncio
    async def test_different_purpose_is_a_different_call(self, service_factory, hosted):
        service = service_factory(hosted)

        async with service:
            first = await service.call(_call(purpose="excerpt-generation"))
            second = await service.call(_call(purpose="content-generation"))

        assert hosted.calls == 2
        assert first.fingerprint != second.fingerprint

    @pytest.mark.asyncio
    async def test_force_refresh_records_new_version(self, service_factory, make_provider):
        provider = make_provider("openai", outcomes=["first answer", "second answer"])
        service = service_factory(provider)

        async with service:
            first = await service.call(_call())
            refreshed = await service.call(_call(force_refresh=True))
            fossil = await service.fossils.get(first.fossil_id)

        assert provider.calls == 2
        assert refreshed.deduplicated is False
        assert refreshed.text == "second answer"
        assert fossil is not None
        assert fossil.version == 2
        assert fossil.content == "second answer"
        assert [v.content for v in fossil.history] == ["first answer"]

    @pytest.mark.asyncio
    async def test_cache_disabled_always_invokes(self, service_factory, hosted):
        service = service_factory(hosted, enable_fossil_cache=False)

        async with service:
            first = await service.call(_call())
            await service.call(_call())

        assert hosted.calls == 2
        assert first.fossil_id is None
        assert len(service.fossils) == 0

    @pytest.mark.asyncio
    async def test_rate_limited_call_records_every_attempt(
        self, service_factory, make_provider, recording_sleep
    ):
        provider = make_provider("A", outcomes=[RATE_LIMITED, RATE_LIMITED, "finally"])
        service = service_factory(provider)

        async with service:
            result = await service.call(_call())
            records = await service.usage_ledger.records()

        assert result.success is True
        assert result.provider == "A"
        assert result.text == "finally"
        assert result.attempts == 3
        assert [r.provider for r in records] == ["A", "A", "A"]
        assert [r.success for r in records] == [False, False, True]
        assert [r.error_kind for r in records[:2]] == [ErrorKind.RATE_LIMITED] * 2
        assert {r.call_id for r in records} == {result.call_id}
        assert recording_sleep.delays == [pytest.approx(0.01), pytest.approx(0.02)]

    @pytest.mark.asyncio
    async def test_log_context_unbound_after_call(self, service_factory, hosted):
        service = service_factory(hosted)

        async with service:
            await service.call(_call())

        assert "call_id" not in structlog.contextvars.get_contextvars()


# ------------------------------------------------------------------ #
# Failures
# ------------------------------------------------------------------ #


class TestFailures:
    @pytest.mark.asyncio
    async def test_all_providers_fail_returns_fallback(self, service_factory, make_provider):
        broken = make_provider(
            "openai", outcomes=[ProviderError(kind=ErrorKind.PROVIDER_FAULT, message="500")]
        )
        service = service_factory(broken)

        async with service:
            result = await service.call(_call())
            records = await service.usage_ledger.records()

        assert result.fallback is True
        assert result.text == FALLBACK_RESPONSES["excerpt-generation"]
        assert result.error_kind == ErrorKind.PROVIDER_FAULT
        assert result.providers_tried == ["openai"]
        assert len(records) == 1
        assert records[0].provider == "openai"
        assert len(service.fossils) == 0

    @pytest.mark.asyncio
    async def test_no_available_provider_still_recorded(self, service_factory, make_provider):
        offline = make_provider("openai", available=False)
        service = service_factory(offline)

        async with service:
            result = await service.call(_call(purpose="haiku"))
            records = await service.usage_ledger.records()

        assert offline.calls == 0
        assert result.text == GENERIC_FALLBACK
        assert result.error_kind == ErrorKind.PROVIDER_UNAVAILABLE
        assert len(records) == 1
        assert records[0].provider == FALLBACK_PROVIDER
        assert records[0].error_kind == ErrorKind.PROVIDER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_failover_to_second_provider(self, service_factory, make_provider):
        down = make_provider(
            "openai",
            outcomes=[ProviderError(kind=ErrorKind.PROVIDER_UNAVAILABLE, message="503")],
        )
        backup = make_provider("backup")
        service = service_factory(down, backup)

        async with service:
            result = await service.call(_call())

        assert result.provider == "backup"
        assert result.providers_tried == ["openai", "backup"]
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_malformed_request_raises(self, service_factory, hosted):
        service = service_factory(hosted)

        async with service:
            with pytest.raises(RequestValidationError):
                await service.call({"messages": [], "purpose": "x"})
            records = await service.usage_ledger.records()

        assert records == []
        assert hosted.calls == 0

    @pytest.mark.asyncio
    async def test_unwritable_usage_log_does_not_lose_result(
        self, service_factory, hosted, tmp_path
    ):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        service = service_factory(
            hosted,
            memory_only=False,
            usage_log_path=str(blocker / "usage.json"),
            fossil_storage_path=str(tmp_path / "fossils"),
        )

        async with service:
            result = await service.call(_call())
            records = await service.usage_ledger.records()

        assert hosted.calls == 1
        assert result.success is True
        assert result.text == "openai says hi"
        assert len(records) == 1
        assert not (blocker / "usage.json").exists()


# ------------------------------------------------------------------ #
# Configuration-driven wiring
# ------------------------------------------------------------------ #


class TestWiring:
    @pytest.mark.asyncio
    async def test_test_mode_uses_mock_providers(self, settings):
        service = LLMService(settings.model_copy(update={"test_mode": True}))

        async with service:
            result = await service.call(_call("What changed?"))

        assert result.success is True
        assert result.provider == "mock-local"
        assert result.text == "[mock:excerpt-generation] What changed?"

    @pytest.mark.asyncio
    async def test_file_backed_state_survives_restart(self, settings, tmp_path):
        configured = settings.model_copy(
            update={
                "test_mode": True,
                "memory_only": False,
                "usage_log_path": str(tmp_path / "usage.json"),
                "fossil_storage_path": str(tmp_path / "fossils"),
            }
        )

        async with LLMService(configured) as service:
            first = await service.call(_call())

        async with LLMService(configured) as service:
            second = await service.call(_call())
            report = await service.usage_report()

        assert second.deduplicated is True
        assert second.fossil_id == first.fossil_id
        assert report.total_calls == 2
        assert (tmp_path / "fossils" / "index.json").exists()
        assert len(json.loads((tmp_path / "usage.json").read_text())) == 2

    @pytest.mark.asyncio
    async def test_usage_report_filters(self, service_factory, hosted):
        service = service_factory(hosted)

        async with service:
            await service.call(_call("one", purpose="semantic-tagging"))
            await service.call(_call("two", purpose="excerpt-generation"))
            everything = await service.usage_report(days=1)
            tagging = await service.usage_report(purpose="semantic-tagging")

        assert everything.total_calls == 2
        assert tagging.total_calls == 1
        assert tagging.top_purposes[0].key == "semantic-tagging"
