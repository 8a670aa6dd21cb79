"""Tests for BudgetGuard and message truncation.

Tests cover:
- Value-score gate rejects before any other check
- Token ceiling truncates (system messages kept verbatim, marker appended)
- Token ceiling rejects when system messages alone overflow
- Cost ceiling rejects after truncation
- Per-call overrides replace configured ceilings
- Raising the cost ceiling never turns an allowed call into a rejection
"""

from __future__ import annotations

import pytest

from llm_fossil.routing.budget import (
    REASON_COST_CEILING,
    REASON_LOW_VALUE,
    REASON_TOKEN_CEILING,
    TRUNCATION_MARKER,
    BudgetGuard,
    truncate_messages,
)
from llm_fossil.routing.tokens import estimate_tokens
from llm_fossil.routing.types import CallRequest, Message, Role


def _guard(**overrides) -> BudgetGuard:
    params = {"max_tokens_per_call": 4000, "max_cost_per_call": 0.10, "min_value_score": 0.3}
    params.update(overrides)
    return BudgetGuard(**params)


def _evaluate(guard: BudgetGuard, request: CallRequest, cost_per_token: float = 0.0):
    tokens = estimate_tokens(request.messages)
    return guard.evaluate(
        request,
        tokens,
        tokens * cost_per_token,
        cost_estimator=lambda t: t * cost_per_token,
    )


# ------------------------------------------------------------------ #
# Value gate
# ------------------------------------------------------------------ #


class TestValueGate:
    def test_low_value_rejected(self, make_request):
        guard = _guard(min_value_score=0.5)
        decision = _evaluate(guard, make_request("Tag this", value_score=0.1))

        assert decision.allow is False
        assert decision.reason == REASON_LOW_VALUE

    def test_value_at_threshold_allowed(self, make_request):
        guard = _guard(min_value_score=0.5)
        decision = _evaluate(guard, make_request("Tag this", value_score=0.5))
        assert decision.allow is True

    def test_missing_value_score_is_not_gated(self, make_request):
        guard = _guard(min_value_score=0.9)
        decision = _evaluate(guard, make_request("Tag this"))
        assert decision.allow is True

    def test_value_gate_checked_before_token_ceiling(self, make_request):
        guard = _guard(min_value_score=0.5, max_tokens_per_call=1)
        decision = _evaluate(guard, make_request("x" * 100, value_score=0.0))

        assert decision.reason == REASON_LOW_VALUE
        assert decision.truncated is False


# ------------------------------------------------------------------ #
# Token ceiling
# ------------------------------------------------------------------ #


class TestTokenCeiling:
    def test_long_message_truncated_to_ceiling(self, make_request):
        """A 500-character message under a 50-token ceiling is cut and marked."""
        guard = _guard(max_tokens_per_call=50)
        request = make_request("x" * 500)

        decision = _evaluate(guard, request)

        assert decision.allow is True
        assert decision.truncated is True
        assert decision.estimated_tokens <= 50
        assert decision.request.messages[-1].content.endswith(TRUNCATION_MARKER)
        # The original request is untouched
        assert request.messages[0].content == "x" * 500

    def test_under_ceiling_untouched(self, make_request):
        guard = _guard(max_tokens_per_call=50)
        request = make_request("short message")

        decision = _evaluate(guard, request)

        assert decision.truncated is False
        assert decision.request is request

    def test_system_messages_kept_verbatim(self):
        guard = _guard(max_tokens_per_call=30)
        system = "You are terse. " * 4
        request = CallRequest(
            messages=[
                Message(role=Role.SYSTEM, content=system),
                Message(role=Role.USER, content="first " * 20),
                Message(role=Role.ASSISTANT, content="reply " * 20),
            ]
        )

        decision = _evaluate(guard, request)

        assert decision.allow is True
        assert decision.request.messages[0] == Message(role=Role.SYSTEM, content=system)
        assert decision.estimated_tokens <= 30
        assert decision.request.messages[-1].content.endswith(TRUNCATION_MARKER)

    def test_messages_after_the_cut_are_dropped(self):
        request = CallRequest(
            messages=[
                Message(role=Role.USER, content="a" * 40),  # 10 tokens
                Message(role=Role.USER, content="b" * 400),  # 100 tokens
                Message(role=Role.USER, content="c" * 40),
            ]
        )

        messages = truncate_messages(request.messages, 20)

        assert [m.content[0] for m in messages] == ["a", "b"]
        assert messages[0].content == "a" * 40
        assert messages[1].content.endswith(TRUNCATION_MARKER)
        assert estimate_tokens(messages) <= 20

    def test_system_messages_alone_over_ceiling_rejected(self):
        guard = _guard(max_tokens_per_call=10)
        request = CallRequest(
            messages=[
                Message(role=Role.SYSTEM, content="s" * 200),
                Message(role=Role.USER, content="hello"),
            ]
        )

        decision = _evaluate(guard, request)

        assert decision.allow is False
        assert decision.reason == REASON_TOKEN_CEILING
        assert decision.request.messages[0].content == "s" * 200

    @pytest.mark.parametrize("ceiling", [1, 2, 3, 4, 5, 10, 37])
    def test_truncation_never_empties_sequence(self, ceiling):
        messages = [Message(role=Role.USER, content="word " * 100)]

        truncated = truncate_messages(messages, ceiling)

        assert len(truncated) >= 1

    @pytest.mark.parametrize("ceiling", [1, 2, 3, 4, 5, 8, 13, 50, 99])
    def test_truncation_fits_whenever_system_messages_fit(self, ceiling):
        messages = [
            Message(role=Role.SYSTEM, content="sys"),
            Message(role=Role.USER, content="q" * 1000),
        ]

        truncated = truncate_messages(messages, ceiling)

        assert truncated[0] == messages[0]
        assert estimate_tokens(truncated) <= ceiling

    def test_ceiling_below_marker_size_cuts_the_marker(self, make_request):
        guard = _guard(max_tokens_per_call=3)

        decision = _evaluate(guard, make_request("x" * 100))

        assert decision.allow is True
        assert decision.truncated is True
        assert [m.content for m in decision.request.messages] == [TRUNCATION_MARKER[:12]]
        assert decision.estimated_tokens <= 3

    def test_per_call_token_override(self, make_request):
        guard = _guard(max_tokens_per_call=4000)
        request = make_request("x" * 500, max_tokens_per_call=20)

        decision = _evaluate(guard, request)

        assert decision.truncated is True
        assert decision.estimated_tokens <= 20


# ------------------------------------------------------------------ #
# Cost ceiling
# ------------------------------------------------------------------ #


class TestCostCeiling:
    def test_over_cost_rejected(self, make_request):
        guard = _guard(max_cost_per_call=0.01)
        # 250 tokens at $0.001 / token = $0.25
        decision = _evaluate(guard, make_request("x" * 1000), cost_per_token=0.001)

        assert decision.allow is False
        assert decision.reason == REASON_COST_CEILING

    def test_cost_reestimated_after_truncation(self, make_request):
        # 250 tokens would cost $0.25; truncated to 50 tokens costs $0.05
        guard = _guard(max_tokens_per_call=50, max_cost_per_call=0.06)
        decision = _evaluate(guard, make_request("x" * 1000), cost_per_token=0.001)

        assert decision.allow is True
        assert decision.truncated is True
        assert decision.estimated_cost == pytest.approx(0.05)

    def test_per_call_cost_override(self, make_request):
        guard = _guard(max_cost_per_call=1.0)
        request = make_request("x" * 1000, max_cost_per_call=0.0)

        decision = _evaluate(guard, request, cost_per_token=0.001)

        assert decision.allow is False
        assert decision.reason == REASON_COST_CEILING

    def test_zero_cost_call_allowed_under_zero_ceiling(self, make_request):
        guard = _guard(max_cost_per_call=0.0)
        decision = _evaluate(guard, make_request("local is free"))
        assert decision.allow is True

    @pytest.mark.parametrize("length", [10, 400, 4000, 12_000])
    def test_raising_cost_ceiling_never_rejects_allowed_call(self, make_request, length):
        request = make_request("y" * length)
        ceilings = [0.0, 0.001, 0.01, 0.1, 1.0, 10.0]

        allowed = [
            _evaluate(_guard(max_cost_per_call=c), request, cost_per_token=0.0001).allow
            for c in ceilings
        ]

        # Once allowed, stays allowed as the ceiling rises
        first_allowed = allowed.index(True) if True in allowed else len(allowed)
        assert all(allowed[first_allowed:])


class TestGuardConstruction:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_tokens_per_call": 0},
            {"max_cost_per_call": -1.0},
            {"min_value_score": 1.5},
        ],
    )
    def test_invalid_ceilings_rejected(self, overrides):
        with pytest.raises(ValueError):
            _guard(**overrides)
