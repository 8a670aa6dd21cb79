"""Per-call budget enforcement.

The BudgetGuard is the gate every request passes before routing. It enforces,
in order:
- Minimum value score (reject low-value calls outright)
- Token ceiling (truncate, never reject, unless system messages alone overflow)
- Cost ceiling (reject after any truncation)

A rejected request never reaches a provider. Per-call overrides on the
request replace the configured ceilings for that call only.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import structlog

from llm_fossil.routing.tokens import CHARS_PER_TOKEN, estimate_text_tokens, estimate_tokens
from llm_fossil.routing.types import CallRequest, Message, Role

log = structlog.get_logger(__name__)

TRUNCATION_MARKER = "... [truncated]"

REASON_LOW_VALUE = "low value"
REASON_TOKEN_CEILING = "token ceiling"
REASON_COST_CEILING = "cost ceiling"


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of a budget evaluation.

    Attributes:
        allow: Whether the request may be dispatched
        reason: Rejection reason when allow is False
        request: The request to dispatch (truncated copy when truncated)
        estimated_tokens: Prompt token estimate after truncation
        estimated_cost: Cost estimate after truncation
        truncated: Whether messages were trimmed to fit the token ceiling
    """

    allow: bool
    request: CallRequest
    estimated_tokens: int
    estimated_cost: float
    reason: str | None = None
    truncated: bool = False


class BudgetGuard:
    """Enforces token, cost and value-score ceilings for single calls."""

    def __init__(
        self,
        max_tokens_per_call: int,
        max_cost_per_call: float,
        min_value_score: float,
    ) -> None:
        if max_tokens_per_call < 1:
            raise ValueError("max_tokens_per_call must be positive")
        if max_cost_per_call < 0:
            raise ValueError("max_cost_per_call cannot be negative")
        if not 0.0 <= min_value_score <= 1.0:
            raise ValueError("min_value_score must be within [0, 1]")

        self._max_tokens = max_tokens_per_call
        self._max_cost = max_cost_per_call
        self._min_value = min_value_score

        log.info(
            "budget_guard.initialized",
            max_tokens_per_call=max_tokens_per_call,
            max_cost_per_call=max_cost_per_call,
            min_value_score=min_value_score,
        )

    def evaluate(
        self,
        request: CallRequest,
        est_tokens: int,
        est_cost: float,
        cost_estimator: Callable[[int], float] | None = None,
    ) -> BudgetDecision:
        """Gate a request against the configured ceilings.

        Args:
            request: Validated call request
            est_tokens: Prompt token estimate for the request as given
            est_cost: Cost estimate for the request as given
            cost_estimator: Recomputes cost from a token count after
                truncation; when omitted the original estimate is kept

        Returns:
            BudgetDecision; when allowed, ``decision.request`` is what
            should be dispatched
        """
        max_tokens = request.max_tokens_per_call or self._max_tokens
        max_cost = (
            request.max_cost_per_call
            if request.max_cost_per_call is not None
            else self._max_cost
        )

        # 1. Value gate
        if request.value_score is not None and request.value_score < self._min_value:
            log.warning(
                "budget_guard.low_value_rejected",
                purpose=request.purpose,
                value_score=request.value_score,
                min_value_score=self._min_value,
            )
            return BudgetDecision(
                allow=False,
                reason=REASON_LOW_VALUE,
                request=request,
                estimated_tokens=est_tokens,
                estimated_cost=est_cost,
            )

        # 2. Token ceiling: truncate rather than reject
        truncated = False
        if est_tokens > max_tokens:
            messages = truncate_messages(request.messages, max_tokens)
            new_tokens = estimate_tokens(messages)
            log.warning(
                "budget_guard.truncated",
                purpose=request.purpose,
                estimated_tokens=est_tokens,
                truncated_tokens=new_tokens,
                max_tokens=max_tokens,
            )
            request = request.with_messages(messages)
            if cost_estimator is not None:
                est_cost = cost_estimator(new_tokens)
            est_tokens = new_tokens
            truncated = True

            if est_tokens > max_tokens:
                # System messages alone exceed the ceiling; they are never trimmed.
                log.warning(
                    "budget_guard.token_ceiling_rejected",
                    purpose=request.purpose,
                    estimated_tokens=est_tokens,
                    max_tokens=max_tokens,
                )
                return BudgetDecision(
                    allow=False,
                    reason=REASON_TOKEN_CEILING,
                    request=request,
                    estimated_tokens=est_tokens,
                    estimated_cost=est_cost,
                    truncated=truncated,
                )

        # 3. Cost ceiling
        if est_cost > max_cost:
            log.warning(
                "budget_guard.cost_ceiling_rejected",
                purpose=request.purpose,
                estimated_cost=round(est_cost, 6),
                max_cost=max_cost,
            )
            return BudgetDecision(
                allow=False,
                reason=REASON_COST_CEILING,
                request=request,
                estimated_tokens=est_tokens,
                estimated_cost=est_cost,
                truncated=truncated,
            )

        log.debug(
            "budget_guard.allowed",
            purpose=request.purpose,
            estimated_tokens=est_tokens,
            estimated_cost=round(est_cost, 6),
        )
        return BudgetDecision(
            allow=True,
            request=request,
            estimated_tokens=est_tokens,
            estimated_cost=est_cost,
            truncated=truncated,
        )


def truncate_messages(messages: list[Message], max_tokens: int) -> list[Message]:
    """Trim messages so their token estimate fits ``max_tokens``.

    System messages are kept verbatim wherever they appear. Non-system
    messages are kept in order while they fit; the first one that does not
    fit is cut and ends with TRUNCATION_MARKER (itself shortened when fewer
    than its four tokens remain), and everything after it
    (except system messages) is dropped. A non-empty input always yields a
    non-empty output.
    """
    system_tokens = sum(
        estimate_text_tokens(m.content) for m in messages if m.role == Role.SYSTEM
    )
    remaining = max_tokens - system_tokens

    result: list[Message] = []
    cut = False
    for message in messages:
        if message.role == Role.SYSTEM:
            result.append(message)
            continue
        if cut:
            continue

        tokens = estimate_text_tokens(message.content)
        if tokens <= remaining:
            result.append(message)
            remaining -= tokens
            continue

        # ceil((keep + marker) / 4) <= remaining  <=>  keep + marker <= 4 * remaining
        keep_chars = remaining * CHARS_PER_TOKEN - len(TRUNCATION_MARKER)
        if keep_chars >= 0:
            content = message.content[:keep_chars] + TRUNCATION_MARKER
        else:
            # Too tight for the full marker: the marker itself is cut.
            content = TRUNCATION_MARKER[: max(remaining, 0) * CHARS_PER_TOKEN]
        if content:
            result.append(Message(role=message.role, content=content))
            remaining = 0
        cut = True

    if not result and messages:
        first = messages[0]
        result.append(Message(role=first.role, content=TRUNCATION_MARKER))

    return result
