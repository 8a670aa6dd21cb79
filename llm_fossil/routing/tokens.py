"""Token and cost estimation.

Estimates are heuristic and deliberately cheap: one token per four
characters, rounded up per message. They drive budgeting and routing before
any provider is contacted; actual usage reported by a provider replaces them
afterwards.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from llm_fossil.routing.types import Message

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class ModelPricing:
    """USD price per 1K tokens."""

    input_per_1k: float
    output_per_1k: float

    def cost(self, prompt_tokens: int, completion_tokens: int = 0) -> float:
        return (
            prompt_tokens * self.input_per_1k + completion_tokens * self.output_per_1k
        ) / 1000.0


# Approximate hosted pricing; unknown models fall back to the cheapest row.
DEFAULT_PRICING: dict[str, ModelPricing] = {
    "gpt-4": ModelPricing(input_per_1k=0.03, output_per_1k=0.06),
    "gpt-4-turbo": ModelPricing(input_per_1k=0.01, output_per_1k=0.03),
    "gpt-4o": ModelPricing(input_per_1k=0.005, output_per_1k=0.015),
    "gpt-4o-mini": ModelPricing(input_per_1k=0.00015, output_per_1k=0.0006),
    "gpt-3.5-turbo": ModelPricing(input_per_1k=0.0015, output_per_1k=0.002),
}
FALLBACK_MODEL = "gpt-3.5-turbo"
FREE = ModelPricing(input_per_1k=0.0, output_per_1k=0.0)


def estimate_text_tokens(text: str) -> int:
    """Estimate tokens for a single string: ceil(len / 4)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_tokens(messages: Iterable[Message]) -> int:
    """Estimate prompt tokens for a message sequence.

    Sums the per-message estimate, so appending messages never lowers the
    result.
    """
    return sum(estimate_text_tokens(message.content) for message in messages)


def pricing_for(model: str, table: dict[str, ModelPricing] | None = None) -> ModelPricing:
    """Look up pricing for a model, falling back to the default row."""
    prices = table if table is not None else DEFAULT_PRICING
    return prices.get(model) or prices.get(FALLBACK_MODEL) or FREE

