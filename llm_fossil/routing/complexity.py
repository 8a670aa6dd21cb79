"""Request complexity estimation for local-vs-hosted routing.

The ComplexityEstimator combines several heuristic factors into a single
score in [0.0, 1.0]:

Factors analyzed:
- Estimated prompt size in tokens
- Domain keywords that signal code or analysis work
- Purpose labels that imply analysis (insights, recommendations, review)

The weighted score is then discounted by ``cost_sensitivity``: the more
cost-sensitive the deployment, the more work is considered simple enough
for a local provider.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from llm_fossil.routing.types import CallRequest

log = structlog.get_logger(__name__)


@dataclass
class TaskComplexity:
    """Result of complexity estimation.

    Attributes:
        score: Discounted complexity score (0.0-1.0)
        raw_score: Weighted factor score before the cost-sensitivity discount
        factors: Individual factor scores for observability
    """

    score: float
    raw_score: float
    factors: dict[str, float]

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"Complexity score must be 0.0-1.0, got {self.score}")


class ComplexityEstimator:
    """Scores requests so the router can prefer cheap local execution."""

    # Prompt size at which the token factor saturates
    TOKEN_SATURATION = 2000

    # Maximum share of the score removed at cost_sensitivity=1.0
    MAX_COST_DISCOUNT = 0.5

    COMPLEX_KEYWORDS = {
        "analyze",
        "analysis",
        "architecture",
        "algorithm",
        "code",
        "debug",
        "refactor",
        "function",
        "class",
        "implement",
        "optimize",
        "security",
        "vulnerability",
        "reasoning",
        "evaluate",
        "review",
        "audit",
    }

    ANALYTICAL_PURPOSES = ("analysis", "insights", "recommendations", "review")

    WEIGHTS = {
        "token_volume": 0.45,
        "keyword_signals": 0.35,
        "purpose_signals": 0.2,
    }

    def __init__(self, cost_sensitivity: float) -> None:
        if not 0.0 <= cost_sensitivity <= 1.0:
            raise ValueError("cost_sensitivity must be within [0, 1]")
        self._cost_sensitivity = cost_sensitivity

    def estimate(self, request: CallRequest, est_tokens: int) -> TaskComplexity:
        """Estimate the complexity of a request.

        Args:
            request: Validated call request
            est_tokens: Prompt token estimate for the request

        Returns:
            TaskComplexity with discounted score and factor breakdown
        """
        text = " ".join(message.content for message in request.messages)

        factors = {
            "token_volume": self._analyze_tokens(est_tokens),
            "keyword_signals": self._analyze_keywords(text),
            "purpose_signals": self._analyze_purpose(request.purpose),
        }

        raw = sum(factors[key] * self.WEIGHTS[key] for key in factors)
        raw = max(0.0, min(1.0, raw))
        score = raw * (1.0 - self.MAX_COST_DISCOUNT * self._cost_sensitivity)

        log.debug(
            "complexity_estimator.estimated",
            score=round(score, 4),
            raw_score=round(raw, 4),
            factors=factors,
        )
        return TaskComplexity(score=score, raw_score=raw, factors=factors)

    def _analyze_tokens(self, est_tokens: int) -> float:
        # 0 tokens = 0.0, TOKEN_SATURATION+ tokens = 1.0
        if est_tokens <= 0:
            return 0.0
        return min(est_tokens / self.TOKEN_SATURATION, 1.0)

    def _analyze_keywords(self, text: str) -> float:
        """Score code/analysis vocabulary.

        1 keyword = 0.5, 4+ keywords = 1.0
        """
        words = set(re.findall(r"\b\w+\b", text.lower()))
        count = sum(1 for keyword in self.COMPLEX_KEYWORDS if keyword in words)
        if count == 0:
            return 0.0
        return min(0.3 + count * 0.2, 1.0)

    def _analyze_purpose(self, purpose: str) -> float:
        lowered = purpose.lower()
        if any(marker in lowered for marker in self.ANALYTICAL_PURPOSES):
            return 1.0
        return 0.0
