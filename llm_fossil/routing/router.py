"""Provider router - decides the order in which providers are tried.

Routing is a pure function of the request, its token estimate and the
registry contents. Availability is not probed here: the retry executor
probes each provider when its turn comes.

Preferences:
- LOCAL: local providers only, in registration order
- CLOUD: hosted providers only, in registration order
- AUTO: complexity below the threshold → local first, then hosted;
  otherwise hosted first, then local
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from llm_fossil.config import RoutingPreference
from llm_fossil.routing.complexity import ComplexityEstimator, TaskComplexity
from llm_fossil.routing.providers import Provider, ProviderRegistry
from llm_fossil.routing.types import CallRequest

log = structlog.get_logger(__name__)


@dataclass
class RoutingDecision:
    """Ordered providers plus the reasoning behind the order."""

    providers: list[Provider]
    preference: RoutingPreference
    complexity: TaskComplexity | None = None

    @property
    def names(self) -> list[str]:
        return [provider.name for provider in self.providers]


class Router:
    """Orders registered providers for a request."""

    def __init__(
        self,
        registry: ProviderRegistry,
        preference: RoutingPreference = RoutingPreference.AUTO,
        complexity_threshold: float = 0.6,
        cost_sensitivity: float = 0.8,
    ) -> None:
        self._registry = registry
        self._preference = preference
        self._threshold = complexity_threshold
        self._estimator = ComplexityEstimator(cost_sensitivity)

    def order(self, request: CallRequest, est_tokens: int) -> RoutingDecision:
        """Return providers in the order they should be attempted.

        A per-request ``routing_preference`` overrides the configured one.
        The result may be empty when no provider matches the preference.
        """
        preference = request.routing_preference or self._preference

        if preference == RoutingPreference.LOCAL:
            decision = RoutingDecision(self._registry.local(), preference)
        elif preference == RoutingPreference.CLOUD:
            decision = RoutingDecision(self._registry.hosted(), preference)
        else:
            complexity = self._estimator.estimate(request, est_tokens)
            if complexity.score < self._threshold:
                providers = self._registry.local() + self._registry.hosted()
            else:
                providers = self._registry.hosted() + self._registry.local()
            decision = RoutingDecision(providers, preference, complexity)

        log.info(
            "router.ordered",
            preference=preference.value,
            complexity=(
                round(decision.complexity.score, 4) if decision.complexity else None
            ),
            threshold=self._threshold,
            providers=decision.names,
        )
        return decision
