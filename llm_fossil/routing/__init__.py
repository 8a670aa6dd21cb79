"""Call routing, budgeting and provider execution.

This package decides whether a call may run, which providers to try and in
what order, and how to retry them:
- BudgetGuard gates requests on value score, token and cost ceilings
- Router orders providers by preference or complexity
- RetryExecutor tries providers sequentially with rate-limit backoff
- FallbackResponder supplies deterministic output when everything fails
"""

from __future__ import annotations

from llm_fossil.routing.budget import BudgetDecision, BudgetGuard
from llm_fossil.routing.complexity import ComplexityEstimator, TaskComplexity
from llm_fossil.routing.fallback import FallbackResponder
from llm_fossil.routing.providers import (
    HostedHTTPProvider,
    LocalCommandProvider,
    MockProvider,
    Provider,
    ProviderRegistry,
)
from llm_fossil.routing.retry import AttemptRecord, ExecutionOutcome, RetryExecutor
from llm_fossil.routing.router import Router, RoutingDecision
from llm_fossil.routing.types import CallRequest, CallResult, Message, ProviderResponse

__all__ = [
    "AttemptRecord",
    "BudgetDecision",
    "BudgetGuard",
    "CallRequest",
    "CallResult",
    "ComplexityEstimator",
    "ExecutionOutcome",
    "FallbackResponder",
    "HostedHTTPProvider",
    "LocalCommandProvider",
    "Message",
    "MockProvider",
    "Provider",
    "ProviderRegistry",
    "ProviderResponse",
    "RetryExecutor",
    "Router",
    "RoutingDecision",
    "TaskComplexity",
]
