"""Request, response and result types shared by the routing layer.

``CallRequest`` is a pydantic model so that malformed request shapes are
rejected at the boundary. The remaining types are plain dataclasses: they
are created internally and never parsed from untrusted input.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from llm_fossil.config import RoutingPreference
from llm_fossil.core.errors import ErrorKind


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ProviderKind(StrEnum):
    """Execution path of a provider."""

    LOCAL = "local"  # On-device subprocess backend
    HOSTED = "hosted"  # Vendor HTTPS endpoint


class Message(BaseModel):
    """A single role-tagged chat message."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class CallRequest(BaseModel):
    """Transient description of one language-model call.

    Attributes:
        messages: Ordered role-tagged messages (at least one)
        capability: Target capability / model identifier
        context: Where the call originates (e.g. "ci", "cli")
        purpose: What the call is for; drives fallbacks and analytics
        value_score: Caller's estimate of result worth in [0, 1]
        routing_preference: Per-call override of the configured preference
        max_tokens_per_call: Per-call token ceiling override
        max_cost_per_call: Per-call cost ceiling override
        timeout_seconds: Per-invocation timeout override
        force_refresh: Bypass fossil replay and record a new version
    """

    model_config = ConfigDict(extra="forbid")

    messages: list[Message] = Field(min_length=1)
    capability: str = Field(default="chat", min_length=1)
    context: str = Field(default="unknown", min_length=1)
    purpose: str = Field(default="general", min_length=1)
    value_score: float | None = Field(default=None, ge=0.0, le=1.0)
    routing_preference: RoutingPreference | None = None
    max_tokens_per_call: int | None = Field(default=None, ge=1)
    max_cost_per_call: float | None = Field(default=None, ge=0.0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    force_refresh: bool = False

    def with_messages(self, messages: list[Message]) -> CallRequest:
        """Return a copy carrying a different message list."""
        return self.model_copy(update={"messages": messages})


@dataclass(frozen=True)
class ProviderResponse:
    """Successful provider output."""

    text: str
    prompt_tokens: int
    completion_tokens: int
    model: str = ""

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class CallResult:
    """What the caller receives from ``LLMService.call``.

    A CallResult is always usable: when budgets reject a call or every
    provider fails, ``text`` carries deterministic fallback output and
    ``fallback`` is True.
    """

    text: str
    success: bool
    provider: str
    fingerprint: str
    call_id: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    duration_ms: float = 0.0
    fallback: bool = False
    deduplicated: bool = False
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    attempts: int = 0
    truncated: bool = False
    fossil_id: str | None = None
    providers_tried: list[str] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens
