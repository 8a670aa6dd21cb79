"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
This is the single source of truth for budgets, routing and storage paths -
nothing is hardcoded elsewhere.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class RoutingPreference(StrEnum):
    """Routing hint: force local, force hosted, or decide by complexity."""

    AUTO = "auto"
    LOCAL = "local"
    CLOUD = "cloud"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    debug: bool = False
    log_level: str = Field(default="INFO", description="Minimum structlog/stdlib log level")
    json_logs: bool = Field(default=False, description="Render logs as JSON (production)")

    # ------------------------------------------------------------------ #
    # Provenance
    # ------------------------------------------------------------------ #
    repo_owner: str = Field(default="local", description="Owner recorded on fossils")
    repo_name: str = Field(default="workspace", description="Repository recorded on fossils")

    # ------------------------------------------------------------------ #
    # Budgets
    # ------------------------------------------------------------------ #
    max_tokens_per_call: int = Field(
        default=4000,
        ge=1,
        description="Requests estimated above this are truncated before dispatch",
    )
    max_cost_per_call: float = Field(
        default=0.10,
        ge=0.0,
        description="Estimated USD cost ceiling per call (after truncation)",
    )
    min_value_score: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Calls whose value score is below this never reach a provider",
    )
    high_cost_threshold: float = Field(
        default=10.0,
        ge=0.0,
        description="Total spend above which usage reports flag high cost",
    )

    # ------------------------------------------------------------------ #
    # Retry / failover
    # ------------------------------------------------------------------ #
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum invocations of one provider for one rate-limited call",
    )
    retry_delay_ms: int = Field(
        default=1000,
        ge=0,
        le=60_000,
        description="Base backoff delay; the wait before retry n is base * n",
    )
    rate_limit_max_delay_ms: int = Field(
        default=60_000,
        ge=0,
        description="Upper bound applied to provider-supplied retry hints",
    )
    call_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Per-invocation timeout; a timed-out attempt advances to the next provider",
    )

    # ------------------------------------------------------------------ #
    # Routing
    # ------------------------------------------------------------------ #
    routing_preference: RoutingPreference = RoutingPreference.AUTO
    complexity_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Below this complexity score, local providers are tried first",
    )
    cost_sensitivity: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Higher values discount complexity and favour local providers",
    )

    # ------------------------------------------------------------------ #
    # Providers
    # ------------------------------------------------------------------ #
    enable_local_llm: bool = False
    local_llm_executable: str = Field(default="ollama", description="Local backend executable")
    local_llm_model: str = Field(default="llama3", description="Model passed to the local backend")
    hosted_provider_name: str = Field(default="openai")
    hosted_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI-compatible chat completions base URL",
    )
    hosted_model: str = Field(default="gpt-3.5-turbo")
    openai_api_key: SecretStr | None = Field(
        default=None,
        description="Bearer credential for the hosted provider; absent means unavailable",
    )
    test_mode: bool = Field(
        default=False,
        description="Replace every provider with a deterministic mock",
    )

    # ------------------------------------------------------------------ #
    # Storage
    # ------------------------------------------------------------------ #
    memory_only: bool = Field(
        default=False,
        description="Keep the usage log and fossils in process memory only",
    )
    usage_log_path: str = Field(default=".llm-usage-log.json")
    fossil_storage_path: str = Field(default=".context-fossil")
    enable_fossil_cache: bool = Field(
        default=True,
        description="Replay fossilized results for identical requests",
    )

    # ------------------------------------------------------------------ #
    # Derived / Computed
    # ------------------------------------------------------------------ #
    @model_validator(mode="after")
    def _set_debug_from_env(self) -> Settings:
        if self.environment == Environment.DEV:
            self.debug = True
        return self

    @model_validator(mode="after")
    def _validate_routing(self) -> Settings:
        """Refuse routing configurations that can never dispatch a call."""
        if self.routing_preference == RoutingPreference.LOCAL and not (
            self.enable_local_llm or self.test_mode
        ):
            raise ValueError(
                "ROUTING_PREFERENCE=local requires ENABLE_LOCAL_LLM=true"
            )
        return self

    @property
    def is_dev(self) -> bool:
        return self.environment in (Environment.DEV, Environment.TEST)

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton.

    Call get_settings.cache_clear() in tests after changing the environment.
    """
    return Settings()
