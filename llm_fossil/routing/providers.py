"""Provider backends and the ordered provider registry.

Every backend implements the ``Provider`` interface. Expected failures are
returned as ``ProviderError`` values rather than raised, so the retry
executor can branch on ``ErrorKind`` without exception plumbing.

Variants:
- LocalCommandProvider: on-device backend driven through a subprocess
  (``<executable> run <model>``, prompt on stdin)
- HostedHTTPProvider: OpenAI-compatible ``/chat/completions`` over httpx
- MockProvider: deterministic output for test mode
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import SecretStr

from llm_fossil.core.errors import (
    ConfigurationError,
    ErrorKind,
    ProviderError,
    classify_failure_text,
    classify_http_status,
)
from llm_fossil.routing.tokens import (
    FREE,
    ModelPricing,
    estimate_text_tokens,
    estimate_tokens,
    pricing_for,
)
from llm_fossil.routing.types import (
    CallRequest,
    Message,
    ProviderKind,
    ProviderResponse,
    Role,
)

if TYPE_CHECKING:
    from llm_fossil.config import Settings

log = structlog.get_logger(__name__)

InvokeResult = ProviderResponse | ProviderError


def render_prompt(messages: list[Message]) -> str:
    """Flatten chat messages into a single prompt for text-only backends."""
    parts = []
    for message in messages:
        if message.role == Role.USER:
            parts.append(message.content)
        else:
            parts.append(f"{message.role.value.upper()}: {message.content}")
    return "\n\n".join(parts)


class Provider(ABC):
    """A backend able to execute a chat request.

    Subclasses must implement:
    - is_available(): cheap readiness check, awaited before every attempt
    - invoke(): execute the request, returning a response or a classified error
    """

    name: str
    kind: ProviderKind
    model: str
    pricing: ModelPricing

    @abstractmethod
    async def is_available(self) -> bool:
        """Return True when the backend can currently accept requests."""

    @abstractmethod
    async def invoke(self, request: CallRequest) -> InvokeResult:
        """Execute ``request``; expected failures come back as ProviderError."""

    def estimate_tokens(self, messages: list[Message]) -> int:
        return estimate_tokens(messages)

    def estimate_cost(self, tokens: int) -> float:
        """Estimated USD cost of ``tokens`` prompt tokens on this provider."""
        return self.pricing.cost(tokens)

    def actual_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        return self.pricing.cost(prompt_tokens, completion_tokens)

    async def aclose(self) -> None:
        """Release held resources. Default: nothing to release."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, kind={self.kind.value})"


class LocalCommandProvider(Provider):
    """Local model runner invoked as a subprocess (e.g. ``ollama``).

    Availability is probed once with ``<executable> --version`` and cached
    for the lifetime of the provider. Local execution is free.
    """

    kind = ProviderKind.LOCAL

    def __init__(
        self,
        executable: str = "ollama",
        model: str = "llama3",
        name: str = "local-ollama",
    ) -> None:
        self.name = name
        self.executable = executable
        self.model = model
        self.pricing = FREE
        self._available: bool | None = None
        self._probe_lock = asyncio.Lock()

    async def is_available(self) -> bool:
        async with self._probe_lock:
            if self._available is None:
                self._available = await self._probe()
            return self._available

    async def _probe(self) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await process.communicate()
        except OSError as exc:
            log.info(
                "local_provider.not_available",
                provider=self.name,
                executable=self.executable,
                error=str(exc),
            )
            return False

        available = process.returncode == 0
        log.info(
            "local_provider.probed",
            provider=self.name,
            available=available,
            version=stdout.decode(errors="replace").strip()[:80],
        )
        return available

    async def invoke(self, request: CallRequest) -> InvokeResult:
        prompt = render_prompt(request.messages)
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                "run",
                self.model,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return ProviderError(
                kind=ErrorKind.PROVIDER_UNAVAILABLE,
                message=f"Cannot start {self.executable}: {exc}",
            )

        try:
            stdout, stderr = await process.communicate(prompt.encode())
        except asyncio.CancelledError:
            # Timed out by the executor; kill and reap the runner.
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await asyncio.shield(process.wait())
            raise

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            return ProviderError(
                kind=classify_failure_text(detail),
                message=detail[:500] or f"{self.executable} exited with {process.returncode}",
                status_code=process.returncode,
            )

        text = stdout.decode(errors="replace").strip()
        return ProviderResponse(
            text=text,
            prompt_tokens=self.estimate_tokens(request.messages),
            completion_tokens=estimate_text_tokens(text),
            model=self.model,
        )


class HostedHTTPProvider(Provider):
    """OpenAI-compatible hosted chat completions endpoint.

    The provider is available whenever a credential is configured. Pass a
    custom ``transport`` (e.g. ``httpx.MockTransport``) to test without the
    network.
    """

    kind = ProviderKind.HOSTED

    def __init__(
        self,
        name: str = "openai",
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-3.5-turbo",
        api_key: SecretStr | str | None = None,
        pricing: ModelPricing | None = None,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url
        self.model = model
        self.pricing = pricing or pricing_for(model)
        if isinstance(api_key, str):
            api_key = SecretStr(api_key)
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def is_available(self) -> bool:
        return self._api_key is not None and bool(self._api_key.get_secret_value())

    async def invoke(self, request: CallRequest) -> InvokeResult:
        if not await self.is_available():
            return ProviderError(
                kind=ErrorKind.PROVIDER_UNAVAILABLE,
                message=f"No credential configured for {self.name}",
            )

        assert self._api_key is not None
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": message.role.value, "content": message.content}
                for message in request.messages
            ],
        }
        headers = {"Authorization": f"Bearer {self._api_key.get_secret_value()}"}

        try:
            response = await self._get_client().post(
                "/chat/completions", json=payload, headers=headers
            )
        except httpx.TimeoutException as exc:
            return ProviderError(kind=ErrorKind.TIMEOUT, message=f"Request timed out: {exc}")
        except httpx.TransportError as exc:
            return ProviderError(
                kind=ErrorKind.PROVIDER_UNAVAILABLE,
                message=f"Connection failed: {exc}",
            )

        if response.status_code >= 400:
            body = response.text
            return ProviderError(
                kind=classify_http_status(response.status_code, body),
                message=f"HTTP {response.status_code}: {body[:300]}",
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
                status_code=response.status_code,
            )

        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            return ProviderError(
                kind=ErrorKind.PROVIDER_FAULT,
                message=f"Malformed provider response: {exc!r}",
                status_code=response.status_code,
            )

        usage = data.get("usage") or {}
        return ProviderResponse(
            text=text or "",
            prompt_tokens=int(
                usage.get("prompt_tokens") or self.estimate_tokens(request.messages)
            ),
            completion_tokens=int(
                usage.get("completion_tokens") or estimate_text_tokens(text or "")
            ),
            model=str(data.get("model") or self.model),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class MockProvider(Provider):
    """Deterministic provider used when ``test_mode`` is enabled.

    The default responder echoes the purpose and the last user message, so
    identical requests always produce identical text.
    """

    def __init__(
        self,
        name: str = "mock",
        kind: ProviderKind = ProviderKind.LOCAL,
        responder: Callable[[CallRequest], str] | None = None,
    ) -> None:
        self.name = name
        self.kind = kind
        self.model = "mock"
        self.pricing = FREE
        self._responder = responder or _default_mock_text

    async def is_available(self) -> bool:
        return True

    async def invoke(self, request: CallRequest) -> InvokeResult:
        text = self._responder(request)
        return ProviderResponse(
            text=text,
            prompt_tokens=self.estimate_tokens(request.messages),
            completion_tokens=estimate_text_tokens(text),
            model=self.model,
        )


def _default_mock_text(request: CallRequest) -> str:
    last_user = next(
        (m.content for m in reversed(request.messages) if m.role == Role.USER),
        request.messages[-1].content,
    )
    return f"[mock:{request.purpose}] {last_user[:200]}"


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class ProviderRegistry:
    """Ordered collection of providers.

    Registration order is preserved and used as the tie-breaker within a
    provider kind.
    """

    def __init__(self, providers: list[Provider] | None = None) -> None:
        self._providers: list[Provider] = []
        for provider in providers or []:
            self.register(provider)

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderRegistry:
        """Build the default registry for a configuration.

        - test_mode: a local and a hosted mock, nothing real
        - enable_local_llm: the local command provider, registered first
        - always: the hosted provider (unavailable without a credential)
        """
        registry = cls()
        if settings.test_mode:
            registry.register(MockProvider(name="mock-local", kind=ProviderKind.LOCAL))
            registry.register(MockProvider(name="mock-hosted", kind=ProviderKind.HOSTED))
            return registry

        if settings.enable_local_llm:
            registry.register(
                LocalCommandProvider(
                    executable=settings.local_llm_executable,
                    model=settings.local_llm_model,
                )
            )
        registry.register(
            HostedHTTPProvider(
                name=settings.hosted_provider_name,
                base_url=settings.hosted_base_url,
                model=settings.hosted_model,
                api_key=settings.openai_api_key,
                timeout_seconds=settings.call_timeout_seconds,
            )
        )
        return registry

    def register(self, provider: Provider) -> None:
        if self.get(provider.name) is not None:
            raise ConfigurationError(f"Provider {provider.name!r} is already registered")
        self._providers.append(provider)
        log.info(
            "provider_registry.registered",
            provider=provider.name,
            kind=provider.kind.value,
            model=provider.model,
        )

    def get(self, name: str) -> Provider | None:
        for provider in self._providers:
            if provider.name == name:
                return provider
        return None

    def local(self) -> list[Provider]:
        return [p for p in self._providers if p.kind == ProviderKind.LOCAL]

    def hosted(self) -> list[Provider]:
        return [p for p in self._providers if p.kind == ProviderKind.HOSTED]

    def names(self) -> list[str]:
        return [p.name for p in self._providers]

    async def aclose(self) -> None:
        for provider in self._providers:
            await provider.aclose()

    def __iter__(self) -> Iterator[Provider]:
        return iter(list(self._providers))

    def __len__(self) -> int:
        return len(self._providers)
