"""Provider selection, credentials, retries and stream draining."""

import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

import httpx

from lumi.clients.anthropic import AnthropicAdapter, AnthropicTransport
from lumi.clients.base import ProviderAdapter, WireRequest
from lumi.clients.gemini import GeminiAdapter
from lumi.clients.ollama import OllamaAdapter
from lumi.clients.openai import OpenAIAdapter
from lumi.clients.rate_limit import ProviderRateLimiter
from lumi.clients.transport import HttpTransport, Transport
from lumi.models.agent import AIProvider
from lumi.models.errors import (
    AIProviderError,
    APIKeyNotFoundError,
    ProviderNetworkError,
    ProviderRequestError,
)
from lumi.models.llm import AIResponse, AIStreamChunk, AIToolSchema, Message
from lumi.utils.logging import get_logger
from lumi.utils.settings import DEFAULT_OLLAMA_URL

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class ProviderConfig:
    """Network behavior shared by every backend."""

    timeout: float = 120.0
    stream_idle_timeout: float = 120.0
    max_retries: int = 3
    retry_delay: float = 1.0
    ollama_url: str = DEFAULT_OLLAMA_URL


class CredentialSource(Protocol):
    def get_api_key(self, provider: AIProvider) -> str | None: ...


class EnvironmentCredentials:
    """Reads API keys from the process environment."""

    ENV_VARS: dict[AIProvider, tuple[str, ...]] = {
        AIProvider.OPENAI: ("OPENAI_API_KEY",),
        AIProvider.ANTHROPIC: ("ANTHROPIC_API_KEY",),
        AIProvider.GEMINI: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    }

    def get_api_key(self, provider: AIProvider) -> str | None:
        for name in self.ENV_VARS.get(provider, ()):
            value = os.getenv(name, "").strip()
            if value:
                return value
        return None


@dataclass
class ProviderBackend:
    """The adapter and transport that serve one provider."""

    adapter: ProviderAdapter
    transport: Transport


class ProviderService:
    """Single entry point the execution loop uses to talk to any model backend."""

    def __init__(
        self,
        config: ProviderConfig | None = None,
        credentials: CredentialSource | None = None,
        backends: dict[AIProvider, ProviderBackend] | None = None,
        rate_limiter: ProviderRateLimiter | None = None,
    ):
        self.config = config or ProviderConfig()
        self.credentials = credentials or EnvironmentCredentials()
        self.backends = backends if backends is not None else self._default_backends()
        self.rate_limiter = rate_limiter

    def _default_backends(self) -> dict[AIProvider, ProviderBackend]:
        client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout))
        return {
            AIProvider.OPENAI: ProviderBackend(OpenAIAdapter(), HttpTransport("OpenAI", client=client)),
            AIProvider.ANTHROPIC: ProviderBackend(AnthropicAdapter(), AnthropicTransport(timeout=self.config.timeout)),
            AIProvider.GEMINI: ProviderBackend(GeminiAdapter(), HttpTransport("Gemini", client=client)),
            AIProvider.OLLAMA: ProviderBackend(
                OllamaAdapter(self.config.ollama_url), HttpTransport("Ollama", client=client)
            ),
        }

    def backend(self, provider: AIProvider) -> ProviderBackend:
        try:
            return self.backends[provider]
        except KeyError as e:
            raise ProviderRequestError(f"No backend configured for {provider.display_name}") from e

    def _prepare(
        self,
        provider: AIProvider,
        model: str,
        messages: list[Message],
        system_prompt: str | None,
        tools: list[AIToolSchema] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> tuple[ProviderBackend, WireRequest]:
        backend = self.backend(provider)
        api_key: str | None = None
        if provider.requires_api_key:
            api_key = self.credentials.get_api_key(provider)
            if not api_key:
                raise APIKeyNotFoundError(provider.display_name)

        request = backend.adapter.build_request(
            model=model,
            messages=messages,
            system_prompt=system_prompt,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=stream,
        )
        if api_key:
            request = backend.adapter.authorize(request, api_key)
        return backend, request

    async def _throttle(self, provider: AIProvider, messages: list[Message], system_prompt: str | None) -> None:
        if self.rate_limiter is None or not provider.requires_api_key:
            return
        await self.rate_limiter.acquire_for(provider.value, messages, system_prompt)

    async def send_message(
        self,
        provider: AIProvider,
        model: str,
        messages: list[Message],
        system_prompt: str | None = None,
        tools: list[AIToolSchema] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AIResponse:
        """Make one single-shot call and return the normalized response."""
        backend, request = self._prepare(
            provider, model, messages, system_prompt, tools, temperature, max_tokens, stream=False
        )
        await self._throttle(provider, messages, system_prompt)

        logger.debug(f"Calling {provider.display_name} ({model}) with {len(messages)} messages, {len(tools or [])} tools")
        payload = await self._request_with_retries(lambda: backend.transport.send(request))
        response = backend.adapter.parse_response(payload)
        logger.debug(
            f"{provider.display_name} response - finish reason: {response.finish_reason}, "
            f"tool calls: {len(response.tool_calls)}"
        )
        return response

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Retry network failures and 5xx responses with exponential backoff."""
        attempts = max(1, self.config.max_retries)
        for attempt in range(attempts):
            try:
                return await call()

            except ProviderRequestError as e:
                if e.status_code is not None and e.status_code >= 500 and attempt < attempts - 1:
                    delay = self.config.retry_delay * (2**attempt)
                    logger.warning(f"Provider returned {e.status_code}, retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue
                raise

            except ProviderNetworkError as e:
                if attempt < attempts - 1:
                    delay = self.config.retry_delay * (2**attempt)
                    logger.warning(f"Provider request failed ({e}), retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue
                raise

        raise ProviderNetworkError(f"Failed to complete request after {attempts} attempts")

    async def stream_message(
        self,
        provider: AIProvider,
        model: str,
        messages: list[Message],
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[AIStreamChunk]:
        """Stream a tool-less reply as chunks.

        The stream is not retried. It ends after a `done` chunk; closing the
        generator early closes the underlying connection.
        """
        backend, request = self._prepare(
            provider, model, messages, system_prompt, None, temperature, max_tokens, stream=True
        )
        await self._throttle(provider, messages, system_prompt)

        idle_timeout = self.config.stream_idle_timeout
        lines = backend.transport.stream(request)
        saw_finish_reason = False
        try:
            while True:
                try:
                    async with asyncio.timeout(idle_timeout):
                        line = await anext(lines)
                except StopAsyncIteration:
                    if saw_finish_reason:
                        return
                    raise ProviderNetworkError(
                        f"{provider.display_name} closed the stream before it finished."
                    ) from None
                except TimeoutError as e:
                    raise ProviderNetworkError(
                        f"No data from {provider.display_name} for {idle_timeout:.0f}s."
                    ) from e

                chunk = backend.adapter.parse_stream_event(line)
                if chunk is None:
                    continue
                if chunk.finish_reason:
                    saw_finish_reason = True
                yield chunk
                if chunk.done:
                    return
        finally:
            await lines.aclose()

    async def get_available_models(self, provider: AIProvider) -> list[str]:
        """Live model list for local backends, built-in defaults otherwise."""
        backend = self.backend(provider)
        if isinstance(backend.adapter, OllamaAdapter):
            try:
                payload = await backend.transport.send(backend.adapter.list_models_request())
                models = OllamaAdapter.parse_models(payload)
            except AIProviderError as e:
                logger.warning(f"Could not list Ollama models: {e}")
                return provider.default_models
            return models or provider.default_models
        return provider.default_models

    async def aclose(self) -> None:
        closed: set[int] = set()
        for backend in self.backends.values():
            transport = backend.transport
            if id(transport) in closed:
                continue
            closed.add(id(transport))
            await transport.aclose()
