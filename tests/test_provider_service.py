"""Tests for the provider service."""

import asyncio

import pytest

from lumi.clients.ollama import OllamaAdapter
from lumi.clients.openai import OpenAIAdapter
from lumi.models.agent import AIProvider
from lumi.models.errors import (
    APIKeyNotFoundError,
    ProviderNetworkError,
    ProviderRequestError,
    RateLimitExceededError,
)
from lumi.models.llm import Message
from lumi.services.provider import EnvironmentCredentials, ProviderBackend, ProviderConfig, ProviderService
from tests.conftest import FakeTransport, StaticCredentials

OPENAI_REPLY = {
    "choices": [{"message": {"content": "Hi there"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 3, "completion_tokens": 2},
}


def service_with(transport: FakeTransport, credentials=None, **config) -> ProviderService:
    return ProviderService(
        ProviderConfig(retry_delay=0, **config),
        credentials=credentials or StaticCredentials(),
        backends={
            AIProvider.OPENAI: ProviderBackend(OpenAIAdapter(), transport),
            AIProvider.OLLAMA: ProviderBackend(OllamaAdapter(), transport),
        },
    )


class TestSendMessage:
    """Tests for single-shot calls."""

    @pytest.mark.asyncio
    async def test_returns_parsed_response_with_credentials(self):
        """Test that the request is authorized and the reply parsed."""
        transport = FakeTransport(responses=[OPENAI_REPLY])
        service = service_with(transport)

        response = await service.send_message(AIProvider.OPENAI, "gpt-4.1", [Message.user("hi")], system_prompt="sys")

        assert response.content == "Hi there"
        assert response.finish_reason == "stop"
        request = transport.requests[0]
        assert request.headers["Authorization"] == "Bearer test-key"
        assert request.body["messages"][0] == {"role": "system", "content": "sys"}

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_sending(self):
        """Test that a provider needing a key fails without touching the network."""
        transport = FakeTransport(responses=[OPENAI_REPLY])
        service = service_with(transport, credentials=StaticCredentials(None))

        with pytest.raises(APIKeyNotFoundError, match="OpenAI"):
            await service.send_message(AIProvider.OPENAI, "gpt-4.1", [Message.user("hi")])
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_ollama_needs_no_key(self):
        """Test that the local backend is called without credentials."""
        transport = FakeTransport(responses=[{"message": {"content": "local"}, "done": True}])
        service = service_with(transport, credentials=StaticCredentials(None))

        response = await service.send_message(AIProvider.OLLAMA, "llama3.3:latest", [Message.user("hi")])

        assert response.content == "local"
        assert transport.requests[0].api_key is None

    @pytest.mark.asyncio
    async def test_retries_network_errors_then_succeeds(self):
        """Test that transient network failures are retried."""
        transport = FakeTransport(responses=[ProviderNetworkError(), ProviderNetworkError(), OPENAI_REPLY])
        service = service_with(transport, max_retries=3)

        response = await service.send_message(AIProvider.OPENAI, "gpt-4.1", [Message.user("hi")])

        assert response.content == "Hi there"
        assert len(transport.requests) == 3

    @pytest.mark.asyncio
    async def test_retries_server_errors_until_exhausted(self):
        """Test that 5xx errors are retried up to the limit and then raised."""
        transport = FakeTransport(responses=[ProviderRequestError("HTTP 502", status_code=502)] * 3)
        service = service_with(transport, max_retries=3)

        with pytest.raises(ProviderRequestError):
            await service.send_message(AIProvider.OPENAI, "gpt-4.1", [Message.user("hi")])
        assert len(transport.requests) == 3

    @pytest.mark.asyncio
    async def test_client_errors_and_rate_limits_are_not_retried(self):
        """Test that 4xx and 429 responses fail immediately."""
        for error in (ProviderRequestError("HTTP 400", status_code=400), RateLimitExceededError()):
            transport = FakeTransport(responses=[error, OPENAI_REPLY])
            service = service_with(transport)

            with pytest.raises(type(error)):
                await service.send_message(AIProvider.OPENAI, "gpt-4.1", [Message.user("hi")])
            assert len(transport.requests) == 1


class TestStreamMessage:
    """Tests for streaming calls."""

    @pytest.mark.asyncio
    async def test_yields_chunks_until_done(self):
        """Test that content chunks are yielded and the stream ends at the terminator."""
        transport = FakeTransport(
            lines=[
                'data: {"choices": [{"delta": {"content": "Hel"}}]}',
                "",
                'data: {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]}',
                "data: [DONE]",
                'data: {"choices": [{"delta": {"content": "ignored"}}]}',
            ]
        )
        service = service_with(transport)

        chunks = [chunk async for chunk in service.stream_message(AIProvider.OPENAI, "gpt-4.1", [Message.user("hi")])]

        assert "".join(chunk.content or "" for chunk in chunks) == "Hello"
        assert chunks[-1].done
        assert transport.requests[0].body["stream"] is True

    @pytest.mark.asyncio
    async def test_eof_without_terminator_is_a_network_error(self):
        """Test that a stream closed before finishing raises."""
        transport = FakeTransport(lines=['data: {"choices": [{"delta": {"content": "Hel"}}]}'])
        service = service_with(transport)

        with pytest.raises(ProviderNetworkError, match="closed the stream"):
            async for _ in service.stream_message(AIProvider.OPENAI, "gpt-4.1", [Message.user("hi")]):
                pass

    @pytest.mark.asyncio
    async def test_eof_after_finish_reason_is_accepted(self):
        """Test that a finish reason without the [DONE] line still ends cleanly."""
        transport = FakeTransport(
            lines=['data: {"choices": [{"delta": {"content": "ok"}, "finish_reason": "stop"}]}']
        )
        service = service_with(transport)

        chunks = [chunk async for chunk in service.stream_message(AIProvider.OPENAI, "gpt-4.1", [Message.user("hi")])]

        assert chunks[-1].finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_idle_timeout(self):
        """Test that a silent stream raises after the idle timeout."""

        class SilentTransport(FakeTransport):
            async def stream(self, request):
                await asyncio.sleep(10)
                yield "never"

        service = service_with(SilentTransport(), stream_idle_timeout=0.01)

        with pytest.raises(ProviderNetworkError, match="No data"):
            async for _ in service.stream_message(AIProvider.OPENAI, "gpt-4.1", [Message.user("hi")]):
                pass


class TestModelsAndCredentials:
    """Tests for model discovery and environment credentials."""

    @pytest.mark.asyncio
    async def test_ollama_models_are_listed_live(self):
        """Test that Ollama models come from /api/tags."""
        transport = FakeTransport(responses=[{"models": [{"name": "phi4:latest"}]}])
        service = service_with(transport)

        assert await service.get_available_models(AIProvider.OLLAMA) == ["phi4:latest"]
        assert transport.requests[0].url.endswith("/api/tags")

    @pytest.mark.asyncio
    async def test_ollama_falls_back_to_defaults(self):
        """Test that an unreachable Ollama server yields the default list."""
        transport = FakeTransport(responses=[ProviderNetworkError()])
        service = service_with(transport)

        assert await service.get_available_models(AIProvider.OLLAMA) == AIProvider.OLLAMA.default_models

    @pytest.mark.asyncio
    async def test_hosted_providers_use_defaults(self):
        """Test that hosted providers return their built-in model lists."""
        service = service_with(FakeTransport())

        assert await service.get_available_models(AIProvider.OPENAI) == AIProvider.OPENAI.default_models

    def test_environment_credentials(self, monkeypatch):
        """Test that keys are read from the environment, with the Google fallback for Gemini."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setenv("GOOGLE_API_KEY", "g-env")
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

        credentials = EnvironmentCredentials()

        assert credentials.get_api_key(AIProvider.OPENAI) == "sk-env"
        assert credentials.get_api_key(AIProvider.GEMINI) == "g-env"
        assert credentials.get_api_key(AIProvider.ANTHROPIC) is None
        assert credentials.get_api_key(AIProvider.OLLAMA) is None

    @pytest.mark.asyncio
    async def test_aclose_closes_each_transport_once(self):
        """Test that shared transports are closed once."""
        transport = FakeTransport()
        service = service_with(transport)

        await service.aclose()

        assert transport.closed
