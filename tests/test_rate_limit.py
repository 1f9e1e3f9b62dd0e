"""Tests for token estimation and client-side rate limiting."""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from lumi.clients.ollama import OllamaAdapter
from lumi.clients.openai import OpenAIAdapter
from lumi.clients.rate_limit import ProviderRateLimiter, RateLimitConfig, TokenEstimator
from lumi.models.agent import AIProvider
from lumi.models.llm import Message
from lumi.services.provider import ProviderBackend, ProviderConfig, ProviderService
from tests.conftest import FakeTransport, StaticCredentials


class TestTokenEstimator:
    """Tests for token estimation."""

    def test_uses_tokenizer(self):
        """Test that estimates come from the tiktoken encoding."""
        tokenizer = Mock()
        tokenizer.encode.return_value = [1] * 7

        with patch("lumi.clients.rate_limit.tiktoken.get_encoding", return_value=tokenizer) as get_encoding:
            estimator = TokenEstimator()
            assert estimator.estimate_text("hello world") == 7
            assert estimator.estimate_text("again") == 7

        get_encoding.assert_called_once_with("cl100k_base")
        tokenizer.encode.assert_called_with("again", disallowed_special=())

    def test_fallback_without_tokenizer(self):
        """Test that a missing encoding falls back to four characters per token."""
        with patch("lumi.clients.rate_limit.tiktoken.get_encoding", side_effect=OSError("offline")):
            estimator = TokenEstimator()
            assert estimator.estimate_text("a" * 400) == 100
            assert estimator.tokenizer is None

    def test_messages_include_system_prompt(self):
        """Test that the system prompt and every message are counted."""
        with patch("lumi.clients.rate_limit.tiktoken.get_encoding", side_effect=OSError("offline")):
            estimator = TokenEstimator()
            messages = [Message.user("a" * 40), Message.assistant("b" * 40)]

            assert estimator.estimate_messages(messages, system_prompt="c" * 40) == 30


class TestProviderRateLimiter:
    """Tests for the moving-window limiter."""

    @pytest.fixture
    def estimator(self):
        estimator = Mock(spec=TokenEstimator)
        estimator.estimate_messages.return_value = 10
        return estimator

    @pytest.mark.asyncio
    async def test_within_budget_does_not_wait(self, estimator):
        """Test that requests under the limits pass immediately."""
        limiter = ProviderRateLimiter(RateLimitConfig(requests_per_minute=5), estimator)

        with patch("lumi.clients.rate_limit.asyncio.sleep", new_callable=AsyncMock) as sleep:
            for _ in range(5):
                await limiter.acquire_for("openai", [Message.user("hi")], None)

        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_request_limit_waits_for_window(self, estimator):
        """Test that exceeding the request budget waits for the window to reset."""
        limiter = ProviderRateLimiter(RateLimitConfig(requests_per_minute=1), estimator)

        with patch("lumi.clients.rate_limit.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await limiter.acquire("openai", 10)
            await limiter.acquire("openai", 10)

        sleep.assert_awaited_once()
        assert 0 < sleep.await_args.args[0] <= 60

    @pytest.mark.asyncio
    async def test_providers_are_limited_separately(self, estimator):
        """Test that one provider's budget does not affect another."""
        limiter = ProviderRateLimiter(RateLimitConfig(requests_per_minute=1), estimator)

        with patch("lumi.clients.rate_limit.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await limiter.acquire("openai", 10)
            await limiter.acquire("anthropic", 10)

        sleep.assert_not_awaited()


class TestServiceThrottling:
    """Tests for where the provider service applies rate limits."""

    @pytest.mark.asyncio
    async def test_only_hosted_providers_are_throttled(self):
        """Test that the local backend skips the limiter."""
        limiter = Mock(spec=ProviderRateLimiter)
        limiter.acquire_for = AsyncMock()
        transport = FakeTransport(
            responses=[
                {"choices": [{"message": {"content": "hosted"}, "finish_reason": "stop"}]},
                {"message": {"content": "local"}, "done": True},
            ]
        )
        service = ProviderService(
            ProviderConfig(retry_delay=0),
            credentials=StaticCredentials(),
            backends={
                AIProvider.OPENAI: ProviderBackend(OpenAIAdapter(), transport),
                AIProvider.OLLAMA: ProviderBackend(OllamaAdapter(), transport),
            },
            rate_limiter=limiter,
        )

        await service.send_message(AIProvider.OPENAI, "gpt-4.1", [Message.user("hi")], system_prompt="sys")
        await service.send_message(AIProvider.OLLAMA, "llama3.3:latest", [Message.user("hi")])

        limiter.acquire_for.assert_awaited_once()
        assert limiter.acquire_for.await_args.args[0] == "openai"
