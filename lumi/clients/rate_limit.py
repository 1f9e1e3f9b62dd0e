"""Client-side rate limiting for provider calls."""

import asyncio
import time
from dataclasses import dataclass

import tiktoken
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from lumi.models.llm import Message
from lumi.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitConfig:
    """Per-provider request and token budgets."""

    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000


class TokenEstimator:
    """Approximates token counts with tiktoken, falling back to four characters per token."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._tokenizer: tiktoken.Encoding | None = None
        self._loaded = False

    @property
    def tokenizer(self) -> tiktoken.Encoding | None:
        # Loading may download the encoding file, so defer it to first use
        if not self._loaded:
            self._loaded = True
            try:
                self._tokenizer = tiktoken.get_encoding(self.encoding_name)
            except Exception as e:
                logger.warning(f"Tokenizer unavailable, estimating by length: {e}")
                self._tokenizer = None
        return self._tokenizer

    def estimate_text(self, text: str) -> int:
        tokenizer = self.tokenizer
        if tokenizer is None:
            return len(text) // 4
        return len(tokenizer.encode(text, disallowed_special=()))

    def estimate_messages(self, messages: list[Message], system_prompt: str | None = None) -> int:
        text = system_prompt or ""
        for message in messages:
            text += message.content
        return self.estimate_text(text)


class ProviderRateLimiter:
    """Moving-window limiter keyed by provider name."""

    def __init__(self, config: RateLimitConfig | None = None, estimator: TokenEstimator | None = None):
        self.config = config or RateLimitConfig()
        self.estimator = estimator or TokenEstimator()
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{self.config.requests_per_minute}/minute")
        self.token_limit = parse(f"{self.config.tokens_per_minute}/minute")

    async def _wait_for_window(self, item, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(item, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{label} rate limit exceeded for {identifier}, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)

    async def acquire(self, identifier: str, estimated_tokens: int) -> None:
        """Wait until one request costing `estimated_tokens` fits the budget."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        cost = max(1, min(estimated_tokens, self.config.tokens_per_minute))
        if not self.limiter.hit(self.token_limit, token_identifier, cost=cost):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def acquire_for(self, identifier: str, messages: list[Message], system_prompt: str | None) -> None:
        await self.acquire(identifier, self.estimator.estimate_messages(messages, system_prompt))
