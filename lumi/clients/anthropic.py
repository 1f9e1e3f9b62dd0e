"""Anthropic Messages API adapter and SDK-backed transport."""

from collections.abc import AsyncGenerator
from typing import Any, Literal

from anthropic import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
    AuthenticationError,
    RateLimitError,
)
from pydantic import BaseModel

from lumi.clients.base import (
    ProviderAdapter,
    WireRequest,
    decode_event,
    merge_consecutive_tool_messages,
    normalize_arguments,
    sse_data,
)
from lumi.clients.transport import DEFAULT_TIMEOUT, ERROR_BODY_LIMIT
from lumi.models.agent import AIProvider
from lumi.models.errors import (
    AIProviderError,
    APIKeyNotFoundError,
    InvalidResponseError,
    ProviderNetworkError,
    ProviderRequestError,
    RateLimitExceededError,
)
from lumi.models.llm import AIResponse, AIStreamChunk, AIToolSchema, AIUsage, Message, ToolCall
from lumi.utils.logging import get_logger

logger = get_logger(__name__)

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]
    cache_control: CacheControl | None = None


def anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Serialize messages into content-block form, folding tool results into user turns."""
    result: list[dict[str, Any]] = []
    for item in merge_consecutive_tool_messages(messages):
        if isinstance(item, list):
            result.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "tool_result", "tool_use_id": tool.tool_call_id, "content": tool.content}
                        for tool in item
                    ],
                }
            )
            continue

        message = item
        if message.role == "system":
            continue
        if message.role == "user":
            if message.image_data is not None:
                parts: list[dict[str, Any]] = [
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": "image/jpeg", "data": message.image_base64},
                    }
                ]
                if message.content:
                    parts.append({"type": "text", "text": message.content})
                result.append({"role": "user", "content": parts})
            else:
                result.append({"role": "user", "content": message.content})
        elif message.tool_calls:
            parts = []
            if message.content:
                parts.append({"type": "text", "text": message.content})
            parts.extend(
                {"type": "tool_use", "id": call.id, "name": call.name, "input": dict(call.arguments)}
                for call in message.tool_calls
            )
            result.append({"role": "assistant", "content": parts})
        else:
            result.append({"role": "assistant", "content": message.content})
    return result


def anthropic_tools(tools: list[AIToolSchema]) -> list[dict[str, Any]]:
    """Serialize tools, marking the last one so the whole tool block is cached."""
    serialized = []
    for index, tool in enumerate(tools):
        cache_control = CacheControl() if index == len(tools) - 1 else None
        anthropic_tool = AnthropicTool(
            name=tool.name,
            description=tool.description,
            input_schema=tool.parameters,
            cache_control=cache_control,
        )
        serialized.append(anthropic_tool.model_dump(exclude_none=True))
    return serialized


class AnthropicAdapter(ProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    provider = AIProvider.ANTHROPIC

    def __init__(self, url: str = ANTHROPIC_MESSAGES_URL):
        self.url = url

    def build_request(
        self,
        model: str,
        messages: list[Message],
        system_prompt: str | None = None,
        tools: list[AIToolSchema] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        stream: bool = False,
    ) -> WireRequest:
        body: dict[str, Any] = {
            "model": model,
            "messages": anthropic_messages(messages),
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
            "stream": stream,
        }
        if system_prompt:
            body["system"] = system_prompt
        if temperature is not None:
            body["temperature"] = temperature
        if tools:
            body["tools"] = anthropic_tools(tools)

        headers = {"Content-Type": "application/json", "anthropic-version": ANTHROPIC_VERSION}
        return WireRequest(url=self.url, body=body, headers=headers, stream=stream)

    def authorize(self, request: WireRequest, api_key: str | None) -> WireRequest:
        request = super().authorize(request, api_key)
        request.headers = {**request.headers, "x-api-key": api_key or ""}
        return request

    def parse_response(self, payload: dict[str, Any]) -> AIResponse:
        blocks = payload.get("content")
        if not isinstance(blocks, list):
            raise InvalidResponseError()

        texts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                texts.append(block.get("text") or "")
            elif block_type == "tool_use":
                if not block.get("id") or not block.get("name"):
                    logger.warning(f"Skipping malformed tool_use block: {block}")
                    continue
                tool_calls.append(
                    ToolCall(id=block["id"], name=block["name"], arguments=normalize_arguments(block.get("input")))
                )
            else:
                logger.debug(f"Ignoring content block type: {block_type}")

        response = AIResponse(
            content="".join(texts) if texts else None,
            tool_calls=tool_calls,
            finish_reason=payload.get("stop_reason") or "end_turn",
            usage=self._usage(payload),
        )
        if payload.get("id"):
            response.id = payload["id"]
        return response

    def parse_stream_event(self, raw_line: str) -> AIStreamChunk | None:
        data = sse_data(raw_line)
        if not data:
            return None
        event = decode_event(data)

        match event.get("type"):
            case "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text") is not None:
                    return AIStreamChunk(content=delta["text"])
                return None
            case "message_delta":
                stop_reason = (event.get("delta") or {}).get("stop_reason")
                return AIStreamChunk(finish_reason=stop_reason) if stop_reason else None
            case "message_stop":
                return AIStreamChunk(done=True)
            case "error":
                error = event.get("error") or {}
                if error.get("type") == "rate_limit_error":
                    raise RateLimitExceededError()
                raise ProviderRequestError(f"Anthropic stream error: {error.get('message', error)}")
            case _:
                return None

    @staticmethod
    def _usage(payload: dict[str, Any]) -> AIUsage | None:
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            return None
        input_tokens = usage.get("input_tokens")
        output_tokens = usage.get("output_tokens")
        if not isinstance(input_tokens, int) or not isinstance(output_tokens, int):
            return None
        cache_read = usage.get("cache_read_input_tokens") or 0
        if cache_read:
            logger.debug(f"Prompt cache read {cache_read} tokens")
        return AIUsage(
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )


def map_anthropic_error(error: APIError) -> AIProviderError:
    """Translate SDK exceptions into the provider error taxonomy."""
    if isinstance(error, AuthenticationError):
        return APIKeyNotFoundError(AIProvider.ANTHROPIC.display_name)
    if isinstance(error, RateLimitError):
        return RateLimitExceededError()
    if isinstance(error, APITimeoutError):
        return ProviderNetworkError("Request to Anthropic timed out.")
    if isinstance(error, APIConnectionError):
        return ProviderNetworkError()
    if isinstance(error, APIStatusError):
        return ProviderRequestError(
            f"Anthropic HTTP {error.status_code}: {str(error.message)[:ERROR_BODY_LIMIT]}",
            status_code=error.status_code,
        )
    return InvalidResponseError()


class AnthropicTransport:
    """Sends Anthropic requests through the official SDK.

    SDK retries are disabled; retry policy lives in the provider service.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, base_url: str | None = None):
        self.timeout = timeout
        self.base_url = base_url
        self._clients: dict[str, AsyncAnthropic] = {}

    def _client(self, api_key: str | None) -> AsyncAnthropic:
        if not api_key:
            raise APIKeyNotFoundError(AIProvider.ANTHROPIC.display_name)
        if api_key not in self._clients:
            self._clients[api_key] = AsyncAnthropic(
                api_key=api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._clients[api_key]

    @staticmethod
    def _params(request: WireRequest) -> dict[str, Any]:
        return {key: value for key, value in request.body.items() if key != "stream"}

    async def send(self, request: WireRequest) -> dict[str, Any]:
        client = self._client(request.api_key)
        logger.debug(f"Making Anthropic API call with model: {request.body.get('model')}")
        try:
            message = await client.messages.create(**self._params(request))
        except APIError as e:
            raise map_anthropic_error(e) from e
        return message.model_dump(mode="json", exclude_none=True)

    async def stream(self, request: WireRequest) -> AsyncGenerator[str, None]:
        client = self._client(request.api_key)
        try:
            async with client.messages.with_streaming_response.create(
                **self._params(request), stream=True
            ) as response:
                async for line in response.iter_lines():
                    yield line
        except APIError as e:
            raise map_anthropic_error(e) from e

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
