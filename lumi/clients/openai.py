"""OpenAI chat-completions adapter."""

from typing import Any

from lumi.clients.base import (
    ProviderAdapter,
    WireRequest,
    decode_event,
    encode_arguments,
    normalize_arguments,
    sse_data,
)
from lumi.models.agent import AIProvider
from lumi.models.errors import InvalidResponseError, ProviderRequestError
from lumi.models.llm import AIResponse, AIStreamChunk, AIToolSchema, AIUsage, Message, ToolCall

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
STREAM_SENTINEL = "[DONE]"

# Reasoning model families reject temperature and take max_completion_tokens
REASONING_MODEL_PREFIXES = ("o1", "o3", "o4", "gpt-5")


def uses_completion_tokens(model: str) -> bool:
    return model.startswith(REASONING_MODEL_PREFIXES)


def openai_messages(messages: list[Message], system_prompt: str | None) -> list[dict[str, Any]]:
    """Serialize messages into OpenAI chat format."""
    result: list[dict[str, Any]] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})

    for message in messages:
        match message.role:
            case "system":
                continue
            case "user":
                if message.image_data is not None:
                    parts: list[dict[str, Any]] = []
                    if message.content:
                        parts.append({"type": "text", "text": message.content})
                    parts.append(
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/jpeg;base64,{message.image_base64}", "detail": "high"},
                        }
                    )
                    result.append({"role": "user", "content": parts})
                else:
                    result.append({"role": "user", "content": message.content})
            case "assistant":
                if message.tool_calls:
                    result.append(
                        {
                            "role": "assistant",
                            "content": message.content or None,
                            "tool_calls": [
                                {
                                    "id": call.id,
                                    "type": "function",
                                    "function": {"name": call.name, "arguments": encode_arguments(call.arguments)},
                                }
                                for call in message.tool_calls
                            ],
                        }
                    )
                else:
                    result.append({"role": "assistant", "content": message.content})
            case "tool":
                result.append({"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content})
    return result


def openai_tools(tools: list[AIToolSchema]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": tool.name, "description": tool.description, "parameters": tool.parameters},
        }
        for tool in tools
    ]


def parse_openai_tool_calls(raw_calls: Any, generate_missing_ids: bool = False) -> list[ToolCall]:
    """Parse `tool_calls` entries, skipping ones without a function name."""
    calls: list[ToolCall] = []
    for raw in raw_calls or []:
        if not isinstance(raw, dict):
            continue
        function = raw.get("function") or {}
        name = function.get("name")
        if not name:
            continue
        call_id = raw.get("id")
        if not call_id and not generate_missing_ids:
            continue
        call = ToolCall(name=name, arguments=normalize_arguments(function.get("arguments")))
        if call_id:
            call.id = call_id
        calls.append(call)
    return calls


class OpenAIAdapter(ProviderAdapter):
    """Adapter for the OpenAI chat-completions API."""

    provider = AIProvider.OPENAI

    def __init__(self, url: str = OPENAI_CHAT_URL):
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
            "messages": openai_messages(messages, system_prompt),
            "stream": stream,
        }
        reasoning = uses_completion_tokens(model)
        if temperature is not None and not reasoning:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_completion_tokens" if reasoning else "max_tokens"] = max_tokens
        if tools:
            body["tools"] = openai_tools(tools)
            body["tool_choice"] = "auto"

        return WireRequest(url=self.url, body=body, headers={"Content-Type": "application/json"}, stream=stream)

    def authorize(self, request: WireRequest, api_key: str | None) -> WireRequest:
        request = super().authorize(request, api_key)
        request.headers = {**request.headers, "Authorization": f"Bearer {api_key}"}
        return request

    def parse_response(self, payload: dict[str, Any]) -> AIResponse:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise InvalidResponseError()
        if not isinstance(choices[0].get("message"), dict):
            raise InvalidResponseError()
        first = choices[0]
        message = first["message"]

        response = AIResponse(
            content=message.get("content"),
            tool_calls=parse_openai_tool_calls(message.get("tool_calls")),
            finish_reason=first.get("finish_reason") or "stop",
            usage=self._usage(payload),
        )
        if payload.get("id"):
            response.id = payload["id"]
        return response

    def parse_stream_event(self, raw_line: str) -> AIStreamChunk | None:
        data = sse_data(raw_line)
        if data is None or data == "":
            return None
        if data == STREAM_SENTINEL:
            return AIStreamChunk(done=True)

        event = decode_event(data)
        if "error" in event:
            error = event["error"]
            detail = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ProviderRequestError(detail)

        choices = event.get("choices") or []
        if not choices:
            return None
        first = choices[0]
        content = (first.get("delta") or {}).get("content")
        finish_reason = first.get("finish_reason")
        if content is None and finish_reason is None:
            return None
        return AIStreamChunk(content=content, finish_reason=finish_reason)

    @staticmethod
    def _usage(payload: dict[str, Any]) -> AIUsage | None:
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            return None
        prompt = usage.get("prompt_tokens")
        completion = usage.get("completion_tokens")
        if not isinstance(prompt, int) or not isinstance(completion, int):
            return None
        return AIUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
