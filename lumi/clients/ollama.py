"""Ollama /api/chat adapter for locally served models."""

from typing import Any

from lumi.clients.base import ProviderAdapter, WireRequest, decode_event
from lumi.clients.openai import openai_tools, parse_openai_tool_calls
from lumi.models.agent import AIProvider
from lumi.models.errors import InvalidResponseError, ProviderRequestError
from lumi.models.llm import AIResponse, AIStreamChunk, AIToolSchema, AIUsage, Message
from lumi.utils.settings import DEFAULT_OLLAMA_URL


def ollama_messages(messages: list[Message], system_prompt: str | None) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})
    for message in messages:
        if message.role == "system":
            continue
        entry: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.role == "user" and message.image_data is not None:
            entry["images"] = [message.image_base64]
        if message.role == "assistant" and message.tool_calls:
            entry["tool_calls"] = [
                {"function": {"name": call.name, "arguments": dict(call.arguments)}} for call in message.tool_calls
            ]
        if message.role == "tool":
            entry["tool_call_id"] = message.tool_call_id
        result.append(entry)
    return result


class OllamaAdapter(ProviderAdapter):
    """Adapter for a locally configured Ollama server."""

    provider = AIProvider.OLLAMA

    def __init__(self, base_url: str = DEFAULT_OLLAMA_URL):
        self.base_url = base_url.strip().rstrip("/")

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
            "messages": ollama_messages(messages, system_prompt),
            "stream": stream,
        }
        options: dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        if options:
            body["options"] = options
        if tools:
            body["tools"] = openai_tools(tools)

        return WireRequest(
            url=f"{self.base_url}/api/chat",
            body=body,
            headers={"Content-Type": "application/json"},
            stream=stream,
        )

    def list_models_request(self) -> WireRequest:
        return WireRequest(url=f"{self.base_url}/api/tags", body={}, method="GET")

    @staticmethod
    def parse_models(payload: dict[str, Any]) -> list[str]:
        models = payload.get("models") or []
        return [model["name"] for model in models if isinstance(model, dict) and model.get("name")]

    def parse_response(self, payload: dict[str, Any]) -> AIResponse:
        if "error" in payload:
            raise ProviderRequestError(f"Ollama error: {payload['error']}")
        message = payload.get("message")
        if not isinstance(message, dict):
            raise InvalidResponseError()

        content = message.get("content")
        return AIResponse(
            content=content or None,
            tool_calls=parse_openai_tool_calls(message.get("tool_calls"), generate_missing_ids=True),
            finish_reason=payload.get("done_reason") or "stop",
            usage=self._usage(payload),
        )

    def parse_stream_event(self, raw_line: str) -> AIStreamChunk | None:
        line = raw_line.strip()
        if not line:
            return None
        event = decode_event(line)
        if "error" in event:
            raise ProviderRequestError(f"Ollama error: {event['error']}")

        done = bool(event.get("done", False))
        content = (event.get("message") or {}).get("content") or None
        if content is None and not done:
            return None
        return AIStreamChunk(
            content=content,
            finish_reason=(event.get("done_reason") or "stop") if done else None,
            done=done,
        )

    @staticmethod
    def _usage(payload: dict[str, Any]) -> AIUsage | None:
        prompt = payload.get("prompt_eval_count")
        completion = payload.get("eval_count")
        if not isinstance(prompt, int) or not isinstance(completion, int):
            return None
        return AIUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
