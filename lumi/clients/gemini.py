"""Gemini generateContent adapter."""

from dataclasses import replace
from typing import Any

from lumi.clients.base import (
    ProviderAdapter,
    WireRequest,
    decode_event,
    merge_consecutive_tool_messages,
    normalize_arguments,
    sse_data,
)
from lumi.models.agent import AIProvider
from lumi.models.errors import InvalidResponseError, ProviderRequestError
from lumi.models.llm import AIResponse, AIStreamChunk, AIToolSchema, AIUsage, Message, ToolCall

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"


def gemini_contents(messages: list[Message]) -> list[dict[str, Any]]:
    """Serialize messages into Gemini `contents`.

    Gemini function calls carry no id, so a tool message's `tool_call_id` holds
    the function name it answers.
    """
    contents: list[dict[str, Any]] = []
    for item in merge_consecutive_tool_messages(messages):
        if isinstance(item, list):
            contents.append(
                {
                    "role": "user",
                    "parts": [
                        {"functionResponse": {"name": tool.tool_call_id, "response": {"result": tool.content}}}
                        for tool in item
                    ],
                }
            )
            continue

        message = item
        if message.role == "system":
            continue
        if message.role == "user":
            parts: list[dict[str, Any]] = []
            if message.image_data is not None:
                if message.content:
                    parts.append({"text": message.content})
                parts.append({"inlineData": {"mimeType": "image/jpeg", "data": message.image_base64}})
            else:
                parts.append({"text": message.content})
            contents.append({"role": "user", "parts": parts})
        elif message.tool_calls:
            parts = [{"text": message.content}] if message.content else []
            parts.extend({"functionCall": {"name": call.name, "args": dict(call.arguments)}} for call in message.tool_calls)
            contents.append({"role": "model", "parts": parts})
        else:
            contents.append({"role": "model", "parts": [{"text": message.content}]})
    return contents


# Keys pydantic emits that the Gemini function schema does not accept
UNSUPPORTED_SCHEMA_KEYS = frozenset({"title", "additionalProperties", "default", "$defs"})


def gemini_schema(schema: Any) -> Any:
    """Reduce a JSON schema to the OpenAPI subset Gemini accepts.

    Optional fields (`anyOf` with a null branch) become the non-null branch
    marked `nullable`.
    """
    if isinstance(schema, list):
        return [gemini_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    branches = schema.get("anyOf")
    if isinstance(branches, list):
        concrete = [branch for branch in branches if not (isinstance(branch, dict) and branch.get("type") == "null")]
        if len(concrete) == 1 and len(concrete) < len(branches):
            rest = {key: value for key, value in schema.items() if key != "anyOf"}
            return gemini_schema({**concrete[0], **rest, "nullable": True})

    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key in UNSUPPORTED_SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {name: gemini_schema(prop) for name, prop in value.items()}
        else:
            cleaned[key] = gemini_schema(value)
    return cleaned


def gemini_tools(tools: list[AIToolSchema]) -> list[dict[str, Any]]:
    declarations = []
    for tool in tools:
        declaration: dict[str, Any] = {"name": tool.name, "description": tool.description}
        # Gemini rejects object schemas with an empty properties map
        if tool.parameters.get("properties"):
            declaration["parameters"] = gemini_schema(tool.parameters)
        declarations.append(declaration)
    return [{"functionDeclarations": declarations}]


class GeminiAdapter(ProviderAdapter):
    """Adapter for the Gemini REST API."""

    provider = AIProvider.GEMINI

    def __init__(self, base_url: str = GEMINI_BASE_URL):
        self.base_url = base_url.rstrip("/")

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
        endpoint = "streamGenerateContent" if stream else "generateContent"
        params = {"alt": "sse"} if stream else {}

        body: dict[str, Any] = {"contents": gemini_contents(messages)}
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if tools:
            body["tools"] = gemini_tools(tools)
        generation_config: dict[str, Any] = {}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if max_tokens is not None:
            generation_config["maxOutputTokens"] = max_tokens
        if generation_config:
            body["generationConfig"] = generation_config

        return WireRequest(
            url=f"{self.base_url}/{model}:{endpoint}",
            body=body,
            headers={"Content-Type": "application/json"},
            params=params,
            stream=stream,
        )

    def authorize(self, request: WireRequest, api_key: str | None) -> WireRequest:
        return replace(request, api_key=api_key, params={**request.params, "key": api_key or ""})

    def parse_response(self, payload: dict[str, Any]) -> AIResponse:
        candidate = self._first_candidate(payload)
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list) or not all(isinstance(part, dict) for part in parts):
            raise InvalidResponseError()

        text: str | None = None
        tool_calls: list[ToolCall] = []
        for part in parts:
            if "text" in part:
                text = (text or "") + (part.get("text") or "")
            elif isinstance(part.get("functionCall"), dict) and part["functionCall"].get("name"):
                call = part["functionCall"]
                tool_calls.append(
                    ToolCall(id=call["name"], name=call["name"], arguments=normalize_arguments(call.get("args")))
                )

        return AIResponse(
            content=text,
            tool_calls=tool_calls,
            finish_reason=candidate.get("finishReason") or "STOP",
            usage=self._usage(payload),
        )

    def parse_stream_event(self, raw_line: str) -> AIStreamChunk | None:
        data = sse_data(raw_line)
        if not data:
            return None
        event = decode_event(data)
        if "error" in event:
            error = event["error"]
            detail = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ProviderRequestError(f"Gemini stream error: {detail}")

        candidates = event.get("candidates") or []
        if not candidates:
            return None
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text") or "" for part in parts if isinstance(part, dict))

        finish_reason = candidate.get("finishReason")
        done = finish_reason is not None and finish_reason != "NONE"
        if not text and not done:
            return None
        return AIStreamChunk(content=text or None, finish_reason=finish_reason if done else None, done=done)

    @staticmethod
    def _first_candidate(payload: dict[str, Any]) -> dict[str, Any]:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            raise InvalidResponseError()
        return candidates[0]

    @staticmethod
    def _usage(payload: dict[str, Any]) -> AIUsage | None:
        metadata = payload.get("usageMetadata")
        if not isinstance(metadata, dict):
            return None
        prompt = metadata.get("promptTokenCount")
        completion = metadata.get("candidatesTokenCount")
        if not isinstance(prompt, int) or not isinstance(completion, int):
            return None
        return AIUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
