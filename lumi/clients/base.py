"""Shared adapter interface and argument normalization helpers."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any

from lumi.models.agent import AIProvider
from lumi.models.errors import InvalidResponseError
from lumi.models.llm import AIResponse, AIStreamChunk, AIToolSchema, Message
from lumi.utils.logging import get_logger

logger = get_logger(__name__)

SSE_PREFIX = "data:"


@dataclass
class WireRequest:
    """A fully built backend request, independent of the transport sending it."""

    url: str
    body: dict[str, Any]
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    stream: bool = False
    api_key: str | None = None


class ProviderAdapter(ABC):
    """Translation unit between the internal message model and one backend's wire format."""

    provider: AIProvider

    @abstractmethod
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
        """Build the request body for this backend."""

    @abstractmethod
    def parse_response(self, payload: dict[str, Any]) -> AIResponse:
        """Convert a decoded single-shot response into an AIResponse."""

    @abstractmethod
    def parse_stream_event(self, raw_line: str) -> AIStreamChunk | None:
        """Parse one line of a streaming response, or return None for lines that carry nothing."""

    def authorize(self, request: WireRequest, api_key: str | None) -> WireRequest:
        """Attach credentials to a request. Backends without credentials return it unchanged."""
        return replace(request, api_key=api_key)


def stringify_argument(value: Any) -> str:
    """Render one decoded JSON value as the flat string form tool handlers receive."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return json.dumps(value)
    return json.dumps(value, ensure_ascii=False)


def normalize_arguments(raw: Any) -> dict[str, str]:
    """Accept tool-call arguments as a JSON string or an already decoded object."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding undecodable tool arguments: {raw[:200]!r}")
            return {}
    if not isinstance(raw, dict):
        logger.warning(f"Discarding non-object tool arguments: {raw!r}")
        return {}
    return {str(key): stringify_argument(value) for key, value in raw.items() if value is not None}


def encode_arguments(arguments: dict[str, str]) -> str:
    """Serialize flat arguments as the JSON string OpenAI-style backends expect."""
    return json.dumps(arguments, ensure_ascii=False)


def sse_data(raw_line: str) -> str | None:
    """Return the payload of an SSE `data:` line, or None for any other line."""
    line = raw_line.strip()
    if not line.startswith(SSE_PREFIX):
        return None
    return line[len(SSE_PREFIX) :].strip()


def decode_event(data: str) -> dict[str, Any]:
    """Decode one JSON event, mapping malformed payloads to InvalidResponseError."""
    try:
        event = json.loads(data)
    except json.JSONDecodeError as e:
        raise InvalidResponseError(f"Unexpected response from the AI provider: {e}") from e
    if not isinstance(event, dict):
        raise InvalidResponseError()
    return event


def merge_consecutive_tool_messages(messages: list[Message]) -> list[list[Message] | Message]:
    """Group runs of consecutive tool messages, preserving order."""
    grouped: list[list[Message] | Message] = []
    for message in messages:
        if message.role == "tool":
            if grouped and isinstance(grouped[-1], list):
                grouped[-1].append(message)
            else:
                grouped.append([message])
        else:
            grouped.append(message)
    return grouped
