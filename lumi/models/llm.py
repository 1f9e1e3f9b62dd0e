"""Provider-agnostic message, tool-call and response types."""

import base64
from dataclasses import dataclass, field
from typing import Any, Literal

from cuid2 import cuid_wrapper
from pydantic import BaseModel, ConfigDict, Field, model_validator

cuid = cuid_wrapper()

Role = Literal["user", "assistant", "tool", "system"]


class ToolCall(BaseModel):
    """A model-requested invocation of a named tool.

    Arguments are a flat string map so every backend's argument format can be
    normalized to and from it.
    """

    id: str = Field(default_factory=cuid)
    name: str
    arguments: dict[str, str] = Field(default_factory=dict)


class Message(BaseModel):
    """A single turn in the provider-agnostic transcript."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    role: Role
    content: str = ""
    image_data: bytes | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    @model_validator(mode="after")
    def _tool_messages_answer_a_call(self) -> "Message":
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages must carry the tool_call_id they answer")
        return self

    @property
    def image_base64(self) -> str | None:
        """Image bytes encoded for inline transport."""
        if self.image_data is None:
            return None
        return base64.b64encode(self.image_data).decode("ascii")

    @classmethod
    def user(cls, content: str, image_data: bytes | None = None) -> "Message":
        return cls(role="user", content=content, image_data=image_data)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: list[ToolCall] | None = None) -> "Message":
        return cls(role="assistant", content=content, tool_calls=tool_calls or None)

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


class AIToolSchema(BaseModel):
    """Tool advertisement in the shape every adapter consumes."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class AIUsage:
    """Token usage reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "AIUsage | None") -> None:
        """Accumulate another usage report into this one."""
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens


@dataclass
class AIResponse:
    """Provider-agnostic single-shot response."""

    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    usage: AIUsage | None = None
    id: str = field(default_factory=cuid)


@dataclass
class AIStreamChunk:
    """One parsed streaming event."""

    content: str | None = None
    finish_reason: str | None = None
    done: bool = False
