"""Conversation models owned by the caller layer."""

from datetime import UTC, datetime
from typing import Literal

from cuid2 import cuid_wrapper
from pydantic import BaseModel, ConfigDict, Field, computed_field

cuid = cuid_wrapper()


class ConversationMessage(BaseModel):
    """A message shown in a conversation transcript."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    id: str = Field(default_factory=cuid)
    role: Literal["user", "agent"]
    content: str = ""
    agent_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    is_streaming: bool = False
    is_error: bool = False
    image_data: bytes | None = None


class Conversation(BaseModel):
    """A direct or group conversation between the user and agents."""

    id: str = Field(default_factory=cuid)
    title: str | None = None
    participant_ids: list[str] = Field(default_factory=list)
    messages: list[ConversationMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_group(self) -> bool:
        return len(self.participant_ids) > 1

    def find_message(self, message_id: str) -> ConversationMessage | None:
        return next((m for m in self.messages if m.id == message_id), None)

    def append(self, message: ConversationMessage) -> ConversationMessage:
        self.messages.append(message)
        self.touch()
        return message

    def remove_message(self, message_id: str) -> bool:
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.id != message_id]
        return len(self.messages) != before

    def settled_messages(self) -> list[ConversationMessage]:
        """Messages that are no longer being streamed into."""
        return [m for m in self.messages if not m.is_streaming]

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)
