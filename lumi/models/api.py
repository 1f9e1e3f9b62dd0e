"""Request and response models for the HTTP API."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from lumi.models.agent import AgentConfiguration, RiskLevel
from lumi.models.conversation import ConversationMessage


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
    screen_control_active: bool = False


class ToolInfo(BaseModel):
    """A registered tool as exposed to API clients."""

    name: str
    description: str
    risk_level: RiskLevel
    category: str
    parameters: dict


class CreateAgentRequest(BaseModel):
    """Request model for agent creation."""

    name: str = Field(min_length=1)
    configuration: AgentConfiguration


class CreateConversationRequest(BaseModel):
    """Request model for conversation creation."""

    participant_ids: list[str] = Field(min_length=1)
    title: str | None = None


class SendMessageRequest(BaseModel):
    """Request model for posting a user message to a conversation."""

    model_config = ConfigDict(val_json_bytes="base64")

    message: str
    agent_mode: bool = False
    desktop_control_enabled: bool = False
    image_data: bytes | None = None


class SendMessageResponse(BaseModel):
    """Agent replies kept after one send."""

    conversation_id: str
    messages: list[ConversationMessage]


class StopResponse(BaseModel):
    conversation_id: str
    stopped: bool
