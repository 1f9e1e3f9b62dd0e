"""Agent configuration models."""

from datetime import UTC, datetime
from enum import StrEnum

from cuid2 import cuid_wrapper
from pydantic import BaseModel, Field

cuid = cuid_wrapper()


class AIProvider(StrEnum):
    """Supported model backends."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"

    @property
    def display_name(self) -> str:
        return {
            AIProvider.OPENAI: "OpenAI",
            AIProvider.ANTHROPIC: "Anthropic",
            AIProvider.GEMINI: "Gemini",
            AIProvider.OLLAMA: "Ollama",
        }[self]

    @property
    def requires_api_key(self) -> bool:
        return self is not AIProvider.OLLAMA

    @property
    def default_models(self) -> list[str]:
        return list(_DEFAULT_MODELS[self])

    @property
    def default_model(self) -> str:
        return _DEFAULT_MODELS[self][0]


_DEFAULT_MODELS: dict[AIProvider, tuple[str, ...]] = {
    AIProvider.OPENAI: (
        "gpt-4.1",
        "gpt-4.1-mini",
        "gpt-4o",
        "gpt-4o-mini",
        "o3",
        "o4-mini",
        "gpt-5-small",
    ),
    AIProvider.ANTHROPIC: (
        "claude-sonnet-4-6",
        "claude-opus-4-6",
        "claude-haiku-4-5-20251001",
    ),
    AIProvider.GEMINI: (
        "gemini-2.0-flash",
        "gemini-2.0-flash-lite",
        "gemini-1.5-pro",
        "gemini-1.5-flash",
    ),
    AIProvider.OLLAMA: (
        "llama3.3:latest",
        "llama3.2:latest",
        "qwen2.5:latest",
        "mistral:latest",
        "llava:latest",
    ),
}


class RiskLevel(StrEnum):
    """Declared sensitivity tier of a tool."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return ("low", "medium", "high").index(self.value)


class AgentConfiguration(BaseModel):
    """Provider, model and tool allowlist for one agent."""

    provider: AIProvider
    model: str
    system_prompt: str | None = None
    temperature: float | None = 0.7
    max_tokens: int | None = 4096
    enabled_tools: list[str] = Field(default_factory=list)


class Agent(BaseModel):
    """A named configuration of provider, model, prompt and tools."""

    id: str = Field(default_factory=cuid)
    name: str
    configuration: AgentConfiguration
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def snapshot(self) -> "Agent":
        """Return an independent copy for the duration of one run."""
        return self.model_copy(deep=True)
