"""Shared fakes and fixtures for the runtime tests."""

from collections.abc import AsyncIterator

import pytest
from pydantic import Field

from lumi.models.agent import AIProvider, Agent, AgentConfiguration
from lumi.models.errors import CommandFailedError
from lumi.models.llm import AIResponse, AIStreamChunk, AIToolSchema, AIUsage, Message, ToolCall
from lumi.services.audit import ToolCallAuditor
from lumi.services.execution import ExecutionConfig, ExecutionLoop
from lumi.services.screen_control import ScreenControlArbiter
from lumi.services.session_manager import SessionRepository
from lumi.tools.base import NoInput, ToolDefinition, ToolInput
from lumi.tools.desktop import ScreenSnapshot
from lumi.tools.registry import ToolCatalog


class FakeTransport:
    """Transport returning canned payloads and lines, recording every request."""

    def __init__(self, responses=None, lines=None):
        self.responses = list(responses or [])
        self.lines = list(lines or [])
        self.requests = []
        self.closed = False

    async def send(self, request):
        self.requests.append(request)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def stream(self, request):
        self.requests.append(request)
        for line in self.lines:
            if isinstance(line, Exception):
                raise line
            yield line

    async def aclose(self):
        self.closed = True


class StaticCredentials:
    """Credential source returning one key for every provider."""

    def __init__(self, key: str | None = "test-key"):
        self.key = key

    def get_api_key(self, provider):
        return self.key


class ScriptedProvider:
    """Stands in for ProviderService, replaying scripted responses and stream chunks."""

    def __init__(self, responses=None, chunks=None):
        self.responses = list(responses or [])
        self.chunks = list(chunks or [])
        self.calls: list[dict] = []
        self.stream_calls: list[dict] = []

    async def send_message(self, provider, model, messages, system_prompt=None, tools=None, **kwargs):
        self.calls.append(
            {"provider": provider, "model": model, "messages": list(messages), "system_prompt": system_prompt, "tools": tools}
        )
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def stream_message(self, provider, model, messages, system_prompt=None, **kwargs) -> AsyncIterator[AIStreamChunk]:
        self.stream_calls.append({"messages": list(messages), "system_prompt": system_prompt})
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk


class FakeScreenCapture:
    def __init__(self, snapshot: ScreenSnapshot | None = None):
        self.snapshot = snapshot or ScreenSnapshot(image_data=b"\xff\xd8jpeg", width=1440, height=900)
        self.captures = 0

    async def capture(self):
        self.captures += 1
        return self.snapshot


def text_response(content: str, finish_reason: str = "stop") -> AIResponse:
    return AIResponse(
        content=content,
        finish_reason=finish_reason,
        usage=AIUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


def tool_response(*calls: ToolCall, content: str | None = None) -> AIResponse:
    return AIResponse(content=content, tool_calls=list(calls), finish_reason="tool_calls")


def make_agent(name: str = "Lumi", **config) -> Agent:
    configuration = {"provider": AIProvider.OPENAI, "model": "gpt-4.1", **config}
    return Agent(name=name, configuration=AgentConfiguration(**configuration))


class EchoInput(ToolInput):
    text: str = Field(..., description="Text to echo")


def echo_tool() -> ToolDefinition:
    async def echo(tool_input: EchoInput) -> str:
        return f"echo: {tool_input.text}"

    return ToolDefinition(
        name="echo",
        description="Echo the given text back",
        input_schema_class=EchoInput,
        handler=echo,
    )


def failing_tool() -> ToolDefinition:
    async def explode(tool_input: NoInput) -> str:
        raise CommandFailedError("boom")

    return ToolDefinition(name="explode", description="Always fails", input_schema_class=NoInput, handler=explode)


def recording_tool(name: str, calls: list[str]) -> ToolDefinition:
    async def handler(tool_input: NoInput) -> str:
        calls.append(name)
        return f"{name} ok"

    return ToolDefinition(name=name, description=f"Records {name}", input_schema_class=NoInput, handler=handler)


def schemas(catalog: ToolCatalog, *names: str) -> list[AIToolSchema]:
    return catalog.list_for(list(names))


@pytest.fixture
def agent() -> Agent:
    return make_agent()


@pytest.fixture
def catalog() -> ToolCatalog:
    return ToolCatalog([echo_tool(), failing_tool()])


@pytest.fixture
def auditor() -> ToolCallAuditor:
    return ToolCallAuditor()


@pytest.fixture
def arbiter() -> ScreenControlArbiter:
    return ScreenControlArbiter()


@pytest.fixture
def sessions() -> SessionRepository:
    return SessionRepository()


@pytest.fixture
def make_loop(catalog, auditor, arbiter, sessions):
    """Build an ExecutionLoop around a scripted provider."""

    def factory(provider, screen_capture=None, **config) -> ExecutionLoop:
        return ExecutionLoop(
            provider,
            catalog,
            auditor,
            arbiter,
            screen_capture=screen_capture,
            config=ExecutionConfig(screen_settle_delay=0, **config),
            sessions=sessions,
        )

    return factory


@pytest.fixture
def hello() -> list[Message]:
    return [Message.user("Hello")]
