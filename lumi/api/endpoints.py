"""API endpoints for the agent runtime."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from lumi import __version__
from lumi.models.agent import Agent
from lumi.models.api import (
    CreateAgentRequest,
    CreateConversationRequest,
    HealthResponse,
    SendMessageRequest,
    SendMessageResponse,
    StopResponse,
    ToolInfo,
)
from lumi.models.conversation import Conversation
from lumi.models.errors import AlreadyExecutingError, ConversationNotFoundError
from lumi.models.session import ExecutionSession, ToolCallRecord
from lumi.runtime import Runtime
from lumi.services.conversation import ConversationEvent
from lumi.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
        screen_control_active=get_runtime(request).arbiter.is_active,
    )


@router.get("/tools", response_model=list[ToolInfo], tags=["Tools"])
async def list_tools(request: Request) -> list[ToolInfo]:
    return [
        ToolInfo(
            name=tool.name,
            description=tool.description,
            risk_level=tool.risk_level,
            category=tool.category.value,
            parameters=tool.get_json_schema(),
        )
        for tool in get_runtime(request).catalog.all_tools()
    ]


@router.get("/agents", response_model=list[Agent], tags=["Agents"])
async def list_agents(request: Request) -> list[Agent]:
    return get_runtime(request).agents.list_all()


@router.post("/agents", response_model=Agent, status_code=201, tags=["Agents"])
async def create_agent(payload: CreateAgentRequest, request: Request) -> Agent:
    agent = Agent(name=payload.name, configuration=payload.configuration)
    get_runtime(request).agents.add(agent)
    logger.info(f"Created agent {agent.id} ({agent.name}, {agent.configuration.provider})")
    return agent


@router.post("/conversations", response_model=Conversation, status_code=201, tags=["Conversation"])
async def create_conversation(payload: CreateConversationRequest, request: Request) -> Conversation:
    runtime = get_runtime(request)
    unknown = [agent_id for agent_id in payload.participant_ids if runtime.agents.get(agent_id) is None]
    if unknown:
        raise HTTPException(status_code=404, detail=f"Unknown agent(s): {', '.join(unknown)}")
    return runtime.conversations.create(payload.participant_ids, title=payload.title)


@router.get("/conversations/{conversation_id}", response_model=Conversation, tags=["Conversation"])
async def get_conversation(conversation_id: str, request: Request) -> Conversation:
    conversation = get_runtime(request).conversations.get(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return conversation


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=SendMessageResponse,
    tags=["Conversation"],
)
async def send_message(conversation_id: str, payload: SendMessageRequest, request: Request) -> SendMessageResponse:
    """Post a user message and wait for every agent reply."""
    service = get_runtime(request).conversation_service
    logger.info(f"Processing message for conversation {conversation_id}: {payload.message[:50]}...")
    try:
        messages = await service.send_message(
            conversation_id,
            payload.message,
            agent_mode=payload.agent_mode,
            desktop_control_enabled=payload.desktop_control_enabled,
            image_data=payload.image_data,
        )
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except AlreadyExecutingError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return SendMessageResponse(conversation_id=conversation_id, messages=messages)


def _sse(event: ConversationEvent) -> str:
    return f"data: {event.model_dump_json(exclude_none=True)}\n\n"


@router.post("/conversations/{conversation_id}/messages/stream", tags=["Conversation"])
async def stream_message(conversation_id: str, payload: SendMessageRequest, request: Request) -> StreamingResponse:
    """Post a user message and stream conversation events as server-sent events."""
    service = get_runtime(request).conversation_service
    events = service.stream_message(
        conversation_id,
        payload.message,
        agent_mode=payload.agent_mode,
        desktop_control_enabled=payload.desktop_control_enabled,
        image_data=payload.image_data,
    )
    # The first event is pulled here so lookup and concurrency errors become HTTP statuses
    try:
        first = await anext(events)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except AlreadyExecutingError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e

    async def body() -> AsyncIterator[str]:
        try:
            yield _sse(first)
            async for event in events:
                yield _sse(event)
        finally:
            await events.aclose()

    return StreamingResponse(body(), media_type="text/event-stream")


@router.post("/conversations/{conversation_id}/stop", response_model=StopResponse, tags=["Conversation"])
async def stop_conversation(conversation_id: str, request: Request) -> StopResponse:
    runtime = get_runtime(request)
    if runtime.conversations.get(conversation_id) is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    stopped = runtime.conversation_service.stop(conversation_id)
    return StopResponse(conversation_id=conversation_id, stopped=stopped)


@router.get("/tool-calls", response_model=list[ToolCallRecord], tags=["Audit"])
async def list_tool_calls(request: Request, agent_id: str | None = None, limit: int = 100) -> list[ToolCallRecord]:
    return get_runtime(request).auditor.history(agent_id=agent_id, limit=limit)


@router.get("/sessions", response_model=list[ExecutionSession], tags=["Audit"])
async def list_sessions(request: Request, agent_id: str | None = None, limit: int = 20) -> list[ExecutionSession]:
    sessions = get_runtime(request).sessions
    if agent_id:
        return sessions.get_for_agent(agent_id)[:limit]
    return sessions.get_recent(limit)
