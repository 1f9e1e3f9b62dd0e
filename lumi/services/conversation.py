"""Conversation service: turns user messages into agent runs and stored replies."""

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel

from lumi.models.agent import Agent
from lumi.models.conversation import Conversation, ConversationMessage
from lumi.models.errors import AlreadyExecutingError, ConversationNotFoundError
from lumi.models.llm import AIToolSchema, Message
from lumi.models.session import ExecutionStatus
from lumi.services.delegation import DelegationRouter, find_mentioned_peers, strip_eof_marker
from lumi.services.execution import STOPPED_TEXT, ExecutionLoop, ExecutionOutcome, UpdateKind
from lumi.services.screen_control import ScreenControlArbiter
from lumi.services.session_manager import AgentRepository, ConversationRepository
from lumi.tools.base import parse_tool_input
from lumi.tools.builtin import UPDATE_SELF_TOOL, UpdateSelfInput
from lumi.tools.registry import ToolCatalog
from lumi.utils.logging import get_logger

logger = get_logger(__name__)

NO_RESPONSE_TEXT = "(no response)"
PEER_ROLE_PREVIEW = 120

AGENT_MODE_PROMPT = """You are in Agent Mode. {capabilities}

MULTI-STEP TASKS
1. Plan silently: identify every step needed to fully complete the task.
2. Execute each step immediately with the appropriate tool. Do not narrate future steps.
3. Chain results: use the output of one tool as input to the next.
4. Only give a final text response when every step is complete.
5. Never stop mid-task to ask the user to continue or do something manually.

SCREEN CONTROL
Screen origin is top-left (0,0) and coordinates are logical pixels, 1:1 with screenshots.
Prefer run_applescript to interact with UI elements by name; click_mouse is the last resort.
Only take screenshots when visual verification is required.

WHEN AN ACTION FAILS
Do not repeat the same click at slightly adjusted coordinates. Switch approach instead
(AppleScript by element name, keyboard shortcut, menu item or direct URL navigation).
Only report failure after exhausting the automated approaches."""

FULL_CONTROL_CAPABILITIES = (
    "You have full autonomous control of the user's computer: file system, web, shell, apps and screen."
)
RESTRICTED_CAPABILITIES = (
    "You have access to the file system, web, shell, AppleScript and screenshots. "
    "Desktop control (mouse, keyboard, app launching) is DISABLED."
)

DESKTOP_RESTRICTION_PROMPT = """DESKTOP CONTROL RESTRICTION
These tools are NOT available: click_mouse, scroll_mouse, move_mouse, type_text, press_key, open_application.
Available alternatives: take_screenshot to view the screen, run_applescript for automation,
execute_command for shell commands, read_file and write_file for files, fetch_url for web access.
Use AppleScript with System Events for UI automation instead of mouse and keyboard input."""

GROUP_PROMPT = """You are {name}. You are in a multi-agent group conversation. There is no leader; all agents are equal peers.

PARTICIPANTS
{roster}
• You: {name}

Other agents' messages appear prefixed with [AgentName]: in the conversation.

HOW TO COLLABORATE
• Read first: never duplicate or redo work a peer has already completed.
• Do your part of the task using tools, then hand off cleanly.
• Hand off with @AgentName: <what is left>. Hand off to one agent at a time.
• When everything is truly done, end your message with [eof].

SILENCE PROTOCOL
• Not your turn, or nothing meaningful to add: respond with exactly [eof] (hidden from the user).
• Spoke your piece and want to hand off: say what you need, then end with [eof].
• Near the exchange limit ({limit}): finish the task yourself instead of delegating further."""

DELEGATION_LIMIT_NOTE = (
    "The hand-off limit for this turn has been reached. Finish the task yourself and do not mention other agents."
)


class ConversationEventType(StrEnum):
    USER_MESSAGE = "user_message"
    MESSAGE_STARTED = "message_started"
    MESSAGE_DELTA = "message_delta"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    MESSAGE_COMPLETED = "message_completed"
    MESSAGE_REMOVED = "message_removed"
    DONE = "done"


class ConversationEvent(BaseModel):
    """One observable change to a conversation while a send is in progress."""

    type: ConversationEventType
    conversation_id: str
    message_id: str | None = None
    agent_id: str | None = None
    agent_name: str | None = None
    delta: str | None = None
    content: str | None = None
    tool_name: str | None = None
    tool_arguments: dict[str, str] | None = None
    success: bool | None = None
    status: ExecutionStatus | None = None
    is_error: bool = False
    depth: int = 0


@dataclass
class _TurnOptions:
    agent_mode: bool
    desktop_control_enabled: bool
    cancel_event: asyncio.Event


@dataclass
class _DelegationBudget:
    """Delegated invocations used so far under one root responder."""

    used: int = 0


def history_for(
    agent: Agent,
    messages: Sequence[ConversationMessage],
    agents_by_id: dict[str, Agent],
    is_group: bool,
) -> list[Message]:
    """Map stored messages onto the model-facing history of one agent.

    The agent's own replies become assistant turns; peers' replies in a group
    become user turns prefixed with the peer's name. Streaming placeholders are
    skipped.
    """
    history: list[Message] = []
    for message in messages:
        if message.is_streaming:
            continue
        if message.role == "user":
            history.append(Message.user(message.content, image_data=message.image_data))
        elif message.agent_id == agent.id:
            history.append(Message.assistant(message.content))
        elif is_group and message.agent_id is not None:
            peer = agents_by_id.get(message.agent_id)
            history.append(Message.user(f"[{peer.name if peer else 'Agent'}]: {message.content}"))
    return history


class ConversationService:
    """Runs the agents of a conversation for each user message.

    One send may be active per conversation. Each target agent runs with the
    freshest settled history; in groups, replies can hand off to peers with
    `@Name`, bounded by the delegation router.
    """

    def __init__(
        self,
        agents: AgentRepository,
        conversations: ConversationRepository,
        loop: ExecutionLoop,
        catalog: ToolCatalog,
        router: DelegationRouter,
        arbiter: ScreenControlArbiter,
    ):
        self.agents = agents
        self.conversations = conversations
        self.loop = loop
        self.catalog = catalog
        self.router = router
        self.arbiter = arbiter
        self._active: dict[str, asyncio.Event] = {}
        logger.info("ConversationService initialized")

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def participants(self, conversation: Conversation) -> list[Agent]:
        return self.agents.get_many(conversation.participant_ids)

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        *,
        agent_mode: bool = False,
        desktop_control_enabled: bool = False,
        image_data: bytes | None = None,
    ) -> list[ConversationMessage]:
        """Run a full send and return the agent messages that were kept."""
        kept: list[str] = []
        stream = self.stream_message(
            conversation_id,
            text,
            agent_mode=agent_mode,
            desktop_control_enabled=desktop_control_enabled,
            image_data=image_data,
        )
        async with aclosing(stream):
            async for event in stream:
                if event.type is ConversationEventType.MESSAGE_COMPLETED and event.message_id:
                    kept.append(event.message_id)

        conversation = self.get_conversation(conversation_id)
        return [message for message in conversation.messages if message.id in kept]

    async def stream_message(
        self,
        conversation_id: str,
        text: str,
        *,
        agent_mode: bool = False,
        desktop_control_enabled: bool = False,
        image_data: bytes | None = None,
    ) -> AsyncIterator[ConversationEvent]:
        """Append the user's message and stream events as agents respond.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
            AlreadyExecutingError: If a send is already running in this conversation
        """
        conversation = self.get_conversation(conversation_id)
        if conversation_id in self._active:
            raise AlreadyExecutingError()

        options = _TurnOptions(
            agent_mode=agent_mode,
            desktop_control_enabled=desktop_control_enabled,
            cancel_event=asyncio.Event(),
        )
        self._active[conversation_id] = options.cancel_event
        try:
            user_message = conversation.append(
                ConversationMessage(role="user", content=text, image_data=image_data)
            )
            await self.conversations.save_async(conversation)
            logger.info(f"Processing message for conversation {conversation_id}: {text[:50]}...")
            yield ConversationEvent(
                type=ConversationEventType.USER_MESSAGE,
                conversation_id=conversation_id,
                message_id=user_message.id,
                content=text,
            )

            participants = self.participants(conversation)
            targets = find_mentioned_peers(text, "", participants) or participants
            for target in targets:
                if options.cancel_event.is_set():
                    break
                responder = self._respond(conversation, target, options, _DelegationBudget())
                async with aclosing(responder):
                    async for event in responder:
                        yield event

            yield ConversationEvent(type=ConversationEventType.DONE, conversation_id=conversation_id)
        finally:
            self._active.pop(conversation_id, None)

    async def _respond(
        self,
        conversation: Conversation,
        target: Agent,
        options: _TurnOptions,
        budget: _DelegationBudget,
    ) -> AsyncIterator[ConversationEvent]:
        """Run one agent, store its reply and follow any hand-offs it makes."""
        agent = self.agents.get(target.id) or target
        participants = self.participants(conversation)
        is_group = len(participants) > 1

        placeholder = conversation.append(
            ConversationMessage(role="agent", agent_id=agent.id, is_streaming=True)
        )
        await self.conversations.save_async(conversation)
        event_base = {
            "conversation_id": conversation.id,
            "message_id": placeholder.id,
            "agent_id": agent.id,
            "agent_name": agent.name,
            "depth": budget.used,
        }
        yield ConversationEvent(type=ConversationEventType.MESSAGE_STARTED, **event_base)

        history = history_for(
            agent, conversation.settled_messages(), {a.id: a for a in self.agents.list_all()}, is_group
        )
        tools = self.resolve_tools(agent, options.agent_mode, options.desktop_control_enabled)
        system_prompt = self.compose_system_prompt(
            agent,
            participants,
            agent_mode=options.agent_mode,
            desktop_control_enabled=options.desktop_control_enabled,
            at_delegation_limit=is_group and self.router.is_exhausted(budget.used),
        )

        async def update_self(args: dict[str, str]) -> str:
            return self.apply_self_update(parse_tool_input(UpdateSelfInput, args, UPDATE_SELF_TOOL), agent.id)

        outcome: ExecutionOutcome | None = None
        updates = self.loop.run_stream(
            agent,
            history,
            tools,
            system_prompt,
            agent_mode=options.agent_mode,
            desktop_control_enabled=options.desktop_control_enabled,
            cancel_event=options.cancel_event,
            local_handlers={UPDATE_SELF_TOOL: update_self},
        )
        try:
            async with aclosing(updates):
                async for update in updates:
                    match update.kind:
                        case UpdateKind.PARTIAL:
                            placeholder.content = update.text
                            yield ConversationEvent(
                                type=ConversationEventType.MESSAGE_DELTA,
                                delta=update.delta,
                                content=update.text,
                                **event_base,
                            )
                        case UpdateKind.TOOL_CALL if update.tool_call is not None:
                            placeholder.content = update.text
                            yield ConversationEvent(
                                type=ConversationEventType.TOOL_CALL,
                                tool_name=update.tool_call.name,
                                tool_arguments=dict(update.tool_call.arguments),
                                **event_base,
                            )
                        case UpdateKind.TOOL_RESULT if update.record is not None:
                            yield ConversationEvent(
                                type=ConversationEventType.TOOL_RESULT,
                                tool_name=update.record.tool_name,
                                content=update.record.result,
                                success=update.record.success,
                                **event_base,
                            )
                        case UpdateKind.TERMINAL:
                            outcome = update.outcome
        except (asyncio.CancelledError, GeneratorExit):
            placeholder.content = placeholder.content or STOPPED_TEXT
            placeholder.is_streaming = False
            # Torn down mid-run, so the write cannot be awaited
            self.conversations.save(conversation)
            raise

        assert outcome is not None
        self._settle(placeholder, outcome)
        conversation.touch()

        if is_group:
            cleaned = strip_eof_marker(placeholder.content)
            if not cleaned:
                conversation.remove_message(placeholder.id)
                await self.conversations.save_async(conversation)
                logger.info(f"{agent.name} stayed silent in conversation {conversation.id}")
                yield ConversationEvent(type=ConversationEventType.MESSAGE_REMOVED, **event_base)
                return
            placeholder.content = cleaned

        await self.conversations.save_async(conversation)
        yield ConversationEvent(
            type=ConversationEventType.MESSAGE_COMPLETED,
            content=placeholder.content,
            status=outcome.status,
            is_error=placeholder.is_error,
            **event_base,
        )

        if not is_group or options.cancel_event.is_set():
            return
        for peer in self.router.plan(placeholder.content, agent, participants, budget.used):
            if options.cancel_event.is_set() or self.router.is_exhausted(budget.used):
                break
            budget.used += 1
            logger.info(f"{agent.name} handed off to {peer.name} (delegation {budget.used})")
            delegated = self._respond(conversation, peer, options, budget)
            async with aclosing(delegated):
                async for event in delegated:
                    yield event

    @staticmethod
    def _settle(placeholder: ConversationMessage, outcome: ExecutionOutcome) -> None:
        """Write the terminal text of a run into its placeholder message."""
        match outcome.status:
            case ExecutionStatus.FAILED:
                error_line = f"Error: {outcome.error}"
                placeholder.content = f"{outcome.transcript}\n\n{error_line}" if outcome.transcript else error_line
                placeholder.is_error = True
            case ExecutionStatus.CANCELLED:
                placeholder.content = outcome.content or STOPPED_TEXT
            case _:
                placeholder.content = outcome.transcript or NO_RESPONSE_TEXT
        placeholder.is_streaming = False

    def stop(self, conversation_id: str) -> bool:
        """Ask the active send of a conversation to stop. Returns False if none is running."""
        cancel_event = self._active.get(conversation_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        logger.info(f"Stop requested for conversation {conversation_id}")
        return True

    def stop_agent_control(self) -> int:
        """Stop every active send and drop all screen control."""
        for cancel_event in self._active.values():
            cancel_event.set()
        self.arbiter.reset()
        logger.info(f"Stopped agent control ({len(self._active)} active sends)")
        return len(self._active)

    def resolve_tools(self, agent: Agent, agent_mode: bool, desktop_control_enabled: bool) -> list[AIToolSchema]:
        """Tools offered to one run; `update_self` is always included when registered."""
        if agent_mode:
            if desktop_control_enabled:
                tools = self.catalog.list_for()
            else:
                tools = self.catalog.list_excluding_desktop_control()
        else:
            tools = self.catalog.list_for(agent.configuration.enabled_tools)

        update_tool = self.catalog.lookup(UPDATE_SELF_TOOL)
        if update_tool is not None and not any(tool.name == UPDATE_SELF_TOOL for tool in tools):
            tools.append(update_tool.to_schema())
        return tools

    def compose_system_prompt(
        self,
        agent: Agent,
        participants: Sequence[Agent],
        *,
        agent_mode: bool = False,
        desktop_control_enabled: bool = False,
        at_delegation_limit: bool = False,
    ) -> str | None:
        parts: list[str] = []
        if agent_mode:
            capabilities = FULL_CONTROL_CAPABILITIES if desktop_control_enabled else RESTRICTED_CAPABILITIES
            parts.append(AGENT_MODE_PROMPT.format(capabilities=capabilities))
            if not desktop_control_enabled:
                parts.append(DESKTOP_RESTRICTION_PROMPT)

        peers = [peer for peer in participants if peer.id != agent.id]
        if len(participants) > 1 and peers:
            roster = "\n".join(
                f"• {peer.name}: {(peer.configuration.system_prompt or '')[:PEER_ROLE_PREVIEW] or 'General assistant'}"
                for peer in peers
            )
            parts.append(GROUP_PROMPT.format(name=agent.name, roster=roster, limit=self.router.depth_limit))
            if at_delegation_limit:
                parts.append(DELEGATION_LIMIT_NOTE)

        if agent.configuration.system_prompt:
            parts.append(agent.configuration.system_prompt)
        return "\n\n".join(parts) if parts else None

    def apply_self_update(self, update: UpdateSelfInput, agent_id: str) -> str:
        """Apply an agent's request to change its own configuration.

        Returns the tool result text shown to the model.
        """
        agent = self.agents.get(agent_id)
        if agent is None:
            return "Error: agent not found."

        updated = agent.model_copy(deep=True)
        changes: list[str] = []
        if name := (update.name or "").strip():
            updated.name = name
            changes.append(f'name → "{name}"')
        if "system_prompt" in update.model_fields_set:
            updated.configuration.system_prompt = update.system_prompt or None
            changes.append("system prompt updated")
        if model := (update.model or "").strip():
            updated.configuration.model = model
            changes.append(f"model → {model}")
        if update.temperature is not None:
            updated.configuration.temperature = max(0.0, min(2.0, update.temperature))
            changes.append(f"temperature → {updated.configuration.temperature}")

        if not changes:
            return "No changes requested."
        self.agents.update(updated)
        logger.info(f"Agent {agent_id} updated itself: {', '.join(changes)}")
        return f"Configuration updated: {', '.join(changes)}."
