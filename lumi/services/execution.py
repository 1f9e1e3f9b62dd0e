"""Execution loop: think, run requested tools, think again, until a final answer."""

import asyncio
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from lumi.models.agent import Agent
from lumi.models.errors import (
    AIProviderError,
    ExecutionCancelledError,
    InvalidToolArgumentsError,
    LumiError,
    MaxIterationsReachedError,
    NotImplementedToolError,
    ToolError,
)
from lumi.models.llm import AIToolSchema, AIUsage, Message, ToolCall
from lumi.models.session import (
    ExecutionPhase,
    ExecutionResult,
    ExecutionSession,
    ExecutionStatus,
    StepType,
    ToolCallRecord,
)
from lumi.services.audit import ToolCallAuditor
from lumi.services.provider import ProviderService
from lumi.services.screen_control import ScreenControlArbiter, ScreenControlLease
from lumi.tools.base import ToolCallable
from lumi.tools.desktop import ScreenCapture
from lumi.tools.registry import ToolCatalog
from lumi.utils.logging import get_logger

logger = get_logger(__name__)

MAX_ITERATIONS_FINISH_REASON = "max_iterations"
STOPPED_TEXT = "Stopped."


@dataclass
class ExecutionConfig:
    """Iteration budgets and the pause before a screen refresh."""

    max_iterations: int = 10
    agent_mode_max_iterations: int = 30
    screen_settle_delay: float = 0.9


class SessionStore(Protocol):
    def update(self, session: ExecutionSession) -> ExecutionSession: ...

    async def save_async(self, session: ExecutionSession) -> ExecutionSession: ...


class UpdateKind(StrEnum):
    PARTIAL = "partial"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SCREEN_REFRESH = "screen_refresh"
    TERMINAL = "terminal"


@dataclass
class ExecutionOutcome:
    """Everything a caller needs once a run has stopped."""

    session: ExecutionSession
    content: str
    transcript: str
    messages: list[Message]
    iterations: int
    finish_reason: str | None
    usage: AIUsage
    explanation: str
    error: LumiError | None = None

    @property
    def status(self) -> ExecutionStatus:
        return self.session.status

    @property
    def succeeded(self) -> bool:
        return self.session.status is ExecutionStatus.COMPLETED


@dataclass
class ExecutionUpdate:
    """One event from a running loop. `text` is always the visible transcript so far."""

    kind: UpdateKind
    text: str = ""
    delta: str | None = None
    tool_call: ToolCall | None = None
    record: ToolCallRecord | None = None
    outcome: ExecutionOutcome | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind is UpdateKind.TERMINAL


@dataclass
class _RunState:
    agent: Agent
    session: ExecutionSession
    messages: list[Message]
    lease: ScreenControlLease
    cancel_event: asyncio.Event | None
    parts: list[str] = field(default_factory=list)
    final_content: str = ""
    finish_reason: str | None = None
    usage: AIUsage = field(default_factory=AIUsage)
    iterations: int = 0
    status: ExecutionStatus = ExecutionStatus.RUNNING
    error: LumiError | None = None
    streaming: bool = False

    @property
    def transcript(self) -> str:
        return "\n\n".join(part for part in self.parts if part)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def add_text(self, text: str) -> None:
        self.parts.append(text)

    def add_delta(self, delta: str) -> None:
        if not self.streaming:
            self.parts.append("")
            self.streaming = True
        self.parts[-1] += delta


def screen_refresh_prompt(width: int, height: int) -> str:
    return (
        "Here is the current screen state after your last actions. "
        f"Resolution: {width}x{height} logical px. Coordinates are 1:1 with this image, "
        "top-left origin (0,0). Use pixel positions from this image directly with click_mouse. "
        "Identify every visible UI element and decide what to do next. "
        "Tip: run_applescript can interact with UI elements by name without pixel coordinates; "
        "prefer it when the app supports it."
    )


class ExecutionLoop:
    """Drives one agent through model calls and sequential tool execution."""

    def __init__(
        self,
        provider: ProviderService,
        catalog: ToolCatalog,
        auditor: ToolCallAuditor,
        arbiter: ScreenControlArbiter,
        screen_capture: ScreenCapture | None = None,
        config: ExecutionConfig | None = None,
        sessions: SessionStore | None = None,
    ):
        self.provider = provider
        self.catalog = catalog
        self.auditor = auditor
        self.arbiter = arbiter
        self.screen_capture = screen_capture
        self.config = config or ExecutionConfig()
        self.sessions = sessions

    def iteration_limit(self, agent_mode: bool) -> int:
        return self.config.agent_mode_max_iterations if agent_mode else self.config.max_iterations

    async def run(
        self,
        agent: Agent,
        messages: list[Message],
        tools: list[AIToolSchema],
        system_prompt: str | None = None,
        *,
        agent_mode: bool = False,
        desktop_control_enabled: bool = False,
        cancel_event: asyncio.Event | None = None,
        local_handlers: Mapping[str, ToolCallable] | None = None,
    ) -> ExecutionOutcome:
        """Run to completion and return the outcome."""
        stream = self.run_stream(
            agent,
            messages,
            tools,
            system_prompt,
            agent_mode=agent_mode,
            desktop_control_enabled=desktop_control_enabled,
            cancel_event=cancel_event,
            local_handlers=local_handlers,
        )
        outcome: ExecutionOutcome | None = None
        async with aclosing(stream):
            async for update in stream:
                if update.is_terminal:
                    outcome = update.outcome
        assert outcome is not None
        return outcome

    async def run_stream(
        self,
        agent: Agent,
        messages: list[Message],
        tools: list[AIToolSchema],
        system_prompt: str | None = None,
        *,
        agent_mode: bool = False,
        desktop_control_enabled: bool = False,
        cancel_event: asyncio.Event | None = None,
        local_handlers: Mapping[str, ToolCallable] | None = None,
    ) -> AsyncIterator[ExecutionUpdate]:
        """Run the loop, yielding updates; the final update is always TERMINAL."""
        agent = agent.snapshot()
        user_prompt = next((m.content for m in reversed(messages) if m.role == "user"), "")
        session = ExecutionSession(agent_id=agent.id, user_prompt=user_prompt)
        if self.sessions is not None:
            await self.sessions.save_async(session)

        run = _RunState(
            agent=agent,
            session=session,
            messages=list(messages),
            lease=self.arbiter.lease(),
            cancel_event=cancel_event,
        )
        logger.info(
            f"Starting execution loop for {agent.name} with {len(messages)} messages, {len(tools)} tools, "
            f"agent_mode: {agent_mode}"
        )

        try:
            if tools:
                body = self._run_with_tools(
                    run, tools, system_prompt, agent_mode, desktop_control_enabled, local_handlers or {}
                )
            else:
                body = self._run_streaming(run, system_prompt)
            async with aclosing(body):
                async for update in body:
                    yield update
        except AIProviderError as e:
            logger.warning(f"Execution for {agent.name} failed: {e}")
            run.status = ExecutionStatus.FAILED
            run.error = e
            session.add_step(StepType.ERROR, str(e))
        except (asyncio.CancelledError, GeneratorExit):
            run.status = ExecutionStatus.CANCELLED
            run.error = ExecutionCancelledError()
            self._finalize(run)
            # The run is being torn down, so this last write cannot be awaited
            if self.sessions is not None:
                self.sessions.update(session)
            raise
        finally:
            run.lease.release()

        outcome = self._finalize(run)
        if self.sessions is not None:
            await self.sessions.save_async(session)
        yield ExecutionUpdate(kind=UpdateKind.TERMINAL, text=run.transcript, outcome=outcome)

    async def _run_streaming(self, run: _RunState, system_prompt: str | None) -> AsyncIterator[ExecutionUpdate]:
        if run.cancelled:
            run.status = ExecutionStatus.CANCELLED
            return

        config = run.agent.configuration
        run.iterations = 1
        run.session.iterations = 1
        run.session.transition(ExecutionPhase.THINKING)
        run.session.add_step(StepType.THINKING, "Streaming response")

        chunks = self.provider.stream_message(
            config.provider,
            config.model,
            run.messages,
            system_prompt=system_prompt,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
        accumulated = ""
        async with aclosing(chunks):
            async for chunk in chunks:
                if run.cancelled:
                    break
                if chunk.content:
                    accumulated += chunk.content
                    run.add_delta(chunk.content)
                    yield ExecutionUpdate(kind=UpdateKind.PARTIAL, text=run.transcript, delta=chunk.content)
                if chunk.finish_reason:
                    run.finish_reason = chunk.finish_reason

        run.final_content = accumulated
        run.messages.append(Message.assistant(accumulated))
        if run.cancelled:
            run.status = ExecutionStatus.CANCELLED
            return
        run.session.add_step(StepType.RESPONSE, accumulated)
        run.status = ExecutionStatus.COMPLETED

    async def _run_with_tools(
        self,
        run: _RunState,
        tools: list[AIToolSchema],
        system_prompt: str | None,
        agent_mode: bool,
        desktop_control_enabled: bool,
        local_handlers: Mapping[str, ToolCallable],
    ) -> AsyncIterator[ExecutionUpdate]:
        config = run.agent.configuration
        limit = self.iteration_limit(agent_mode)
        offered = {tool.name for tool in tools}

        while True:
            if run.cancelled:
                run.status = ExecutionStatus.CANCELLED
                return
            if run.iterations >= limit:
                logger.warning(f"Execution loop for {run.agent.name} reached max iterations ({limit})")
                run.error = MaxIterationsReachedError(limit)
                run.finish_reason = MAX_ITERATIONS_FINISH_REASON
                run.session.add_step(StepType.ERROR, str(run.error))
                run.status = ExecutionStatus.COMPLETED
                return

            run.iterations += 1
            run.session.iterations = run.iterations
            run.session.transition(ExecutionPhase.THINKING)
            run.session.add_step(StepType.THINKING, f"Iteration {run.iterations}/{limit}")
            logger.debug(f"Execution loop turn {run.iterations}/{limit}")

            response = await self.provider.send_message(
                config.provider,
                config.model,
                run.messages,
                system_prompt=system_prompt,
                tools=tools,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
            )
            run.usage.add(response.usage)
            run.finish_reason = response.finish_reason
            run.messages.append(Message.assistant(response.content or "", response.tool_calls))

            run.final_content = response.content or ""
            if response.content:
                run.add_text(response.content)
                yield ExecutionUpdate(kind=UpdateKind.PARTIAL, text=run.transcript, delta=response.content)

            if not response.tool_calls:
                run.session.add_step(StepType.RESPONSE, response.content or "")
                run.status = ExecutionStatus.COMPLETED
                logger.info(f"Execution loop completed in {run.iterations} iterations")
                return

            run.session.transition(ExecutionPhase.TOOL_PENDING)
            run.add_text(f"Running: {', '.join(call.name for call in response.tool_calls)}…")
            run.session.transition(ExecutionPhase.EXECUTING)

            touched_screen = False
            for call in response.tool_calls:
                if run.cancelled:
                    break
                run.session.add_step(StepType.TOOL_CALL, call.name, metadata=dict(call.arguments))
                yield ExecutionUpdate(kind=UpdateKind.TOOL_CALL, text=run.transcript, tool_call=call)

                result, success, invoked = await self._execute_tool(call, offered, local_handlers)
                record = self.auditor.record(
                    agent_id=run.agent.id,
                    agent_name=run.agent.name,
                    tool_name=call.name,
                    arguments=call.arguments,
                    result=result,
                    success=success,
                )
                run.session.add_step(
                    StepType.TOOL_RESULT, result, metadata={"tool": call.name, "success": str(success).lower()}
                )
                run.messages.append(Message.tool(call.id, result))
                yield ExecutionUpdate(kind=UpdateKind.TOOL_RESULT, text=run.transcript, tool_call=call, record=record)

                if invoked and self.catalog.is_desktop_control(call.name):
                    touched_screen = True
                    if desktop_control_enabled:
                        run.lease.acquire()

            if touched_screen and agent_mode and desktop_control_enabled and not run.cancelled:
                refreshed = await self._refresh_screen(run)
                if refreshed:
                    yield ExecutionUpdate(kind=UpdateKind.SCREEN_REFRESH, text=run.transcript)

    async def _execute_tool(
        self,
        call: ToolCall,
        offered: set[str],
        local_handlers: Mapping[str, ToolCallable],
    ) -> tuple[str, bool, bool]:
        """Run one tool call, turning every failure into text for the model.

        Returns the result text, whether it succeeded and whether a handler ran.
        """
        try:
            if call.name in local_handlers:
                result = await local_handlers[call.name](dict(call.arguments))
            elif call.name in offered and self.catalog.has_tool(call.name):
                result = await self.catalog.invoke(call.name, call.arguments)
            elif self.catalog.has_tool(call.name):
                logger.warning(f"Model requested tool outside the offered set: {call.name}")
                return f"Tool not available: {call.name}", False, False
            else:
                logger.error(f"Unknown tool requested: {call.name}")
                return f"Tool not found: {call.name}", False, False
        except (InvalidToolArgumentsError, NotImplementedToolError) as e:
            # Rejected before the handler reached anything
            logger.info(f"Tool {call.name} was not run: {e}")
            return f"Error: {e}", False, False
        except ToolError as e:
            logger.info(f"Tool {call.name} failed: {e}")
            return f"Error: {e}", False, True
        except Exception as e:
            logger.error(f"Tool {call.name} raised unexpectedly: {e}", exc_info=True)
            return f"Error: {e}", False, True

        logger.debug(f"Tool {call.name} succeeded: {str(result)[:100]}...")
        return str(result), True, True

    async def _refresh_screen(self, run: _RunState) -> bool:
        """Wait for the UI to settle, then show the model a fresh screenshot."""
        if self.screen_capture is None:
            return False
        await asyncio.sleep(self.config.screen_settle_delay)
        if run.cancelled:
            return False

        try:
            snapshot = await self.screen_capture.capture()
        except Exception as e:
            logger.warning(f"Screen capture failed: {e}")
            return False
        if snapshot is None:
            return False

        run.messages.append(
            Message.user(screen_refresh_prompt(snapshot.width, snapshot.height), image_data=snapshot.image_data)
        )
        logger.debug(f"Injected {snapshot.width}x{snapshot.height} screenshot")
        return True

    def _finalize(self, run: _RunState) -> ExecutionOutcome:
        """Record the terminal state on the session and build the outcome."""
        session = run.session
        transcript = run.transcript
        tokens = run.usage.total_tokens or None

        match run.status:
            case ExecutionStatus.COMPLETED:
                if isinstance(run.error, MaxIterationsReachedError):
                    content = transcript
                    explanation = f"{run.error}. Returning the partial output produced so far."
                else:
                    content = run.final_content
                    explanation = f"Completed in {run.iterations} iteration(s)."
                result = ExecutionResult(
                    success=True,
                    output=content,
                    error=str(run.error) if run.error else None,
                    tokens_used=tokens,
                )
            case ExecutionStatus.FAILED:
                content = transcript
                explanation = f"Failed: {run.error}"
                result = ExecutionResult(success=False, output=transcript or None, error=str(run.error), tokens_used=tokens)
            case _:
                run.status = ExecutionStatus.CANCELLED
                if run.error is None:
                    run.error = ExecutionCancelledError()
                content = transcript or STOPPED_TEXT
                explanation = "Stopped by user."
                result = ExecutionResult(success=False, output=content, error=str(run.error), tokens_used=tokens)

        if not session.is_finished:
            session.finish(run.status, result)
        logger.info(f"Execution {session.id} finished: {run.status} after {run.iterations} iteration(s)")

        return ExecutionOutcome(
            session=session,
            content=content,
            transcript=transcript,
            messages=run.messages,
            iterations=run.iterations,
            finish_reason=run.finish_reason,
            usage=run.usage,
            explanation=explanation,
            error=run.error,
        )
