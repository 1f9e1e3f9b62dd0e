"""Execution session and audit models."""

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from cuid2 import cuid_wrapper
from pydantic import BaseModel, ConfigDict, Field

from lumi.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


class ExecutionStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionPhase(StrEnum):
    """Where one loop invocation currently is."""

    IDLE = "idle"
    THINKING = "thinking"
    TOOL_PENDING = "tool_pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepType(StrEnum):
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    RESPONSE = "response"
    ERROR = "error"


class ExecutionStep(BaseModel):
    """One recorded step of a run."""

    id: str = Field(default_factory=cuid)
    type: StepType
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, str] | None = None


class ExecutionResult(BaseModel):
    """Outcome summary stored on a finished session."""

    success: bool
    output: str | None = None
    error: str | None = None
    tokens_used: int | None = None


class ExecutionSession(BaseModel):
    """Bookkeeping record of one execution loop run."""

    id: str = Field(default_factory=cuid)
    agent_id: str
    user_prompt: str = ""
    steps: list[ExecutionStep] = Field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    phase: ExecutionPhase = ExecutionPhase.IDLE
    result: ExecutionResult | None = None
    iterations: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def duration(self) -> timedelta | None:
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    @property
    def is_finished(self) -> bool:
        return self.status is not ExecutionStatus.RUNNING

    def add_step(self, step_type: StepType, content: str, metadata: dict[str, str] | None = None) -> ExecutionStep:
        step = ExecutionStep(type=step_type, content=content, metadata=metadata)
        self.steps.append(step)
        return step

    def transition(self, phase: ExecutionPhase) -> None:
        logger.debug(f"Session {self.id}: {self.phase} -> {phase}")
        self.phase = phase

    def finish(self, status: ExecutionStatus, result: ExecutionResult) -> None:
        """Move the session into a terminal state."""
        self.status = status
        self.result = result
        self.phase = {
            ExecutionStatus.COMPLETED: ExecutionPhase.COMPLETED,
            ExecutionStatus.FAILED: ExecutionPhase.FAILED,
            ExecutionStatus.CANCELLED: ExecutionPhase.CANCELLED,
        }.get(status, self.phase)
        self.completed_at = datetime.now(UTC)


class ToolCallRecord(BaseModel):
    """Immutable audit row for one tool invocation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=cuid)
    agent_id: str
    agent_name: str
    tool_name: str
    arguments: dict[str, str] = Field(default_factory=dict)
    result: str
    success: bool
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
