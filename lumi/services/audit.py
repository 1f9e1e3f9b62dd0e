"""Append-only audit log of tool invocations."""

import threading

from lumi.models.session import ToolCallRecord
from lumi.utils.logging import get_logger

logger = get_logger(__name__)


class ToolCallAuditor:
    """Records every tool call made by any running loop."""

    def __init__(self) -> None:
        self._records: list[ToolCallRecord] = []
        self._lock = threading.Lock()

    def record(
        self,
        agent_id: str,
        agent_name: str,
        tool_name: str,
        arguments: dict[str, str],
        result: str,
        success: bool,
    ) -> ToolCallRecord:
        entry = ToolCallRecord(
            agent_id=agent_id,
            agent_name=agent_name,
            tool_name=tool_name,
            arguments=dict(arguments),
            result=result,
            success=success,
        )
        with self._lock:
            self._records.append(entry)
        logger.info(f"Tool call {tool_name} by {agent_name} ({'ok' if success else 'failed'})")
        return entry

    def history(self, agent_id: str | None = None, limit: int | None = None) -> list[ToolCallRecord]:
        """Records newest first, optionally filtered to one agent."""
        with self._lock:
            records = list(reversed(self._records))
        if agent_id is not None:
            records = [r for r in records if r.agent_id == agent_id]
        if limit is not None:
            records = records[:limit]
        return records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
