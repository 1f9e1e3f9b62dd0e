"""Tool catalog with allowlist and desktop-control filtering."""

from collections.abc import Iterable
from typing import Any

from lumi.models.agent import RiskLevel
from lumi.models.errors import NotImplementedToolError
from lumi.models.llm import AIToolSchema
from lumi.tools.base import ToolDefinition
from lumi.utils.logging import get_logger

logger = get_logger(__name__)

# Tools that drive the pointer, keyboard or launch applications
DESKTOP_CONTROL_TOOLS: frozenset[str] = frozenset(
    {
        "open_application",
        "click_mouse",
        "scroll_mouse",
        "move_mouse",
        "type_text",
        "press_key",
    }
)


class ToolCatalog:
    """Registry of tool definitions and their handlers.

    Lookups are read-only after startup, so one catalog is shared by every
    running loop.
    """

    def __init__(self, tools: Iterable[ToolDefinition] = ()):
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool, replacing any existing tool with the same name."""
        if tool.name in self._tools:
            logger.debug(f"Replacing tool definition: {tool.name}")
        self._tools[tool.name] = tool

    def lookup(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return sorted(self._tools)

    def all_tools(self) -> list[ToolDefinition]:
        return [self._tools[name] for name in self.names()]

    @staticmethod
    def is_desktop_control(name: str) -> bool:
        return name in DESKTOP_CONTROL_TOOLS

    def list_definitions(self, enabled_names: Iterable[str] | None = None) -> list[ToolDefinition]:
        """Definitions in the allowlist, or every definition when it is empty or unset."""
        enabled = set(enabled_names or ())
        return [tool for tool in self.all_tools() if not enabled or tool.name in enabled]

    def list_for(self, enabled_names: Iterable[str] | None = None) -> list[AIToolSchema]:
        return [tool.to_schema() for tool in self.list_definitions(enabled_names)]

    def list_excluding_desktop_control(self, enabled_names: Iterable[str] | None = None) -> list[AIToolSchema]:
        return [
            tool.to_schema()
            for tool in self.list_definitions(enabled_names)
            if not self.is_desktop_control(tool.name)
        ]

    def list_by_max_risk(self, max_risk: RiskLevel) -> list[ToolDefinition]:
        """Definitions whose declared risk does not exceed `max_risk`."""
        return [tool for tool in self.all_tools() if tool.risk_level.rank <= max_risk.rank]

    async def invoke(self, name: str, arguments: dict[str, Any]) -> str:
        """Validate arguments against the tool's input model and run its handler."""
        tool = self.lookup(name)
        if tool is None:
            raise NotImplementedToolError(f"Tool not found: {name}")
        tool_input = tool.parse_input(arguments)
        logger.debug(f"Executing tool: {name} with input: {tool_input}")
        return await tool.handler(tool_input)
