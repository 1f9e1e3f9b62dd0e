"""Tools available to agents."""

from lumi.tools.base import NoInput, ToolCategory, ToolDefinition, ToolInput, parse_tool_input
from lumi.tools.registry import DESKTOP_CONTROL_TOOLS, ToolCatalog

__all__ = [
    "DESKTOP_CONTROL_TOOLS",
    "NoInput",
    "ToolCatalog",
    "ToolCategory",
    "ToolDefinition",
    "ToolInput",
    "parse_tool_input",
]
