"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from lumi.models.agent import RiskLevel
from lumi.models.errors import InvalidToolArgumentsError
from lumi.models.llm import AIToolSchema

T = TypeVar("T", bound=BaseModel)

ToolHandler = Callable[[Any], Awaitable[str]]
ToolCallable = Callable[[dict[str, Any]], Awaitable[str]]


class ToolCategory(StrEnum):
    SYSTEM = "system"
    FILE_OPERATIONS = "file_operations"
    NETWORK = "network"
    SCREEN_CONTROL = "screen_control"
    AGENT = "agent"


class ToolInput(BaseModel):
    """Base class for tool input schemas; undeclared arguments are rejected."""

    model_config = ConfigDict(extra="forbid")


class NoInput(ToolInput):
    """Input schema for tools that take no arguments."""


def describe_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic error into one line the model can act on."""
    problems = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"]) or "arguments"
        problems.append(f"{location}: {detail['msg']}")
    return "; ".join(problems)


def parse_tool_input(schema: type[T], raw_input: dict[str, Any], tool_name: str) -> T:
    """Validate raw tool arguments, raising InvalidToolArgumentsError on failure."""
    try:
        return schema.model_validate(raw_input)
    except ValidationError as e:
        raise InvalidToolArgumentsError(f"{tool_name}: {describe_validation_error(e)}") from e


@dataclass
class ToolDefinition:
    """Definition of a tool available to agents."""

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler
    risk_level: RiskLevel = RiskLevel.LOW
    category: ToolCategory = ToolCategory.SYSTEM

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        schema = self.input_schema_class.model_json_schema()
        # The tool itself carries the name and description
        schema.pop("title", None)
        schema.pop("description", None)
        schema.setdefault("properties", {})
        return schema

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Parse and validate tool input."""
        return parse_tool_input(self.input_schema_class, raw_input, self.name)

    def to_schema(self) -> AIToolSchema:
        return AIToolSchema(name=self.name, description=self.description, parameters=self.get_json_schema())
