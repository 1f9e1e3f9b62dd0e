"""Built-in file, shell, network and agent tools."""

import asyncio
from datetime import datetime
from pathlib import Path
from urllib.parse import urlparse

import httpx
from pydantic import Field

from lumi.models.agent import RiskLevel
from lumi.models.errors import (
    CommandFailedError,
    InvalidURLError,
    PermissionDeniedError,
    ToolError,
    ToolFileNotFoundError,
)
from lumi.tools.base import NoInput, ToolCategory, ToolDefinition, ToolInput
from lumi.utils.logging import get_logger

logger = get_logger(__name__)

FETCH_BODY_LIMIT = 8000
COMMAND_TIMEOUT = 300.0
UPDATE_SELF_TOOL = "update_self"


class PathInput(ToolInput):
    """Input schema for tools that act on a single path."""

    path: str = Field(..., description="Absolute path to the file or directory")


class WriteFileInput(ToolInput):
    path: str = Field(..., description="Absolute path to the file to write")
    content: str = Field(..., description="Content to write to the file")


class ExecuteCommandInput(ToolInput):
    command: str = Field(..., description="Full shell command string")
    working_directory: str | None = Field(None, description="Working directory for the command (optional)")


class FetchUrlInput(ToolInput):
    url: str = Field(..., description="The http or https URL to fetch")


class UpdateSelfInput(ToolInput):
    """Input schema for an agent changing its own configuration.

    Every field is optional; only the fields the model sends are applied.
    """

    name: str | None = Field(None, description="New agent name (optional)")
    system_prompt: str | None = Field(
        None, description="New system prompt that defines your personality and behavior (optional)"
    )
    model: str | None = Field(None, description="New model to use, e.g. gpt-4o (optional)")
    temperature: float | None = Field(
        None, description="New temperature between 0.0 (focused) and 1.0 (creative) (optional)"
    )


def _expand(path: str) -> Path:
    return Path(path).expanduser()


def create_datetime_tool() -> ToolDefinition:
    async def get_current_datetime(tool_input: NoInput) -> str:
        return datetime.now().astimezone().strftime("%A, %B %d, %Y at %I:%M:%S %p %Z")

    return ToolDefinition(
        name="get_current_datetime",
        description="Get the current date and time",
        input_schema_class=NoInput,
        handler=get_current_datetime,
        risk_level=RiskLevel.LOW,
        category=ToolCategory.SYSTEM,
    )


def create_read_file_tool() -> ToolDefinition:
    async def read_file(tool_input: PathInput) -> str:
        path = _expand(tool_input.path)
        if not path.exists():
            raise ToolFileNotFoundError(str(path))
        if path.is_dir():
            raise ToolError(f"{path} is a directory")
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
        except PermissionError as e:
            raise PermissionDeniedError() from e

    return ToolDefinition(
        name="read_file",
        description="Read the contents of a file at the given path",
        input_schema_class=PathInput,
        handler=read_file,
        risk_level=RiskLevel.LOW,
        category=ToolCategory.FILE_OPERATIONS,
    )


def create_write_file_tool() -> ToolDefinition:
    async def write_file(tool_input: WriteFileInput) -> str:
        path = _expand(tool_input.path)
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_text, tool_input.content, encoding="utf-8")
        except PermissionError as e:
            raise PermissionDeniedError() from e
        return f"Wrote {len(tool_input.content)} characters to {path}"

    return ToolDefinition(
        name="write_file",
        description="Write content to a file, creating it if it doesn't exist",
        input_schema_class=WriteFileInput,
        handler=write_file,
        risk_level=RiskLevel.MEDIUM,
        category=ToolCategory.FILE_OPERATIONS,
    )


def create_list_directory_tool() -> ToolDefinition:
    async def list_directory(tool_input: PathInput) -> str:
        path = _expand(tool_input.path)
        if not path.exists():
            raise ToolFileNotFoundError(str(path))
        if not path.is_dir():
            raise ToolError(f"{path} is not a directory")
        try:
            entries = sorted(path.iterdir(), key=lambda entry: entry.name.lower())
        except PermissionError as e:
            raise PermissionDeniedError() from e
        if not entries:
            return f"{path} is empty"
        return "\n".join(f"{entry.name}/" if entry.is_dir() else entry.name for entry in entries)

    return ToolDefinition(
        name="list_directory",
        description="List files and directories in a given path",
        input_schema_class=PathInput,
        handler=list_directory,
        risk_level=RiskLevel.LOW,
        category=ToolCategory.FILE_OPERATIONS,
    )


def create_directory_tool() -> ToolDefinition:
    async def create_directory(tool_input: PathInput) -> str:
        path = _expand(tool_input.path)
        try:
            await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
        except PermissionError as e:
            raise PermissionDeniedError() from e
        return f"Directory created: {path}"

    return ToolDefinition(
        name="create_directory",
        description="Create a directory, including any missing parents",
        input_schema_class=PathInput,
        handler=create_directory,
        risk_level=RiskLevel.LOW,
        category=ToolCategory.FILE_OPERATIONS,
    )


def create_execute_command_tool(default_cwd: Path | None = None, timeout: float = COMMAND_TIMEOUT) -> ToolDefinition:
    async def execute_command(tool_input: ExecuteCommandInput) -> str:
        command = tool_input.command
        cwd = _expand(tool_input.working_directory) if tool_input.working_directory else default_cwd
        if cwd is not None and not cwd.is_dir():
            raise ToolFileNotFoundError(str(cwd))

        logger.info(f"Running shell command: {command[:100]}")
        process = await asyncio.create_subprocess_exec(
            "/bin/bash",
            "-c",
            command,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise CommandFailedError(f"timed out after {timeout:.0f}s") from e

        output = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            error_output = stderr.decode("utf-8", errors="replace").strip()
            raise CommandFailedError(error_output or output or f"exit code {process.returncode}")
        return output or "(no output)"

    return ToolDefinition(
        name="execute_command",
        description=(
            "Execute any shell command via /bin/bash and return its output. "
            "Supports pipes, redirects, tilde expansion, and all shell syntax."
        ),
        input_schema_class=ExecuteCommandInput,
        handler=execute_command,
        risk_level=RiskLevel.HIGH,
        category=ToolCategory.SYSTEM,
    )


def create_fetch_url_tool(client: httpx.AsyncClient | None = None) -> ToolDefinition:
    async def fetch_url(tool_input: FetchUrlInput) -> str:
        url = tool_input.url.strip()
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise InvalidURLError(url)

        try:
            if client is not None:
                response = await client.get(url, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as session:
                    response = await session.get(url)
        except httpx.HTTPError as e:
            raise ToolError(f"Request failed: {e}") from e

        body = response.text
        if len(body) > FETCH_BODY_LIMIT:
            body = body[:FETCH_BODY_LIMIT] + "\n...[truncated]"
        return f"Status: {response.status_code}\n\n{body}"

    return ToolDefinition(
        name="fetch_url",
        description="Fetch the contents of a URL over HTTP(S)",
        input_schema_class=FetchUrlInput,
        handler=fetch_url,
        risk_level=RiskLevel.LOW,
        category=ToolCategory.NETWORK,
    )


def create_update_self_tool() -> ToolDefinition:
    """Advertised to every agent; the conversation layer intercepts the call."""

    async def update_self(tool_input: UpdateSelfInput) -> str:
        return "Self-update applied."

    return ToolDefinition(
        name=UPDATE_SELF_TOOL,
        description=(
            "Update your own agent configuration. Use this when the user asks you to change your name, "
            "personality, system prompt, model, or temperature. Only call this when explicitly asked."
        ),
        input_schema_class=UpdateSelfInput,
        handler=update_self,
        risk_level=RiskLevel.LOW,
        category=ToolCategory.AGENT,
    )


def builtin_tools(working_directory: Path | None = None, http_client: httpx.AsyncClient | None = None) -> list[ToolDefinition]:
    return [
        create_datetime_tool(),
        create_read_file_tool(),
        create_write_file_tool(),
        create_list_directory_tool(),
        create_directory_tool(),
        create_execute_command_tool(default_cwd=working_directory),
        create_fetch_url_tool(http_client),
        create_update_self_tool(),
    ]
