"""Tests for the tool catalog, built-in tools and desktop tools."""

from typing import Literal

import httpx
import pytest
from pydantic import Field

from lumi.models.agent import RiskLevel
from lumi.models.errors import (
    CommandFailedError,
    InvalidToolArgumentsError,
    InvalidURLError,
    NotImplementedToolError,
    ToolFileNotFoundError,
)
from lumi.tools.base import NoInput, ToolDefinition, ToolInput
from lumi.tools.builtin import UPDATE_SELF_TOOL, builtin_tools
from lumi.tools.desktop import DesktopTools
from lumi.tools.registry import ToolCatalog
from tests.conftest import echo_tool, failing_tool


async def noop(tool_input: NoInput) -> str:
    return "ok"


def named(name: str, risk: RiskLevel = RiskLevel.LOW) -> ToolDefinition:
    return ToolDefinition(name=name, description=name, input_schema_class=NoInput, handler=noop, risk_level=risk)


class PickInput(ToolInput):
    side: Literal["left", "right"] = Field(..., description="side")


class TestToolCatalog:
    """Tests for registration and filtering."""

    def test_list_for_is_sorted_and_filters(self):
        """Test that listing is by name and honors the allowlist."""
        catalog = ToolCatalog([named("zeta"), named("alpha"), named("mid")])

        assert [tool.name for tool in catalog.list_for()] == ["alpha", "mid", "zeta"]
        assert [tool.name for tool in catalog.list_for([])] == ["alpha", "mid", "zeta"]
        assert [tool.name for tool in catalog.list_for(["zeta", "alpha", "unknown"])] == ["alpha", "zeta"]

    def test_register_replaces_same_name(self):
        """Test that a second registration wins."""
        catalog = ToolCatalog([named("alpha")])
        replacement = ToolDefinition(name="alpha", description="newer", input_schema_class=NoInput, handler=noop)

        catalog.register(replacement)

        assert catalog.lookup("alpha") is replacement
        assert catalog.names() == ["alpha"]

    def test_excluding_desktop_control(self):
        """Test that pointer and keyboard tools are removed."""
        catalog = ToolCatalog(DesktopTools().definitions())

        names = [tool.name for tool in catalog.list_excluding_desktop_control()]

        assert "get_screen_info" in names
        assert "take_screenshot" in names
        for name in ("click_mouse", "move_mouse", "scroll_mouse", "type_text", "press_key", "open_application"):
            assert name not in names
            assert catalog.is_desktop_control(name)

    def test_list_by_max_risk(self):
        """Test that risk filtering is inclusive of the ceiling."""
        catalog = ToolCatalog([named("low"), named("medium", RiskLevel.MEDIUM), named("high", RiskLevel.HIGH)])

        assert [tool.name for tool in catalog.list_by_max_risk(RiskLevel.MEDIUM)] == ["low", "medium"]
        assert len(catalog.list_by_max_risk(RiskLevel.HIGH)) == 3

    def test_schema_shape(self):
        """Test that schemas come from the input model and forbid extra arguments."""
        schema = echo_tool().to_schema()

        assert schema.name == "echo"
        assert schema.parameters == {
            "type": "object",
            "properties": {"text": {"type": "string", "description": "Text to echo", "title": "Text"}},
            "required": ["text"],
            "additionalProperties": False,
        }

    def test_schema_without_arguments(self):
        """Test that argument-free tools still export an object schema."""
        schema = named("ping").get_json_schema()

        assert schema["type"] == "object"
        assert schema["properties"] == {}
        assert "title" not in schema
        assert "description" not in schema

    def test_enum_schema(self):
        """Test that Literal fields are exported as enums."""
        tool = ToolDefinition(name="pick", description="pick", input_schema_class=PickInput, handler=noop)

        assert tool.get_json_schema()["properties"]["side"]["enum"] == ["left", "right"]


class TestInvoke:
    """Tests for argument validation and dispatch."""

    @pytest.mark.asyncio
    async def test_invoke_runs_handler(self):
        """Test that a valid call reaches the handler."""
        catalog = ToolCatalog([echo_tool()])

        assert await catalog.invoke("echo", {"text": "hi"}) == "echo: hi"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        """Test that unregistered names raise NotImplementedToolError."""
        with pytest.raises(NotImplementedToolError, match="Tool not found: nope"):
            await ToolCatalog().invoke("nope", {})

    @pytest.mark.asyncio
    async def test_missing_and_unknown_arguments(self):
        """Test that required and undeclared arguments are checked."""
        catalog = ToolCatalog([echo_tool()])

        with pytest.raises(InvalidToolArgumentsError, match="echo: text: Field required"):
            await catalog.invoke("echo", {})
        with pytest.raises(InvalidToolArgumentsError, match="echo: extra: Extra inputs are not permitted"):
            await catalog.invoke("echo", {"text": "a", "extra": "b"})

    @pytest.mark.asyncio
    async def test_empty_string_satisfies_required(self):
        """Test that an empty value is present, not missing."""
        catalog = ToolCatalog([echo_tool()])

        assert await catalog.invoke("echo", {"text": ""}) == "echo: "

    @pytest.mark.asyncio
    async def test_enum_values(self):
        """Test that enumerated parameters reject other values before the handler runs."""
        seen: list[str] = []

        async def pick(tool_input: PickInput) -> str:
            seen.append(tool_input.side)
            return tool_input.side

        catalog = ToolCatalog([ToolDefinition(name="pick", description="pick", input_schema_class=PickInput, handler=pick)])

        assert await catalog.invoke("pick", {"side": "left"}) == "left"
        with pytest.raises(InvalidToolArgumentsError, match="side: Input should be 'left' or 'right'"):
            await catalog.invoke("pick", {"side": "up"})
        assert seen == ["left"]

    def test_validation_error_keeps_cause(self):
        """Test that the pydantic error stays attached for debugging."""
        with pytest.raises(InvalidToolArgumentsError) as excinfo:
            echo_tool().parse_input({"text": 3})

        assert excinfo.value.__cause__ is not None
        assert "text: Input should be a valid string" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_tool_errors_propagate(self):
        """Test that handler errors reach the caller."""
        with pytest.raises(CommandFailedError, match="boom"):
            await ToolCatalog([failing_tool()]).invoke("explode", {})


class TestBuiltinTools:
    """Tests for the file, shell and network tools."""

    @pytest.fixture
    def catalog(self, tmp_path):
        return ToolCatalog(builtin_tools(working_directory=tmp_path))

    def test_update_self_is_registered(self, catalog):
        """Test that the self-update tool ships with the built-ins."""
        assert catalog.has_tool(UPDATE_SELF_TOOL)
        assert "required" not in catalog.lookup(UPDATE_SELF_TOOL).get_json_schema()

    @pytest.mark.asyncio
    async def test_write_then_read(self, catalog, tmp_path):
        """Test that written files can be read back, creating parents."""
        target = tmp_path / "nested" / "notes.txt"

        result = await catalog.invoke("write_file", {"path": str(target), "content": "hello"})

        assert result == f"Wrote 5 characters to {target}"
        assert await catalog.invoke("read_file", {"path": str(target)}) == "hello"

    @pytest.mark.asyncio
    async def test_read_missing_file(self, catalog, tmp_path):
        """Test that a missing file raises ToolFileNotFoundError."""
        with pytest.raises(ToolFileNotFoundError, match="File not found"):
            await catalog.invoke("read_file", {"path": str(tmp_path / "absent.txt")})

    @pytest.mark.asyncio
    async def test_list_and_create_directory(self, catalog, tmp_path):
        """Test that directories list sorted with a slash suffix for subdirectories."""
        await catalog.invoke("create_directory", {"path": str(tmp_path / "Beta")})
        (tmp_path / "alpha.txt").write_text("a")

        listing = await catalog.invoke("list_directory", {"path": str(tmp_path)})

        assert listing.splitlines() == ["alpha.txt", "Beta/"]

    @pytest.mark.asyncio
    async def test_list_empty_directory(self, catalog, tmp_path):
        """Test that an empty directory is reported as such."""
        assert await catalog.invoke("list_directory", {"path": str(tmp_path)}) == f"{tmp_path} is empty"

    @pytest.mark.asyncio
    async def test_execute_command_uses_working_directory(self, catalog, tmp_path):
        """Test that commands run in the configured working directory."""
        assert await catalog.invoke("execute_command", {"command": "pwd"}) == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_execute_command_failure(self, catalog):
        """Test that a non-zero exit raises with stderr."""
        with pytest.raises(CommandFailedError, match="oops"):
            await catalog.invoke("execute_command", {"command": "echo oops >&2; exit 3"})

    @pytest.mark.asyncio
    async def test_execute_command_without_output(self, catalog):
        """Test that silent commands return a placeholder."""
        assert await catalog.invoke("execute_command", {"command": "true"}) == "(no output)"

    @pytest.mark.asyncio
    async def test_fetch_url(self):
        """Test that fetched bodies are prefixed with the status and truncated."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="x" * 9000)))
        catalog = ToolCatalog(builtin_tools(http_client=client))

        result = await catalog.invoke("fetch_url", {"url": "https://example.com"})

        assert result.startswith("Status: 200\n\n")
        assert result.endswith("...[truncated]")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_fetch_url_rejects_bad_scheme(self, catalog):
        """Test that only http and https URLs are fetched."""
        with pytest.raises(InvalidURLError):
            await catalog.invoke("fetch_url", {"url": "file:///etc/passwd"})


class FakeController:
    def __init__(self):
        self.calls = []

    async def click_mouse(self, x, y, button, clicks):
        self.calls.append(("click", x, y, button, clicks))
        return f"Clicked {button} at ({x:.0f}, {y:.0f})"

    async def press_key(self, key, modifiers):
        self.calls.append(("key", key, modifiers))
        return f"Pressed {key}"


class TestDesktopTools:
    """Tests for the controller-backed desktop tools."""

    @pytest.mark.asyncio
    async def test_without_controller(self):
        """Test that handlers fail cleanly when no controller is installed."""
        catalog = ToolCatalog(DesktopTools().definitions())

        with pytest.raises(NotImplementedToolError):
            await catalog.invoke("get_screen_info", {})

    @pytest.mark.asyncio
    async def test_arguments_are_converted(self):
        """Test that string arguments become numbers and lists with defaults."""
        controller = FakeController()
        catalog = ToolCatalog(DesktopTools(controller).definitions())

        assert await catalog.invoke("click_mouse", {"x": "10.2", "y": "20"}) == "Clicked left at (10, 20)"
        await catalog.invoke("press_key", {"key": "a", "modifiers": "command, shift"})

        assert controller.calls == [("click", 10.2, 20.0, "left", 1), ("key", "a", ["command", "shift"])]

    @pytest.mark.asyncio
    async def test_non_numeric_coordinates(self):
        """Test that bad coordinates raise InvalidToolArgumentsError."""
        catalog = ToolCatalog(DesktopTools(FakeController()).definitions())

        with pytest.raises(InvalidToolArgumentsError, match="click_mouse: x: Input should be a valid number"):
            await catalog.invoke("click_mouse", {"x": "left", "y": "1"})

    @pytest.mark.asyncio
    async def test_click_count_and_button_are_checked(self):
        """Test that double clicks pass and out-of-range counts or unknown buttons do not."""
        controller = FakeController()
        catalog = ToolCatalog(DesktopTools(controller).definitions())

        await catalog.invoke("click_mouse", {"x": "1", "y": "2", "button": "right", "clicks": "2"})
        with pytest.raises(InvalidToolArgumentsError, match="clicks"):
            await catalog.invoke("click_mouse", {"x": "1", "y": "2", "clicks": "3"})
        with pytest.raises(InvalidToolArgumentsError, match="button"):
            await catalog.invoke("click_mouse", {"x": "1", "y": "2", "button": "middle"})

        assert controller.calls == [("click", 1.0, 2.0, "right", 2)]

    def test_coordinate_schema_is_numeric(self):
        """Test that coordinates are advertised as numbers."""
        click = next(t for t in DesktopTools().definitions() if t.name == "click_mouse")
        properties = click.get_json_schema()["properties"]

        assert properties["x"]["type"] == "number"
        assert properties["clicks"]["type"] == "integer"
        assert properties["button"]["enum"] == ["left", "right"]
