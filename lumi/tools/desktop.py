"""Desktop-control and screen tools backed by an injected controller."""

from dataclasses import dataclass
from typing import Literal, Protocol

from pydantic import Field

from lumi.models.agent import RiskLevel
from lumi.models.errors import NotImplementedToolError
from lumi.tools.base import NoInput, ToolCategory, ToolDefinition, ToolHandler, ToolInput


@dataclass
class ScreenSnapshot:
    """A captured frame and the logical resolution it covers."""

    image_data: bytes
    width: int
    height: int


class DesktopController(Protocol):
    """Platform integration that actually drives the pointer, keyboard and apps."""

    async def screen_info(self) -> str: ...

    async def move_mouse(self, x: float, y: float) -> str: ...

    async def click_mouse(self, x: float, y: float, button: str, clicks: int) -> str: ...

    async def scroll_mouse(self, x: float, y: float, delta_x: int, delta_y: int) -> str: ...

    async def type_text(self, text: str) -> str: ...

    async def press_key(self, key: str, modifiers: list[str]) -> str: ...

    async def open_application(self, name: str) -> str: ...

    async def take_screenshot(self) -> str: ...

    async def run_applescript(self, script: str) -> str: ...


class ScreenCapture(Protocol):
    """Captures the current screen for the loop's visual feedback step."""

    async def capture(self) -> ScreenSnapshot | None: ...


class Coordinates(ToolInput):
    x: float = Field(..., description="Horizontal coordinate from left edge of screen")
    y: float = Field(..., description="Vertical coordinate from top edge of screen")


class ClickInput(Coordinates):
    button: Literal["left", "right"] = Field("left", description='Mouse button: "left" (default) or "right"')
    clicks: int = Field(1, ge=1, le=2, description="Number of clicks: 1 (default) or 2")


class ScrollInput(Coordinates):
    delta_y: int = Field(..., description="Vertical scroll amount in pixels")
    delta_x: int = Field(0, description="Horizontal scroll amount (optional)")


class TypeTextInput(ToolInput):
    text: str = Field(..., description="Text to type")


class PressKeyInput(ToolInput):
    key: str = Field(..., description='Key name, e.g. "return" or "a"')
    modifiers: str = Field("", description='Comma-separated modifiers, e.g. "command,shift"')

    @property
    def modifier_list(self) -> list[str]:
        return [part.strip() for part in self.modifiers.split(",") if part.strip()]


class OpenApplicationInput(ToolInput):
    name: str = Field(..., description="Application name")


class AppleScriptInput(ToolInput):
    script: str = Field(..., description="AppleScript source code")


class DesktopTools:
    """Builds desktop tool definitions around an optional controller.

    Without a controller every handler raises NotImplementedToolError, which the
    loop feeds back to the model like any other tool failure.
    """

    def __init__(self, controller: DesktopController | None = None):
        self.controller = controller

    def _require(self) -> DesktopController:
        if self.controller is None:
            raise NotImplementedToolError()
        return self.controller

    async def get_screen_info(self, tool_input: NoInput) -> str:
        return await self._require().screen_info()

    async def move_mouse(self, tool_input: Coordinates) -> str:
        return await self._require().move_mouse(tool_input.x, tool_input.y)

    async def click_mouse(self, tool_input: ClickInput) -> str:
        return await self._require().click_mouse(tool_input.x, tool_input.y, tool_input.button, tool_input.clicks)

    async def scroll_mouse(self, tool_input: ScrollInput) -> str:
        return await self._require().scroll_mouse(tool_input.x, tool_input.y, tool_input.delta_x, tool_input.delta_y)

    async def type_text(self, tool_input: TypeTextInput) -> str:
        return await self._require().type_text(tool_input.text)

    async def press_key(self, tool_input: PressKeyInput) -> str:
        return await self._require().press_key(tool_input.key, tool_input.modifier_list)

    async def open_application(self, tool_input: OpenApplicationInput) -> str:
        return await self._require().open_application(tool_input.name)

    async def take_screenshot(self, tool_input: NoInput) -> str:
        return await self._require().take_screenshot()

    async def run_applescript(self, tool_input: AppleScriptInput) -> str:
        return await self._require().run_applescript(tool_input.script)

    def definitions(self) -> list[ToolDefinition]:
        specs: list[tuple[str, str, type[ToolInput], ToolHandler, RiskLevel, ToolCategory]] = [
            (
                "get_screen_info",
                "Get screen dimensions, current cursor position (top-left origin), and frontmost application name",
                NoInput,
                self.get_screen_info,
                RiskLevel.LOW,
                ToolCategory.SCREEN_CONTROL,
            ),
            (
                "move_mouse",
                "Move the mouse cursor to the given screen coordinates. (0,0) is the top-left corner of the screen.",
                Coordinates,
                self.move_mouse,
                RiskLevel.MEDIUM,
                ToolCategory.SCREEN_CONTROL,
            ),
            (
                "click_mouse",
                "Click the mouse at the given coordinates. Use clicks=2 for a double-click.",
                ClickInput,
                self.click_mouse,
                RiskLevel.MEDIUM,
                ToolCategory.SCREEN_CONTROL,
            ),
            (
                "scroll_mouse",
                "Scroll the mouse wheel at the given position. Positive delta_y scrolls up, negative scrolls down.",
                ScrollInput,
                self.scroll_mouse,
                RiskLevel.LOW,
                ToolCategory.SCREEN_CONTROL,
            ),
            (
                "type_text",
                "Type a string of text into the currently focused application",
                TypeTextInput,
                self.type_text,
                RiskLevel.MEDIUM,
                ToolCategory.SCREEN_CONTROL,
            ),
            (
                "press_key",
                "Press a named key with optional modifier keys, e.g. return, tab, escape, a-z, f1-f8",
                PressKeyInput,
                self.press_key,
                RiskLevel.MEDIUM,
                ToolCategory.SCREEN_CONTROL,
            ),
            (
                "open_application",
                "Open an application by name, e.g. Safari, Finder, Terminal",
                OpenApplicationInput,
                self.open_application,
                RiskLevel.MEDIUM,
                ToolCategory.SYSTEM,
            ),
            (
                "take_screenshot",
                "Capture the current screen and return where the image was saved",
                NoInput,
                self.take_screenshot,
                RiskLevel.MEDIUM,
                ToolCategory.SCREEN_CONTROL,
            ),
            (
                "run_applescript",
                "Execute an AppleScript and return its result",
                AppleScriptInput,
                self.run_applescript,
                RiskLevel.HIGH,
                ToolCategory.SCREEN_CONTROL,
            ),
        ]
        return [
            ToolDefinition(
                name=name,
                description=description,
                input_schema_class=schema,
                handler=handler,
                risk_level=risk,
                category=category,
            )
            for name, description, schema, handler, risk, category in specs
        ]
