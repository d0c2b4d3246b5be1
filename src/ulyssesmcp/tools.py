"""
Tool catalog - the Ulysses tools exposed to MCP clients.

Each tool maps its arguments onto the parameters of one Ulysses action
through a list of FieldSpecs. A FieldSpec says whether the argument is
required, how long it may be, which values it may take and what the
parameter is called on the wire (the tool argument ``access_token``
becomes the Ulysses parameter ``access-token``). Validation happens here,
before the bridge is called, so nothing invalid ever becomes a URL.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from ulyssesmcp.actions import validate_enum, validate_length, validate_required
from ulyssesmcp.bridge import UlyssesBridge
from ulyssesmcp.errors import InvalidInput, RateLimited
from ulyssesmcp.types import ToolResult

logger = logging.getLogger(__name__)

FORMATS = ("markdown", "text", "html")
YES_NO = ("YES", "NO")
POSITIONS = ("begin", "end")
NEWLINES = ("prepend", "append", "enclose")
TITLE_TYPES = (
    "heading1", "heading2", "heading3", "heading4", "heading5", "heading6",
    "comment", "filename",
)

TEXT_MAX = 1_000_000
NOTE_MAX = 100_000
KEYWORDS_MAX = 1000
NAME_MAX = 255
SHEET_TITLE_MAX = 1000
APPNAME_MAX = 100

AUTHORIZE_NOTE = (
    "\n\nSECURITY NOTE: Ulysses will ask you to authorize this app. Once authorized, "
    "you'll receive an access token that provides access to your Ulysses library. "
    "Keep this token secure and do not share it. The token will remain valid until "
    "you revoke it in Ulysses preferences."
)


@dataclass(frozen=True)
class FieldSpec:
    """One tool argument and how it becomes a Ulysses parameter."""
    name: str
    description: str
    required: bool = False
    max_length: int | None = None
    enum: tuple[str, ...] | None = None
    param: str | None = None

    @property
    def param_name(self) -> str:
        return self.param or self.name

    def to_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": "string", "description": self.description}
        if self.enum:
            schema["enum"] = list(self.enum)
        return schema

    def extract(self, arguments: dict[str, Any]) -> str | None:
        """Validated parameter value, or None when an optional argument is absent."""
        raw = arguments.get(self.name)
        if self.required:
            value = validate_required(raw, self.name)
        elif raw is None or raw == "":
            return None
        else:
            value = str(raw)

        if self.enum is not None:
            validate_enum(value, self.enum, self.name)
        if self.max_length is not None:
            validate_length(value, self.max_length, self.name)
        return value


@dataclass
class Tool:
    """
    Definition of a tool the MCP client can call.

    A tool has:
    - name: Unique identifier (ulysses_*)
    - description: What the tool does (shown to the LLM)
    - action: The Ulysses x-callback-url action it runs
    - fields: Argument specs, which also generate the JSON Schema
    """
    name: str
    description: str
    action: str
    fields: list[FieldSpec] = field(default_factory=list)
    suffix: str = ""

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for the tool's arguments."""
        return {
            "type": "object",
            "properties": {spec.name: spec.to_schema() for spec in self.fields},
            "required": [spec.name for spec in self.fields if spec.required],
        }

    def build_params(self, arguments: dict[str, Any]) -> dict[str, str]:
        params: dict[str, str] = {}
        for spec in self.fields:
            value = spec.extract(arguments)
            if value is not None:
                params[spec.param_name] = value
        return params

    async def execute(self, bridge: UlyssesBridge, arguments: dict[str, Any]) -> ToolResult:
        """
        Validate arguments, run the action and format the outcome.

        Invalid input and rate limiting come back as failed results with
        their own message; anything else is reported as a tool failure.
        """
        try:
            params = self.build_params(arguments or {})
            result = await bridge.execute(self.action, params)
        except (InvalidInput, RateLimited) as e:
            return ToolResult(content=f"Error: {e}", success=False, error=str(e))
        except Exception as e:
            logger.error(f"Tool {self.name} failed: {e}")
            return ToolResult(
                content=f"Tool execution failed: {e}",
                success=False,
                error=str(e),
            )

        text = json.dumps(result, indent=2) if isinstance(result, dict) else str(result)
        return ToolResult(content=text + self.suffix)


@dataclass
class ToolRegistry:
    """
    Registry of available tools.

    Only tools registered here can be called by the MCP client.
    """

    _tools: dict[str, Tool] = field(default_factory=dict)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self._tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    async def execute(self, bridge: UlyssesBridge, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool call by name."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(
                content=f"Error: Unknown tool '{name}'",
                success=False,
                error=f"Unknown tool: {name}",
            )

        logger.info(f"Executing tool: {name}")
        return await tool.execute(bridge, arguments)

    def get_schemas(self) -> list[dict[str, Any]]:
        """Name, description and input schema for every registered tool."""
        return [
            {"name": tool.name, "description": tool.description, "inputSchema": tool.parameters}
            for tool in self._tools.values()
        ]

    @property
    def tool_names(self) -> list[str]:
        """List of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def _id(description: str) -> FieldSpec:
    return FieldSpec("id", description, required=True)


def _token() -> FieldSpec:
    return FieldSpec(
        "access_token",
        "Required. Access token obtained from ulysses_authorize",
        required=True,
        param="access-token",
    )


def _format(description: str = "Optional. Format of the imported text. Defaults to markdown.") -> FieldSpec:
    return FieldSpec("format", description, enum=FORMATS)


def _index(description: str) -> FieldSpec:
    return FieldSpec("index", description)


def create_ulysses_tools() -> ToolRegistry:
    """Build the registry with every Ulysses tool."""
    registry = ToolRegistry()

    tools = [
        Tool(
            name="ulysses_new_sheet",
            description="Create a new sheet in Ulysses with the specified text content. Optionally specify a group, format (markdown/text/html), position, and whether it should be a material sheet.",
            action="new-sheet",
            fields=[
                FieldSpec("text", "The content to insert into the new sheet", required=True, max_length=TEXT_MAX),
                FieldSpec("group", "Optional. Group name, path (e.g., /My Group/Subgroup), or identifier where the sheet should be created. Defaults to Inbox."),
                _format(),
                _index("Optional. Position of the new sheet in its parent group (0 for first position)"),
                FieldSpec("material", "Optional. Whether the sheet should be created as a material sheet. Defaults to NO.", enum=YES_NO),
            ],
        ),
        Tool(
            name="ulysses_new_group",
            description="Create a new group in Ulysses",
            action="new-group",
            fields=[
                FieldSpec("name", "The name of the group to be created", required=True, max_length=NAME_MAX),
                FieldSpec("parent", "Optional. Parent group name, path, or identifier. Defaults to top level."),
                _index("Optional. Position of the new group in its parent (0 for first position)"),
            ],
        ),
        Tool(
            name="ulysses_insert",
            description="Insert or append text to an existing sheet in Ulysses",
            action="insert",
            fields=[
                _id("The identifier of the sheet to insert text into"),
                FieldSpec("text", "The text content to insert", required=True, max_length=TEXT_MAX),
                _format(),
                FieldSpec("position", "Optional. Position to insert text (begin or end). Defaults to appending.", enum=POSITIONS),
                FieldSpec("newline", "Optional. How to handle newlines around inserted text", enum=NEWLINES),
            ],
        ),
        Tool(
            name="ulysses_attach_note",
            description="Attach a note to a sheet in Ulysses",
            action="attach-note",
            fields=[
                _id("The identifier of the sheet to attach the note to"),
                FieldSpec("text", "The note content", required=True, max_length=NOTE_MAX),
                _format("Optional. Format of the note text. Defaults to markdown."),
            ],
        ),
        Tool(
            name="ulysses_attach_keywords",
            description="Add one or more keywords to a sheet in Ulysses",
            action="attach-keywords",
            fields=[
                _id("The identifier of the sheet to attach keywords to"),
                FieldSpec("keywords", "Comma-separated list of keywords (e.g., 'Draft,Important')", required=True, max_length=KEYWORDS_MAX),
            ],
        ),
        Tool(
            name="ulysses_attach_image",
            description="Attach an image to a sheet in Ulysses using base64-encoded image data",
            action="attach-image",
            fields=[
                _id("The identifier of the sheet to attach the image to"),
                FieldSpec("image", "Base64-encoded image data", required=True),
                FieldSpec("format", "Image format extension (png, jpg, gif, pdf, etc.)", required=True),
            ],
        ),
        Tool(
            name="ulysses_open",
            description="Open a specific sheet or group in Ulysses",
            action="open",
            fields=[_id("Group name, path (e.g., /My Group/Subgroup), or sheet/group identifier to open")],
        ),
        Tool(
            name="ulysses_open_all",
            description="Open the 'All' section in Ulysses showing all sheets",
            action="open-all",
        ),
        Tool(
            name="ulysses_open_recent",
            description="Open the 'Last 7 Days' section in Ulysses",
            action="open-recent",
        ),
        Tool(
            name="ulysses_open_favorites",
            description="Open the 'Favorites' section in Ulysses",
            action="open-favorites",
        ),
        Tool(
            name="ulysses_get_version",
            description="Get the Ulysses version and API version information",
            action="get-version",
        ),
        Tool(
            name="ulysses_authorize",
            description="Request authorization to access the Ulysses library. Required for reading content and destructive operations. Returns an access token to be used with other commands.",
            action="authorize",
            fields=[
                FieldSpec("appname", "Name of the application requesting access (e.g., 'Cline MCP', 'Ollama', 'LM Studio')", required=True, max_length=APPNAME_MAX),
            ],
            suffix=AUTHORIZE_NOTE,
        ),
        Tool(
            name="ulysses_read_sheet",
            description="Read the contents of a sheet (requires authorization). Returns title, text content, keywords, and notes.",
            action="read-sheet",
            fields=[
                _id("The identifier of the sheet to read"),
                FieldSpec("text", "Optional. Whether to include the full text content. Defaults to NO.", enum=YES_NO),
                _token(),
            ],
        ),
        Tool(
            name="ulysses_get_item",
            description="Get information about a sheet or group (requires authorization)",
            action="get-item",
            fields=[
                _id("The identifier of the item (sheet or group) to get information about"),
                FieldSpec("recursive", "Optional. For groups, whether to include all sub-groups recursively. Defaults to YES.", enum=YES_NO),
                _token(),
            ],
        ),
        Tool(
            name="ulysses_get_root_items",
            description="Get the root sections of the Ulysses library (iCloud, On My Mac, external folders). Can be used to get a full library listing. Requires authorization.",
            action="get-root-items",
            fields=[
                FieldSpec("recursive", "Optional. Whether to get a deep listing of the entire library. Defaults to YES.", enum=YES_NO),
                _token(),
            ],
        ),
        Tool(
            name="ulysses_move",
            description="Move a sheet or group to a different location (requires authorization)",
            action="move",
            fields=[
                _id("The identifier of the item to move"),
                FieldSpec("targetGroup", "Optional. Target group name, path, or identifier"),
                _index("Optional. Position in the target group (0 for first position)"),
                _token(),
            ],
        ),
        Tool(
            name="ulysses_copy",
            description="Copy a sheet or group to a different location",
            action="copy",
            fields=[
                _id("The identifier of the item to copy"),
                FieldSpec("targetGroup", "Optional. Target group name, path, or identifier"),
                _index("Optional. Position in the target group (0 for first position)"),
            ],
        ),
        Tool(
            name="ulysses_trash",
            description="Move a sheet or group to the trash (requires authorization)",
            action="trash",
            fields=[_id("The identifier of the item to trash"), _token()],
        ),
        Tool(
            name="ulysses_set_group_title",
            description="Change the title of a group (requires authorization)",
            action="set-group-title",
            fields=[
                FieldSpec("group", "Group name, path, or identifier", required=True),
                FieldSpec("title", "New title for the group", required=True, max_length=NAME_MAX),
                _token(),
            ],
        ),
        Tool(
            name="ulysses_set_sheet_title",
            description="Change the first paragraph of a sheet (requires authorization)",
            action="set-sheet-title",
            fields=[
                FieldSpec("sheet", "The identifier of the sheet", required=True),
                FieldSpec("title", "New title text", required=True, max_length=SHEET_TITLE_MAX),
                FieldSpec("type", "Type of paragraph to use for the title", required=True, enum=TITLE_TYPES),
                _token(),
            ],
        ),
        Tool(
            name="ulysses_remove_keywords",
            description="Remove keywords from a sheet (requires authorization)",
            action="remove-keywords",
            fields=[
                _id("The identifier of the sheet"),
                FieldSpec("keywords", "Comma-separated list of keywords to remove", required=True, max_length=KEYWORDS_MAX),
                _token(),
            ],
        ),
        Tool(
            name="ulysses_update_note",
            description="Change an existing note attachment on a sheet (requires authorization)",
            action="update-note",
            fields=[
                _id("The identifier of the sheet"),
                FieldSpec("index", "Position of the note to change (0 for first note, 1 for second, etc.)", required=True),
                FieldSpec("text", "New content for the note", required=True, max_length=NOTE_MAX),
                _format("Optional. Format of the note text. Defaults to markdown."),
                _token(),
            ],
        ),
        Tool(
            name="ulysses_remove_note",
            description="Remove a note attachment from a sheet (requires authorization)",
            action="remove-note",
            fields=[
                _id("The identifier of the sheet"),
                FieldSpec("index", "Position of the note to remove (0 for first note, 1 for second, etc.)", required=True),
                _token(),
            ],
        ),
    ]

    for tool in tools:
        registry.register(tool)
    return registry
