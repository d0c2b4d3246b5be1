"""
MCP server exposing the Ulysses tools over stdio.

Launched by the MCP client (Cline, Claude Desktop, LM Studio, ...) as
``ulysses-mcp``. stdout belongs to the JSON-RPC transport, so all logging
goes to stderr.
"""

import asyncio
import logging
import sys
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from ulyssesmcp import __version__
from ulyssesmcp.bridge import UlyssesBridge
from ulyssesmcp.config import BridgeConfig
from ulyssesmcp.tools import ToolRegistry, create_ulysses_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "ulysses-mcp"


class ToolCallFailed(Exception):
    """Raised from call_tool so the MCP layer reports the call as an error."""


def create_server(bridge: UlyssesBridge, tools: ToolRegistry | None = None) -> Server:
    """Wire the tool registry into an MCP Server bound to ``bridge``."""
    tools = tools or create_ulysses_tools()
    server = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(name=schema["name"], description=schema["description"], inputSchema=schema["inputSchema"])
            for schema in tools.get_schemas()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
        result = await tools.execute(bridge, name, arguments or {})
        if not result.success:
            raise ToolCallFailed(result.content)
        return [TextContent(type="text", text=result.content)]

    return server


async def serve(config: BridgeConfig | None = None) -> None:
    bridge = UlyssesBridge(config or BridgeConfig.from_env())
    server = create_server(bridge)

    async with bridge:
        try:
            async with stdio_server() as (read_stream, write_stream):
                logger.info("Ulysses MCP server running on stdio")
                await server.run(read_stream, write_stream, server.create_initialization_options())
        except Exception as e:
            bridge.audit.log_server_error(str(e))
            raise


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass
    except Exception:
        logger.exception("Server error")
        sys.exit(1)


if __name__ == "__main__":
    main()
