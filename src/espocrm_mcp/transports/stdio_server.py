# EspoCRM MCP Server
# File: transports/stdio_server.py
# Version: v1

"""STDIO entrypoint for the EspoCRM MCP server.

This is the script behind the ``espocrm-mcp`` console command.

It:

- validates ESPOCRM_URL / ESPOCRM_API_KEY (unless mock mode is on),
- builds one Toolset (connection test, metadata, generated tools),
- registers list_tools / call_tool on the low-level MCP server, and
- runs the stdio transport.

With ``MCP_TRANSPORT=http`` it hands over to the HTTP server instead.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from .. import __version__
from ..config import EspoConfig, configure_logging
from ..tools import Toolset, build_toolset
from . import http_server
from .jsonrpc import SERVER_NAME

logger = logging.getLogger(__name__)


class ToolCallFailed(RuntimeError):
    """Raised so the MCP server reports the result with isError set."""


def create_server(toolset: Toolset) -> Server:
    server: Server = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        return toolset.list_tools()

    # Arguments are coerced by each operation's ParamSpecs.
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: Dict[str, Any] | None) -> List[types.TextContent]:
        result = await toolset.call(name, arguments or {})
        if result.is_error:
            raise ToolCallFailed(result.text)
        return [types.TextContent(type="text", text=result.text)]

    return server


async def serve(config: EspoConfig) -> None:
    toolset = await build_toolset(config)
    server = create_server(toolset)

    logger.info("EspoCRM MCP server running on stdio")
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def main() -> None:
    """Synchronous entrypoint for console_scripts."""
    config = EspoConfig.from_env()

    if config.transport == "http":
        http_server.main()
        return

    configure_logging(config.log_level)
    problems = config.validate(transport="stdio")
    if problems:
        for problem in problems:
            logger.error("Configuration error: %s", problem)
        raise SystemExit(1)

    asyncio.run(serve(config))


if __name__ == "__main__":
    main()
