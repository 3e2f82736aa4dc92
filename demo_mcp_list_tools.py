# demo_mcp_list_tools.py
# Version: v1
#
# Demo: build the toolset and print every generated MCP tool.
#
# Usage (PowerShell):
#
#   $env:ESPOCRM_URL = "https://crm.example.com"
#   $env:ESPOCRM_API_KEY = "..."
#   python demo_mcp_list_tools.py
#
# Set ESPOCRM_MOCK_MODE=true to run against the built-in mock CRM.

import asyncio

from espocrm_mcp.config import EspoConfig
from espocrm_mcp.tools import build_toolset


async def main() -> None:
    config = EspoConfig.from_env()
    toolset = await build_toolset(config)

    tools = toolset.list_tools()
    print(f"Tools generated: {len(tools)}")
    for warning in toolset.warnings:
        print(f"! {warning}")

    for tool in tools:
        required = tool.inputSchema.get("required") or []
        print(f"- {tool.name}: {tool.description}  required={required}")


if __name__ == "__main__":
    asyncio.run(main())
