# demo_mcp_search_records.py
# Version: v1
#
# Demo: call a generated search tool directly and print the text result.
#
# Usage (PowerShell):
#
#   $env:ESPOCRM_MOCK_MODE = "true"
#   python demo_mcp_search_records.py Account "Acme*"

import asyncio
import sys

from espocrm_mcp.config import EspoConfig
from espocrm_mcp.tools import build_toolset


async def main() -> None:
    entity = sys.argv[1] if len(sys.argv) > 1 else "Account"
    name = sys.argv[2] if len(sys.argv) > 2 else None

    toolset = await build_toolset(EspoConfig.from_env())

    arguments = {"limit": 5}
    if name:
        arguments["name"] = name

    print(f"Calling MCP tool: search_{entity}({arguments})")
    result = await toolset.call(f"search_{entity}", arguments)

    if result.is_error:
        print("Tool reported an error:")
    print(result.text)


if __name__ == "__main__":
    asyncio.run(main())
