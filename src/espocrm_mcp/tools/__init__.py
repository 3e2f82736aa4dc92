# EspoCRM MCP Server
# File: tools/__init__.py
# Version: v1

"""Toolset assembly: client + catalog + generated operations + router.

Both transports call ``build_toolset`` (once per process for stdio, once per
session or credential for HTTP) and then only use ``Toolset.operations`` and
``Toolset.call``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from mcp import types

from ..auth import EspoAuth
from ..catalog import SchemaCatalog
from ..client import EspoClient
from ..config import EspoConfig
from ..mock import MockEspoClient
from ..models import OperationSchema, ToolResult
from .formatting import parse_display_name_policy
from .generator import ToolSynthesizer
from .router import OperationRouter, parse_operation_name
from .utility import UTILITY_OPERATIONS, UtilityTools

logger = logging.getLogger(__name__)


def make_client(config: EspoConfig, api_key: str | None = None) -> Any:
    """Create an EspoClient, or the in-memory mock when mock mode is on."""
    if config.mock_mode:
        return MockEspoClient(config=config)

    auth = EspoAuth.from_config(config, api_key=api_key)
    return EspoClient(config=config, auth=auth)


@dataclass
class Toolset:
    """Everything needed to list and call tools for one API user."""

    client: Any
    catalog: SchemaCatalog
    router: OperationRouter
    utilities: UtilityTools
    dynamic_operations: List[OperationSchema]
    warnings: List[str] = field(default_factory=list)

    @property
    def operations(self) -> List[OperationSchema]:
        return [*self.dynamic_operations, *UTILITY_OPERATIONS]

    def list_tools(self) -> List[types.Tool]:
        return [to_tool(op) for op in self.operations]

    async def call(self, name: str, arguments: Mapping[str, Any] | None = None) -> ToolResult:
        ref = parse_operation_name(name)
        if self.router.claims(ref):
            return await self.router.execute(ref, arguments)  # type: ignore[arg-type]

        if self.utilities.handles(name):
            return await self.utilities.call(name, arguments)

        return ToolResult(text=f"Unknown tool: {name}", is_error=True)


async def build_toolset(
    config: EspoConfig,
    api_key: str | None = None,
    client: Optional[Any] = None,
) -> Toolset:
    """Connect, load the schema catalog and generate all tools.

    Raises EspoAPIError when the connection test fails and FetchFailure
    when metadata cannot be loaded.
    """
    client = client or make_client(config, api_key=api_key)

    info = await client.test_connection()
    user = info.get("user") or {}
    logger.info(
        "EspoCRM connection verified (version=%s, user=%s)",
        info.get("version"),
        user.get("userName"),
    )

    catalog = SchemaCatalog(client)
    await catalog.refresh()
    catalog.ensure_ready()

    synthesizer = ToolSynthesizer()
    dynamic = synthesizer.synthesize(catalog)

    policy = parse_display_name_policy(config.display_name_fields)
    router = OperationRouter(client, catalog, dynamic, display_policy=policy)
    utilities = UtilityTools(client, catalog, display_policy=policy)

    logger.info(
        "Registered %d tools (%d dynamic, %d utility)",
        len(dynamic) + len(UTILITY_OPERATIONS),
        len(dynamic),
        len(UTILITY_OPERATIONS),
    )
    return Toolset(
        client=client,
        catalog=catalog,
        router=router,
        utilities=utilities,
        dynamic_operations=dynamic,
        warnings=list(synthesizer.warnings),
    )


def to_tool(operation: OperationSchema) -> types.Tool:
    return types.Tool(
        name=operation.name,
        description=operation.description,
        inputSchema=operation.input_schema(),
    )


def to_call_result(result: ToolResult) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=result.text)],
        isError=result.is_error,
    )
