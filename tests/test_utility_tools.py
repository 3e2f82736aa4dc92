# EspoCRM MCP Server
# File: tests/test_utility_tools.py
# Version: v1

"""Tests for the Toolset and its fixed utility tools, run against mock mode."""

from __future__ import annotations

from typing import Any, Dict

import pytest

from espocrm_mcp.config import EspoConfig
from espocrm_mcp.mock import MockEspoClient
from espocrm_mcp.models import ToolResult
from espocrm_mcp.tools import build_toolset, make_client, to_call_result
from espocrm_mcp.tools.utility import UTILITY_NAMES


def _mock_config(**overrides: Any) -> EspoConfig:
    return EspoConfig(base_url=None, mock_mode=True, **overrides)


async def _toolset(**overrides: Any):
    return await build_toolset(_mock_config(**overrides))


def test_make_client_in_mock_mode() -> None:
    assert isinstance(make_client(_mock_config()), MockEspoClient)


@pytest.mark.asyncio
async def test_toolset_lists_dynamic_and_utility_tools() -> None:
    toolset = await _toolset()

    names = [op.name for op in toolset.operations]

    # Account, Contact, CProduct -> 15 dynamic tools, plus the utilities.
    assert len(names) == 15 + len(UTILITY_NAMES)
    assert names[:5] == [
        "create_Account",
        "search_Account",
        "get_Account",
        "update_Account",
        "delete_Account",
    ]
    assert set(names[15:]) == set(UTILITY_NAMES)

    tools = toolset.list_tools()
    assert tools[0].name == "create_Account"
    assert tools[0].inputSchema["required"] == ["name"]


@pytest.mark.asyncio
async def test_unknown_tool_is_an_error_result() -> None:
    toolset = await _toolset()

    result = await toolset.call("launch_rockets", {})

    assert result.is_error
    assert result.text == "Unknown tool: launch_rockets"

    dumped = to_call_result(result).model_dump(by_alias=True, exclude_none=True)
    assert dumped["isError"] is True
    assert dumped["content"] == [{"type": "text", "text": "Unknown tool: launch_rockets"}]


@pytest.mark.asyncio
async def test_unresolvable_entity_falls_through_to_unknown_tool() -> None:
    toolset = await _toolset()

    result = await toolset.call("create_Spaceship", {"name": "x"})

    assert result.is_error
    assert "Unknown tool" in result.text


@pytest.mark.asyncio
async def test_health_check() -> None:
    toolset = await _toolset()

    result = await toolset.call("health_check", {})

    assert not result.is_error
    lines = result.text.splitlines()
    assert lines[0] == "EspoCRM connection healthy"
    assert "Server version: mock" in lines
    assert "User: mock-admin" in lines
    assert lines[-1].startswith("Current time: ")


@pytest.mark.asyncio
async def test_link_list_and_unlink_relationships() -> None:
    toolset = await _toolset()
    args: Dict[str, Any] = {
        "entityType": "Account",
        "entityId": "acc-2",
        "relationshipName": "contacts",
    }

    linked = await toolset.call("link_entities", {**args, "relatedEntityIds": ["con-1"]})
    assert linked.text == (
        "Successfully linked 1 entities to Account acc-2 via relationship 'contacts'"
    )

    related = await toolset.call("get_entity_relationships", args)
    assert related.text.startswith("Found 1 related record(s) via 'contacts' (showing 1):")
    assert "John Smith (ID: con-1)" in related.text

    unlinked = await toolset.call("unlink_entities", {**args, "relatedEntityIds": "con-1"})
    assert unlinked.text.startswith("Successfully unlinked 1 entities from Account acc-2")

    empty = await toolset.call("get_entity_relationships", args)
    assert empty.text == (
        "No related entities found for Account acc-2 via relationship 'contacts'"
    )


@pytest.mark.asyncio
async def test_relationship_tools_validate_arguments() -> None:
    toolset = await _toolset()

    missing = await toolset.call(
        "link_entities",
        {"entityType": "Account", "entityId": "acc-1", "relationshipName": "contacts", "relatedEntityIds": []},
    )
    assert missing.is_error
    assert "Missing required parameter: relatedEntityIds" in missing.text

    bad_relation = await toolset.call(
        "get_entity_relationships",
        {"entityType": "Account", "entityId": "acc-1", "relationshipName": "spaceships"},
    )
    assert bad_relation.is_error
    assert "Account has no relationship 'spaceships'" in bad_relation.text

    too_many = await toolset.call(
        "get_entity_relationships",
        {"entityType": "Account", "entityId": "acc-1", "relationshipName": "contacts", "limit": 500},
    )
    assert too_many.is_error
    assert "Invalid value for 'limit'" in too_many.text


@pytest.mark.asyncio
async def test_link_to_missing_record_is_an_execution_error() -> None:
    toolset = await _toolset()

    result = await toolset.call(
        "link_entities",
        {
            "entityType": "Account",
            "entityId": "acc-1",
            "relationshipName": "contacts",
            "relatedEntityIds": ["nobody"],
        },
    )

    assert result.is_error
    assert result.text.startswith("Error: Failed to execute link_entities:")


@pytest.mark.asyncio
async def test_describe_entity_uses_translations() -> None:
    toolset = await _toolset()

    result = await toolset.call("describe_entity", {"entityType": "Account"})

    assert not result.is_error
    text = result.text
    assert text.startswith("Entity: Account")
    assert "- name (varchar, required): Name" in text
    assert "- website (url): Public website of the company" in text
    assert "- createdAt (datetime, read-only): Created At" in text
    assert "[options: Customer, Investor, Partner, Reseller]" in text
    assert "- contacts (hasMany -> Contact): Contacts" in text


@pytest.mark.asyncio
async def test_describe_entity_resolves_custom_prefix() -> None:
    toolset = await _toolset()

    result = await toolset.call("describe_entity", {"entityType": "Product"})

    assert result.text.startswith("Entity: CProduct")
    assert "- stock (int): Units currently in the warehouse" in result.text


@pytest.mark.asyncio
async def test_dynamic_and_utility_tools_share_one_client() -> None:
    toolset = await _toolset()

    created = await toolset.call("create_Contact", {"firstName": "Grace", "lastName": "Hopper"})
    contact_id = created.text.rsplit("(ID: ", 1)[1].rstrip(")")

    await toolset.call(
        "link_entities",
        {
            "entityType": "Account",
            "entityId": "acc-1",
            "relationshipName": "contacts",
            "relatedEntityIds": [contact_id],
        },
    )
    related = await toolset.call(
        "get_entity_relationships",
        {"entityType": "Account", "entityId": "acc-1", "relationshipName": "contacts"},
    )

    assert "Found 2 related record(s)" in related.text
    assert "Grace Hopper" in related.text
    assert isinstance(created, ToolResult)
