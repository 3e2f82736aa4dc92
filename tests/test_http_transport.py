# EspoCRM MCP Server
# File: tests/test_http_transport.py
# Version: v1

"""End-to-end tests for the Streamable HTTP transport.

Requests go through httpx.ASGITransport into the Starlette app; toolsets are
built on the in-memory mock CRM so no EspoCRM instance is needed.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import httpx
import pytest
from mcp import types

from espocrm_mcp.cache import IdleStore
from espocrm_mcp.config import EspoConfig
from espocrm_mcp.mock import MockEspoClient
from espocrm_mcp.models import EspoAPIError
from espocrm_mcp.tools import build_toolset
from espocrm_mcp.transports.http_server import SessionTransport, create_app
from espocrm_mcp.transports.sessions import (
    CredentialEntry,
    PushChannel,
    Session,
    credential_digest,
)

JSON = {"Accept": "application/json"}
BOTH = {"Accept": "application/json, text/event-stream"}


class _Clock:
    def __init__(self) -> None:
        self.now = 5000.0

    def __call__(self) -> float:
        return self.now


class _Factory:
    """Toolset factory on the mock CRM; some keys simulate CRM failures."""

    def __init__(self) -> None:
        self.keys: List[Optional[str]] = []

    async def __call__(self, config: EspoConfig, api_key: Optional[str]):
        self.keys.append(api_key)
        if api_key == "rejected":
            raise EspoAPIError("EspoCRM GET App/user failed (HTTP 401).", status_code=401)
        if api_key == "unreachable":
            raise EspoAPIError("Error calling EspoCRM API: connection refused")
        return await build_toolset(config, api_key=api_key, client=MockEspoClient())


def _setup(mode: str = "session", **overrides: Any):
    config = EspoConfig(base_url="https://crm.example.com", http_mode=mode, **overrides)
    factory = _Factory()
    clock = _Clock()
    transport = SessionTransport(config, toolset_factory=factory, clock=clock)
    app = create_app(config, transport)
    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    )
    return client, transport, factory, clock


def _request(method: str, request_id: Any = 1, **params: Any) -> Dict[str, Any]:
    message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params:
        message["params"] = params
    return message


def _initialize(request_id: Any = 1, version: str = "2025-03-26") -> Dict[str, Any]:
    return _request(
        "initialize",
        request_id,
        protocolVersion=version,
        capabilities={},
        clientInfo={"name": "pytest", "version": "0"},
    )


async def _open_session(client: httpx.AsyncClient, api_key: str = "good-key") -> str:
    response = await client.post(
        "/mcp", json=_initialize(), headers={**JSON, "x-api-key": api_key}
    )
    assert response.status_code == 200
    return response.headers["mcp-session-id"]


def _sse_payloads(text: str) -> List[Dict[str, Any]]:
    return [
        json.loads(line[len("data: "):])
        for line in text.splitlines()
        if line.startswith("data: ")
    ]


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initialize_creates_session() -> None:
    client, transport, factory, _ = _setup()
    async with client:
        response = await client.post(
            "/mcp", json=_initialize(), headers={**JSON, "x-api-key": "good-key"}
        )

    assert response.status_code == 200
    session_id = response.headers["mcp-session-id"]
    assert session_id in transport.sessions
    assert factory.keys == ["good-key"]

    body = response.json()
    assert body["id"] == 1
    assert body["result"]["protocolVersion"] == "2025-03-26"
    assert body["result"]["serverInfo"]["name"] == "espocrm-mcp-server"
    assert "tools" in body["result"]["capabilities"]


@pytest.mark.asyncio
async def test_unsupported_protocol_version_gets_latest() -> None:
    client, *_ = _setup()
    async with client:
        response = await client.post(
            "/mcp", json=_initialize(version="1999-01-01"), headers={**JSON, "x-api-key": "k"}
        )

    assert response.json()["result"]["protocolVersion"] == types.LATEST_PROTOCOL_VERSION


@pytest.mark.asyncio
async def test_initialize_requires_api_key() -> None:
    client, transport, *_ = _setup()
    async with client:
        response = await client.post("/mcp", json=_initialize(), headers=JSON)

    assert response.status_code == 400
    assert "x-api-key" in response.json()["error"]["message"]
    assert len(transport.sessions) == 0


@pytest.mark.asyncio
async def test_initialize_failures_map_to_401_and_502() -> None:
    client, transport, *_ = _setup()
    async with client:
        rejected = await client.post(
            "/mcp", json=_initialize(), headers={**JSON, "x-api-key": "rejected"}
        )
        unreachable = await client.post(
            "/mcp", json=_initialize(), headers={**JSON, "x-api-key": "unreachable"}
        )

    assert rejected.status_code == 401
    assert rejected.json()["error"]["code"] == -32000
    assert rejected.json()["error"]["message"].startswith("Failed to initialize:")
    assert unreachable.status_code == 502
    assert "mcp-session-id" not in rejected.headers
    assert len(transport.sessions) == 0


@pytest.mark.asyncio
async def test_requests_need_a_known_session() -> None:
    client, *_ = _setup()
    async with client:
        missing = await client.post("/mcp", json=_request("tools/list"), headers=JSON)
        unknown = await client.post(
            "/mcp",
            json=_request("tools/list"),
            headers={**JSON, "mcp-session-id": "does-not-exist"},
        )

    assert missing.status_code == 400
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == -32001


@pytest.mark.asyncio
async def test_initialized_notification_is_accepted_without_body() -> None:
    client, transport, *_ = _setup()
    async with client:
        session_id = await _open_session(client)
        response = await client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "method": "notifications/initialized"},
            headers={**JSON, "mcp-session-id": session_id},
        )

    assert response.status_code == 202
    assert response.content == b""
    session = await transport.sessions.get(session_id)
    assert session.initialized is True


@pytest.mark.asyncio
async def test_delete_terminates_session() -> None:
    client, transport, *_ = _setup()
    async with client:
        session_id = await _open_session(client)
        deleted = await client.delete("/mcp", headers={"mcp-session-id": session_id})
        again = await client.post(
            "/mcp", json=_request("ping"), headers={**JSON, "mcp-session-id": session_id}
        )
        unknown = await client.delete("/mcp", headers={"mcp-session-id": session_id})

    assert deleted.status_code == 202
    assert again.status_code == 404
    assert unknown.status_code == 404
    assert len(transport.sessions) == 0


@pytest.mark.asyncio
async def test_idle_session_is_swept() -> None:
    client, transport, _, clock = _setup(session_timeout_seconds=60)
    async with client:
        idle = await _open_session(client)
        clock.now += 30
        busy = await _open_session(client)

        clock.now += 45
        removed = await transport.sweep()
        response = await client.post(
            "/mcp", json=_request("ping"), headers={**JSON, "mcp-session-id": idle}
        )
        still_there = await client.post(
            "/mcp", json=_request("ping"), headers={**JSON, "mcp-session-id": busy}
        )

    assert removed == 1
    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Session not found or expired"
    assert still_there.status_code == 200


@pytest.mark.asyncio
async def test_health_reports_active_sessions() -> None:
    client, *_ = _setup()
    async with client:
        await _open_session(client)
        await _open_session(client)
        response = await client.get("/health")

    assert response.json() == {
        "status": "healthy",
        "service": "espocrm-mcp-server",
        "transport": "streamable-http",
        "mode": "session",
        "activeSessions": 2,
    }


@pytest.mark.asyncio
async def test_injected_stores_are_used() -> None:
    config = EspoConfig(base_url="https://crm.example.com")
    sessions: IdleStore[Session] = IdleStore(idle_timeout_seconds=5)
    credentials: IdleStore[CredentialEntry] = IdleStore(idle_timeout_seconds=5)

    transport = SessionTransport(
        config, toolset_factory=_Factory(), sessions=sessions, credentials=credentials
    )
    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=create_app(config, transport)),
        base_url="http://testserver",
    )
    async with client:
        session_id = await _open_session(client)

    assert transport.sessions is sessions
    assert transport.credentials is credentials
    assert session_id in sessions


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_framing_errors() -> None:
    client, *_ = _setup()
    async with client:
        bad_accept = await client.post(
            "/mcp", json=_request("ping"), headers={"Accept": "text/html"}
        )
        not_json = await client.post(
            "/mcp", content=b"{not json", headers={**JSON, "Content-Type": "application/json"}
        )
        empty_batch = await client.post("/mcp", json=[], headers=JSON)
        scalar = await client.post("/mcp", json=42, headers=JSON)

    assert bad_accept.status_code == 400
    assert bad_accept.json()["error"]["code"] == -32600
    assert not_json.status_code == 400
    assert not_json.json()["error"]["code"] == -32700
    assert empty_batch.status_code == 400
    assert empty_batch.json()["error"]["code"] == -32600
    assert scalar.status_code == 400


@pytest.mark.asyncio
async def test_malformed_envelopes_are_invalid_requests() -> None:
    client, *_ = _setup()
    async with client:
        session_id = await _open_session(client)
        response = await client.post(
            "/mcp",
            json=[
                {"id": 7, "method": "ping"},
                {"jsonrpc": "1.0", "id": 8, "method": "ping"},
                {"jsonrpc": "2.0", "id": {"x": 1}, "method": "ping"},
                {"jsonrpc": "2.0", "id": True, "method": "tools/list"},
                {"jsonrpc": "2.0", "id": None, "method": "ping"},
                {"jsonrpc": "2.0", "id": 9, "method": "ping", "params": [1, 2]},
                {"jsonrpc": "2.0", "id": 10, "method": "ping"},
            ],
            headers={**JSON, "mcp-session-id": session_id},
        )

    body = response.json()
    assert [r["id"] for r in body] == [None] * 6 + [10]
    assert all(r["error"]["code"] == -32600 for r in body[:6])
    assert body[6]["result"] == {}


@pytest.mark.asyncio
async def test_batch_is_answered_in_order_as_json_array() -> None:
    client, *_ = _setup()
    async with client:
        session_id = await _open_session(client)
        response = await client.post(
            "/mcp",
            json=[
                _request("tools/list", "a"),
                {"jsonrpc": "2.0", "method": "notifications/initialized"},
                {"jsonrpc": "2.0", "id": 7},
                _request("ping", "b"),
                _request("resources/list", "c"),
            ],
            headers={**JSON, "mcp-session-id": session_id},
        )

    assert response.status_code == 200
    body = response.json()
    assert [r["id"] for r in body] == ["a", None, "b", "c"]
    assert len(body[0]["result"]["tools"]) == 20
    assert body[1]["error"]["code"] == -32600
    assert body[2]["result"] == {}
    assert body[3]["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_sse_delivery_one_event_per_response() -> None:
    client, *_ = _setup()
    async with client:
        session_id = await _open_session(client)
        response = await client.post(
            "/mcp",
            json=[_request("ping", 1), _request("ping", 2)],
            headers={**BOTH, "mcp-session-id": session_id},
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_payloads(response.text)
    assert [e["id"] for e in events] == [1, 2]
    assert "id: 1" in response.text.splitlines()


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tools_list_and_call() -> None:
    client, *_ = _setup()
    async with client:
        session_id = await _open_session(client)
        headers = {**JSON, "mcp-session-id": session_id}

        listed = await client.post("/mcp", json=_request("tools/list", 2), headers=headers)
        created = await client.post(
            "/mcp",
            json=_request("tools/call", 3, name="create_Product", arguments={"name": "Foo"}),
            headers=headers,
        )
        unknown = await client.post(
            "/mcp",
            json=_request("tools/call", 4, name="teleport", arguments={}),
            headers=headers,
        )
        invalid = await client.post(
            "/mcp", json=_request("tools/call", 5, arguments={}), headers=headers
        )

    tools = listed.json()["result"]["tools"]
    by_name = {t["name"]: t for t in tools}
    assert by_name["create_Account"]["inputSchema"]["required"] == ["name"]
    assert "health_check" in by_name

    result = created.json()["result"]
    assert result["isError"] is False
    assert result["content"][0]["text"].startswith("Successfully created CProduct: Foo")

    # Unknown tools are results, not protocol errors.
    unknown_result = unknown.json()["result"]
    assert unknown_result["isError"] is True
    assert "Unknown tool" in unknown_result["content"][0]["text"]

    assert invalid.json()["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_sessions_do_not_share_toolsets() -> None:
    client, transport, *_ = _setup()
    async with client:
        first = await _open_session(client)
        second = await _open_session(client)
        await client.post(
            "/mcp",
            json=_request("tools/call", 1, name="delete_Account", arguments={"id": "acc-1"}),
            headers={**JSON, "mcp-session-id": first},
        )
        response = await client.post(
            "/mcp",
            json=_request("tools/call", 2, name="get_Account", arguments={"id": "acc-1"}),
            headers={**JSON, "mcp-session-id": second},
        )

    assert response.json()["result"]["isError"] is False
    one = await transport.sessions.get(first)
    two = await transport.sessions.get(second)
    assert one.toolset.catalog is not two.toolset.catalog


# ---------------------------------------------------------------------------
# Push channel
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_push_stream_sends_marker_progress_and_closes_with_session() -> None:
    client, transport, *_ = _setup()
    async with client:
        session_id = await _open_session(client)
        session = await transport.sessions.get(session_id)

        channel = PushChannel()
        await session.add_listener(channel)
        stream = transport.stream_events(session, channel)
        assert await stream.__anext__() == ": connected\n\n"

        await client.post(
            "/mcp",
            json=_request(
                "tools/call",
                9,
                name="health_check",
                arguments={},
                _meta={"progressToken": "tok-1"},
            ),
            headers={**JSON, "mcp-session-id": session_id},
        )

        started = _sse_payloads(await stream.__anext__())[0]
        finished = _sse_payloads(await stream.__anext__())[0]
        assert started["method"] == "notifications/progress"
        assert started["params"] == {"progressToken": "tok-1", "progress": 0, "total": 1}
        assert finished["params"]["progress"] == 1

        await client.delete("/mcp", headers={"mcp-session-id": session_id})
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()

    assert channel.closed
    assert channel not in session.listeners


@pytest.mark.asyncio
async def test_push_stream_keepalive() -> None:
    client, transport, *_ = _setup(keepalive_seconds=0.01)
    async with client:
        session_id = await _open_session(client)
        session = await transport.sessions.get(session_id)

    channel = PushChannel()
    await session.add_listener(channel)
    stream = transport.stream_events(session, channel)

    assert await stream.__anext__() == ": connected\n\n"
    assert await stream.__anext__() == ": keepalive\n\n"

    await stream.aclose()
    assert channel not in session.listeners


@pytest.mark.asyncio
async def test_get_stream_validation() -> None:
    client, *_ = _setup()
    async with client:
        session_id = await _open_session(client)
        wrong_accept = await client.get("/mcp", headers={**JSON, "mcp-session-id": session_id})
        unknown = await client.get(
            "/mcp", headers={"Accept": "text/event-stream", "mcp-session-id": "nope"}
        )

    assert wrong_accept.status_code == 400
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_listener_on_terminated_session_is_closed() -> None:
    client, transport, *_ = _setup(keepalive_seconds=0.01)
    async with client:
        session_id = await _open_session(client)
    session = await transport.sessions.get(session_id)

    # DELETE lands between the session lookup and the listener registration.
    await transport.sessions.pop(session_id)
    channel = PushChannel()

    assert await session.add_listener(channel) is False
    assert channel.closed
    assert channel not in session.listeners

    stream = transport.stream_events(session, channel)
    assert await stream.__anext__() == ": connected\n\n"
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_push_channel_is_bounded() -> None:
    channel = PushChannel(maxsize=2)

    assert channel.publish({"method": "a"}) is True
    assert channel.publish({"method": "b"}) is True
    assert channel.publish({"method": "c"}) is False
    assert channel.dropped == 1

    channel.close()
    assert await channel.next(timeout=1) == {"method": "b"}
    assert await channel.next(timeout=1) is None
    assert channel.publish({"method": "d"}) is False


# ---------------------------------------------------------------------------
# Stateless mode
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stateless_mode_caches_toolsets_per_credential() -> None:
    client, transport, factory, _ = _setup(mode="stateless")
    async with client:
        headers = {**JSON, "x-api-key": "key-a"}
        first = await client.post("/mcp", json=_request("tools/list", 1), headers=headers)
        second = await client.post("/mcp", json=_request("ping", 2), headers=headers)
        other = await client.post(
            "/mcp", json=_request("ping", 3), headers={**JSON, "x-api-key": "key-b"}
        )
        no_key = await client.post("/mcp", json=_request("ping", 4), headers=JSON)
        get = await client.get("/mcp", headers={"Accept": "text/event-stream"})
        delete = await client.delete("/mcp")
        health = await client.get("/health")

    assert first.status_code == 200
    assert "mcp-session-id" not in first.headers
    assert second.json()["result"] == {}
    assert other.status_code == 200
    assert factory.keys == ["key-a", "key-b"]
    assert credential_digest("key-a") in transport.credentials
    assert "key-a" not in transport.credentials
    assert no_key.status_code == 400
    assert get.status_code == 405
    assert delete.status_code == 405
    assert health.json()["mode"] == "stateless"
    assert health.json()["activeSessions"] == 2
