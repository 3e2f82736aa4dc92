# EspoCRM MCP Server
# File: transports/jsonrpc.py
# Version: v1

"""JSON-RPC 2.0 envelopes and MCP method handling for the HTTP transport."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from mcp import types
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from pydantic import ValidationError

from ..tools import Toolset, to_call_result
from .sessions import Session

logger = logging.getLogger(__name__)

PARSE_ERROR = types.PARSE_ERROR
INVALID_REQUEST = types.INVALID_REQUEST
METHOD_NOT_FOUND = types.METHOD_NOT_FOUND
INVALID_PARAMS = types.INVALID_PARAMS
INTERNAL_ERROR = types.INTERNAL_ERROR
SERVER_ERROR = -32000
SESSION_NOT_FOUND = -32001

SERVER_NAME = "espocrm-mcp-server"


def error_envelope(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def result_envelope(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def notification(method: str, params: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "method": method, "params": params}


def is_valid_message(message: Any) -> bool:
    """True for a well-formed JSON-RPC 2.0 request or notification."""
    if not isinstance(message, dict):
        return False
    model = types.JSONRPCRequest if "id" in message else types.JSONRPCNotification
    try:
        model.model_validate(message, strict=True)
    except ValidationError:
        return False
    return "id" not in message or not isinstance(message["id"], bool)


def sse_event(message: Dict[str, Any], event_id: int | str | None = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"data: {json.dumps(message, separators=(',', ':'))}")
    return "\n".join(lines) + "\n\n"


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def negotiate_protocol_version(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return types.LATEST_PROTOCOL_VERSION


def initialize_result(params: Dict[str, Any], server_version: str) -> Dict[str, Any]:
    result = types.InitializeResult(
        protocolVersion=negotiate_protocol_version(params.get("protocolVersion")),
        capabilities=types.ServerCapabilities(tools=types.ToolsCapability(listChanged=False)),
        serverInfo=types.Implementation(name=SERVER_NAME, version=server_version),
    )
    return _dump(result)


class MethodNotFound(Exception):
    pass


class InvalidParams(Exception):
    pass


class MessageHandler:
    """Answers one JSON-RPC message against a session's toolset."""

    def __init__(self, server_version: str) -> None:
        self.server_version = server_version

    async def handle(
        self,
        message: Any,
        toolset: Optional[Toolset],
        session: Optional[Session] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return the response envelope, or None for notifications."""
        if not is_valid_message(message):
            return error_envelope(None, INVALID_REQUEST, "Invalid Request")

        method = message["method"]
        params = message.get("params")
        if not isinstance(params, dict):
            params = {}

        if "id" not in message:
            await self._notify(method, session)
            return None

        request_id = message["id"]
        try:
            result = await self._call(method, params, toolset, session)
        except MethodNotFound:
            return error_envelope(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")
        except InvalidParams as exc:
            return error_envelope(request_id, INVALID_PARAMS, str(exc))
        except Exception as exc:
            logger.error("Error handling %s: %s", method, exc)
            return error_envelope(request_id, INTERNAL_ERROR, str(exc) or "Internal error")
        return result_envelope(request_id, result)

    async def _notify(self, method: str, session: Optional[Session]) -> None:
        if method == "notifications/initialized" and session is not None:
            session.initialized = True
            logger.debug("Session %s initialized", session.id)

    async def _call(
        self,
        method: str,
        params: Dict[str, Any],
        toolset: Optional[Toolset],
        session: Optional[Session],
    ) -> Dict[str, Any]:
        if method == "initialize":
            return initialize_result(params, self.server_version)
        if method == "ping":
            return {}
        if method not in ("tools/list", "tools/call"):
            raise MethodNotFound(method)
        if toolset is None:
            raise RuntimeError("Session is not initialized")

        if method == "tools/list":
            return {"tools": [_dump(tool) for tool in toolset.list_tools()]}

        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidParams("tools/call requires a tool name")
        arguments = params.get("arguments")
        if arguments is not None and not isinstance(arguments, dict):
            raise InvalidParams("tools/call arguments must be an object")

        meta = params.get("_meta")
        token = meta.get("progressToken") if isinstance(meta, dict) else None
        if token is not None and session is not None:
            await session.publish(_progress(token, 0))

        result = await toolset.call(name, arguments)

        if token is not None and session is not None:
            await session.publish(_progress(token, 1))
        return _dump(to_call_result(result))


def _progress(token: Any, progress: int) -> Dict[str, Any]:
    return notification(
        "notifications/progress",
        {"progressToken": token, "progress": progress, "total": 1},
    )
