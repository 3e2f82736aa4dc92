# EspoCRM MCP Server
# File: transports/http_server.py
# Version: v1

"""Streamable HTTP transport for the EspoCRM MCP server.

This is the script behind the ``espocrm-mcp-http`` console command.

Endpoints:

- ``POST /mcp``    one JSON-RPC message or a batch; answers JSON or SSE
- ``GET /mcp``     server-push event stream for an existing session
- ``DELETE /mcp``  terminate a session
- ``GET /health``  liveness and session count

In ``session`` mode the ``x-api-key`` header is only needed on the
``initialize`` request and every later request carries ``Mcp-Session-Id``.
In ``stateless`` mode every POST carries ``x-api-key`` and toolsets are
cached per credential instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from .. import __version__
from ..cache import IdleStore
from ..config import EspoConfig, configure_logging
from ..models import SessionNotFound
from ..tools import Toolset, build_toolset
from .jsonrpc import (
    INVALID_REQUEST,
    PARSE_ERROR,
    SERVER_ERROR,
    SERVER_NAME,
    SESSION_NOT_FOUND,
    MessageHandler,
    error_envelope,
    is_valid_message,
    sse_event,
)
from .sessions import CredentialEntry, PushChannel, Session, credential_digest

logger = logging.getLogger(__name__)

SESSION_HEADER = "mcp-session-id"
API_KEY_HEADER = "x-api-key"

ToolsetFactory = Callable[[EspoConfig, Optional[str]], Awaitable[Toolset]]


def _error(status_code: int, code: int, message: str, request_id: Any = None) -> JSONResponse:
    return JSONResponse(error_envelope(request_id, code, message), status_code=status_code)


def _wants_sse(accept: str) -> bool:
    return "text/event-stream" in accept


def _session_error(exc: SessionNotFound) -> JSONResponse:
    if not exc.session_id:
        return _error(400, INVALID_REQUEST, "Bad Request: Mcp-Session-Id header is required")
    return _error(404, SESSION_NOT_FOUND, str(exc))


class InitializationFailed(Exception):
    """Toolset construction failed; carries the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


async def _default_factory(config: EspoConfig, api_key: Optional[str]) -> Toolset:
    return await build_toolset(config, api_key=api_key)


class SessionTransport:
    """Multiplexes MCP sessions (or cached credentials) over plain HTTP."""

    def __init__(
        self,
        config: EspoConfig,
        toolset_factory: ToolsetFactory = _default_factory,
        sessions: Optional[IdleStore[Session]] = None,
        credentials: Optional[IdleStore[CredentialEntry]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.toolset_factory = toolset_factory
        self.clock = clock
        if sessions is None:
            sessions = IdleStore(
                idle_timeout_seconds=config.session_timeout_seconds,
                max_entries=config.max_sessions,
                clock=clock,
            )
        if credentials is None:
            credentials = IdleStore(
                idle_timeout_seconds=config.session_timeout_seconds,
                max_entries=config.max_sessions,
                clock=clock,
            )
        self.sessions: IdleStore[Session] = sessions
        self.credentials: IdleStore[CredentialEntry] = credentials
        self.handler = MessageHandler(server_version=__version__)

    @property
    def stateless(self) -> bool:
        return self.config.http_mode == "stateless"

    # ------------------------------------------------------------------
    # Toolset construction
    # ------------------------------------------------------------------

    async def _build(self, api_key: str) -> Toolset:
        try:
            return await self.toolset_factory(self.config, api_key)
        except Exception as exc:
            status = getattr(exc, "status_code", None) or getattr(
                exc.__cause__, "status_code", None
            )
            http_status = 401 if status in (401, 403) else 502
            logger.error("Failed to initialize toolset: %s", exc)
            raise InitializationFailed(f"Failed to initialize: {exc}", http_status) from exc

    async def _credential_toolset(self, api_key: str) -> Toolset:
        digest = credential_digest(api_key)
        entry = await self.credentials.get(digest)
        if entry is None:
            toolset = await self._build(api_key)
            entry = CredentialEntry(digest, toolset, now=self.clock())
            await self.credentials.put(digest, entry)
            logger.info("Cached toolset for credential %s...", digest[:12])
        return entry.toolset

    async def _open_session(self, api_key: str) -> Session:
        session = Session(now=self.clock())
        session.begin_initialize()
        try:
            toolset = await self._build(api_key)
        except InitializationFailed:
            await session.close()
            raise
        session.activate(toolset)
        await self.sessions.put(session.id, session)
        logger.info("New session initialized: %s", session.id)
        return session

    async def _existing_session(self, request: Request) -> Session:
        session_id = request.headers.get(SESSION_HEADER)
        session = await self.sessions.get(session_id) if session_id else None
        if session is None or not session.active:
            raise SessionNotFound(session_id)
        return session

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def handle_mcp(self, request: Request) -> Response:
        if request.method == "POST":
            return await self.handle_post(request)
        if request.method == "GET":
            return await self.handle_get(request)
        return await self.handle_delete(request)

    async def handle_post(self, request: Request) -> Response:
        accept = request.headers.get("accept", "")
        if "application/json" not in accept and not _wants_sse(accept):
            return _error(
                400,
                INVALID_REQUEST,
                "Not Acceptable: Accept must include application/json or text/event-stream",
            )

        try:
            payload = json.loads(await request.body())
        except ValueError:
            return _error(400, PARSE_ERROR, "Parse error")

        if isinstance(payload, dict):
            messages: List[Any] = [payload]
        elif isinstance(payload, list) and payload:
            messages = payload
        else:
            return _error(400, INVALID_REQUEST, "Invalid Request")

        init = next(
            (m for m in messages if is_valid_message(m) and m["method"] == "initialize"),
            None,
        )
        api_key = request.headers.get(API_KEY_HEADER)
        headers: Dict[str, str] = {}
        session: Optional[Session] = None

        try:
            if self.stateless:
                if not api_key:
                    return _error(400, INVALID_REQUEST, "Bad Request: x-api-key header is required")
                toolset: Optional[Toolset] = await self._credential_toolset(api_key)
            elif init is not None:
                if not api_key:
                    return _error(
                        400,
                        INVALID_REQUEST,
                        "Bad Request: x-api-key header is required to initialize",
                        init.get("id"),
                    )
                session = await self._open_session(api_key)
                headers["Mcp-Session-Id"] = session.id
                toolset = session.toolset
            else:
                session = await self._existing_session(request)
                toolset = session.toolset
        except SessionNotFound as exc:
            return _session_error(exc)
        except InitializationFailed as exc:
            request_id = init.get("id") if init is not None else None
            return _error(exc.status_code, SERVER_ERROR, str(exc), request_id)

        responses: List[Dict[str, Any]] = []
        for message in messages:
            response = await self.handler.handle(message, toolset, session)
            if response is not None:
                responses.append(response)

        if not responses:
            return Response(status_code=202, headers=headers)

        if _wants_sse(accept):
            return StreamingResponse(
                _sse_batch(responses),
                media_type="text/event-stream",
                headers={**headers, "Cache-Control": "no-cache"},
            )

        body: Any = responses[0] if len(responses) == 1 else responses
        return JSONResponse(body, headers=headers)

    async def handle_get(self, request: Request) -> Response:
        if self.stateless:
            return _error(405, INVALID_REQUEST, "Method not allowed in stateless mode")
        if not _wants_sse(request.headers.get("accept", "")):
            return _error(400, INVALID_REQUEST, "Not Acceptable: Accept must include text/event-stream")

        try:
            session = await self._existing_session(request)
        except SessionNotFound as exc:
            return _session_error(exc)

        channel = PushChannel()
        if not await session.add_listener(channel):
            return _session_error(SessionNotFound(session.id))
        logger.debug("Push stream opened for session %s", session.id)
        return StreamingResponse(
            self.stream_events(session, channel),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Mcp-Session-Id": session.id,
            },
        )

    async def stream_events(self, session: Session, channel: PushChannel) -> AsyncIterator[str]:
        """SSE body for a push stream; the listener is removed when it ends."""
        event_id = 0
        try:
            yield ": connected\n\n"
            while True:
                try:
                    message = await channel.next(timeout=self.config.keepalive_seconds)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if message is None:
                    break
                event_id += 1
                yield sse_event(message, event_id)
        finally:
            await session.remove_listener(channel)
            logger.debug("Push stream closed for session %s", session.id)

    async def handle_delete(self, request: Request) -> Response:
        if self.stateless:
            return _error(405, INVALID_REQUEST, "Method not allowed in stateless mode")

        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return _error(400, INVALID_REQUEST, "Bad Request: Mcp-Session-Id header is required")

        session = await self.sessions.pop(session_id)
        if session is None:
            return _error(404, SESSION_NOT_FOUND, "Session not found or expired")

        logger.info("Session terminated: %s", session_id)
        return Response(status_code=202)

    async def health(self, request: Request) -> Response:
        active = len(self.credentials) if self.stateless else len(self.sessions)
        return JSONResponse(
            {
                "status": "healthy",
                "service": SERVER_NAME,
                "transport": "streamable-http",
                "mode": self.config.http_mode,
                "activeSessions": active,
            }
        )

    # ------------------------------------------------------------------
    # Idle eviction
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        removed = await self.sessions.sweep()
        removed += await self.credentials.sweep()
        if removed:
            logger.info("Idle sweep removed %d entries", len(removed))
        return len(removed)

    async def run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception as exc:
                logger.error("Idle sweep failed: %s", exc)

    async def shutdown(self) -> None:
        await self.sessions.clear()
        await self.credentials.clear()


async def _sse_batch(responses: List[Dict[str, Any]]) -> AsyncIterator[str]:
    for index, response in enumerate(responses, start=1):
        yield sse_event(response, index)


def create_app(
    config: Optional[EspoConfig] = None,
    transport: Optional[SessionTransport] = None,
) -> Starlette:
    """Build the Starlette application around a SessionTransport."""
    config = config or EspoConfig.from_env()
    transport = transport or SessionTransport(config)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(transport.run_sweeper())
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await transport.shutdown()

    app = Starlette(
        routes=[
            Route("/mcp", transport.handle_mcp, methods=["GET", "POST", "DELETE"]),
            Route("/health", transport.health, methods=["GET"]),
        ],
        lifespan=lifespan,
    )
    app.state.transport = transport
    return app


def main() -> None:
    """Synchronous entrypoint for console_scripts."""
    config = EspoConfig.from_env()
    configure_logging(config.log_level)

    problems = config.validate(transport="http")
    if problems:
        for problem in problems:
            logger.error("Configuration error: %s", problem)
        raise SystemExit(1)

    app = create_app(config)
    logger.info(
        "EspoCRM MCP HTTP server listening on %s:%d (%s mode)",
        config.http_host,
        config.http_port,
        config.http_mode,
    )
    uvicorn.run(
        app,
        host=config.http_host,
        port=config.http_port,
        log_level="warning" if config.log_level == "warn" else config.log_level,
    )


if __name__ == "__main__":
    main()
