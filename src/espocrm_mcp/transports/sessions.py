# EspoCRM MCP Server
# File: transports/sessions.py
# Version: v1

"""Session and credential-cache entries held by the HTTP transport."""

from __future__ import annotations

import asyncio
import enum
import hashlib
import logging
import time
import uuid
from typing import Any, Dict, Optional, Set

from ..tools import Toolset

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    TERMINATED = "terminated"


PUSH_QUEUE_SIZE = 256


class PushChannel:
    """One open GET stream: a bounded queue of server-pushed JSON-RPC messages.

    ``None`` in the queue marks the channel as closed. When a stalled
    listener lets the queue fill up, new messages are dropped.
    """

    def __init__(self, maxsize: int = PUSH_QUEUE_SIZE) -> None:
        self._queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def publish(self, message: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Push stream queue full; dropped %s", message.get("method"))
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # The end marker must fit even when the listener has stalled.
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def next(self, timeout: float | None = None) -> Optional[Dict[str, Any]]:
        """Next message; raises asyncio.TimeoutError when ``timeout`` passes."""
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)


class Session:
    """A logical MCP connection that owns one Toolset."""

    def __init__(self, session_id: str | None = None, now: float | None = None) -> None:
        now = time.monotonic() if now is None else now
        self.id = session_id or str(uuid.uuid4())
        self.created_at = now
        self.last_used = now
        self.initialized = False
        self.state = SessionState.CREATED
        self.toolset: Optional[Toolset] = None
        self.listeners: Set[PushChannel] = set()
        self._lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def begin_initialize(self) -> None:
        self.state = SessionState.INITIALIZING

    def activate(self, toolset: Toolset) -> None:
        self.toolset = toolset
        self.state = SessionState.ACTIVE

    async def touch(self, now: float) -> None:
        async with self._lock:
            self.last_used = now

    async def add_listener(self, channel: PushChannel) -> bool:
        """Register a push stream; a terminated session closes it instead."""
        async with self._lock:
            if self.state is SessionState.TERMINATED:
                channel.close()
                return False
            self.listeners.add(channel)
            return True

    async def remove_listener(self, channel: PushChannel) -> None:
        async with self._lock:
            self.listeners.discard(channel)

    async def publish(self, message: Dict[str, Any]) -> int:
        """Push a message to every open listener; returns how many got it."""
        async with self._lock:
            listeners = list(self.listeners)
        for channel in listeners:
            channel.publish(message)
        return len(listeners)

    async def close(self) -> None:
        async with self._lock:
            listeners = list(self.listeners)
            self.listeners.clear()
            self.state = SessionState.TERMINATED
        for channel in listeners:
            channel.close()
        logger.debug("Session %s terminated (%d listeners closed)", self.id, len(listeners))


def credential_digest(api_key: str) -> str:
    """Table key for a credential; the raw key is never stored."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


class CredentialEntry:
    """Toolset cached per API key for the stateless HTTP mode."""

    def __init__(self, digest: str, toolset: Toolset, now: float | None = None) -> None:
        self.digest = digest
        self.toolset = toolset
        self.last_used = time.monotonic() if now is None else now
        self._lock = asyncio.Lock()

    async def touch(self, now: float) -> None:
        async with self._lock:
            self.last_used = now

    async def close(self) -> None:
        logger.debug("Credential entry %s... released", self.digest[:12])
