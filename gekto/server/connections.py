"""Client connections for the control plane.

Each browser socket gets a Connection with its own bounded outgoing
queue and a sender task that drains it in order. Producers (session
observers, planner callbacks) only ever call post(), which never
blocks, so events keep the order they were produced in.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

from aiohttp import web

logger = logging.getLogger(__name__)

_QUEUE_SIZE = 5000
_ids = itertools.count(1)


class Connection:
    """One open WebSocket plus its ordered outgoing queue."""

    def __init__(self, ws: web.WebSocketResponse, queue_size: int = _QUEUE_SIZE):
        self.id = next(_ids)
        self.ws = ws
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(
            maxsize=queue_size
        )
        self._closed = False

    def __repr__(self) -> str:
        return f"<Connection #{self.id}>"

    @property
    def is_open(self) -> bool:
        return not self._closed and not self.ws.closed

    def post(self, message: dict[str, Any]) -> bool:
        """Queue *message* for sending. False if dropped."""
        if not self.is_open:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("%r: outgoing queue full, dropping %s", self, message.get("type"))
            return False
        return True

    async def run_sender(self) -> None:
        """Drain the queue onto the socket until close()."""
        while True:
            message = await self._queue.get()
            if message is None:
                break
            if self.ws.closed:
                break
            try:
                await self.ws.send_json(message)
            except (ConnectionResetError, RuntimeError) as exc:
                logger.debug("%r: send failed: %s", self, exc)
                break
        self._closed = True

    def close(self) -> None:
        """Stop the sender after the already-queued messages."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Sender is behind anyway; drop the backlog.
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(None)


class ConnectionRegistry:
    """The set of open control-plane connections."""

    def __init__(self) -> None:
        self._connections: list[Connection] = []

    def __len__(self) -> int:
        return len(self._connections)

    def add(self, connection: Connection) -> None:
        self._connections.append(connection)
        logger.info(
            "Control client connected %r active_clients=%d",
            connection, len(self._connections),
        )

    def remove(self, connection: Connection) -> None:
        if connection in self._connections:
            self._connections.remove(connection)
            logger.info(
                "Control client disconnected %r active_clients=%d",
                connection, len(self._connections),
            )

    def snapshot(self) -> list[Connection]:
        return list(self._connections)

    def broadcast(self, message: dict[str, Any]) -> int:
        """Post *message* to every open connection. Returns the count."""
        sent = 0
        for connection in self.snapshot():
            if not connection.is_open:
                continue
            if connection.post(message):
                sent += 1
        return sent

    async def close_all(self) -> None:
        for connection in self.snapshot():
            connection.close()
            if not connection.ws.closed:
                await connection.ws.close()
        self._connections.clear()
