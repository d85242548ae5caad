"""
Live dashboard connections and NEW_MESSAGE fan-out.

A connection is anonymous until the client sends an IDENTIFY frame; only
identified connections whose user is in an event's recipient set get the
event, and nothing is ever written to an unidentified one. A failed write
drops the connection for good; clients reconnect on their own.

Liveness is checked with WebSocket protocol pings (uvicorn's ws_ping_interval
and ws_ping_timeout, see main()), which browsers answer without any client
code. A peer that stops answering is closed by the server, and the registry
sweep drops whatever such closes leave behind.

The registry is per process: dashboards connected to another instance do not
see events published here.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from starlette.websockets import WebSocketState

from aside.metrics import record_ws_event, ws_connections

logger = logging.getLogger(__name__)

NEW_MESSAGE_EVENT = {"type": "NEW_MESSAGE"}


@dataclass
class LiveConnection:
    websocket: Any
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[int] = None

    @property
    def closed(self) -> bool:
        return WebSocketState.DISCONNECTED in (
            self.websocket.client_state,
            self.websocket.application_state,
        )


class ConnectionRegistry:
    """Owns every live connection in this process."""

    def __init__(self):
        # connection id -> connection
        self._connections: dict[str, LiveConnection] = {}
        self._lock = asyncio.Lock()

    async def register(self, websocket) -> LiveConnection:
        """Track an accepted websocket. It receives nothing until identified."""
        connection = LiveConnection(websocket=websocket)
        async with self._lock:
            self._connections[connection.id] = connection
            ws_connections.set(len(self._connections))
        logger.info(f"WebSocket client connected: {connection.id}")
        return connection

    async def identify(self, connection_id: str, user_id: int) -> bool:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            connection.user_id = user_id
        logger.info(f"WebSocket {connection_id} identified as user {user_id}")
        return True

    async def remove(self, connection_id: str) -> None:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            ws_connections.set(len(self._connections))
        if connection is not None:
            logger.info(f"WebSocket client removed: {connection_id}")

    async def _send(self, connection: LiveConnection, frame: dict) -> bool:
        try:
            await connection.websocket.send_text(json.dumps(frame))
            return True
        except Exception as e:
            logger.warning(f"Write to {connection.id} failed, dropping connection: {e}")
            return False

    async def broadcast_to(self, user_ids: Iterable[int], event: Optional[dict] = None) -> int:
        """
        Send event to every identified connection bound to one of user_ids.

        Returns:
            Number of connections the event was written to
        """
        event = event or NEW_MESSAGE_EVENT
        target_ids = set(user_ids)
        async with self._lock:
            targets = [
                c for c in self._connections.values()
                if c.user_id is not None and c.user_id in target_ids
            ]

        delivered = 0
        dead = []
        for connection in targets:
            if await self._send(connection, event):
                delivered += 1
                record_ws_event("delivered")
            else:
                dead.append(connection.id)
                record_ws_event("failed")

        for connection_id in dead:
            await self.remove(connection_id)

        logger.info(f"Broadcast {event.get('type')} to {delivered} connection(s) for users {sorted(target_ids)}")
        return delivered

    async def sweep(self) -> list[str]:
        """
        Drop connections whose transport is already closed.

        Writes nothing to any connection.

        Returns:
            Ids of the connections removed
        """
        async with self._lock:
            stale = [c.id for c in self._connections.values() if c.closed]

        for connection_id in stale:
            record_ws_event("expired")
            await self.remove(connection_id)
        if stale:
            logger.info(f"Swept {len(stale)} closed WebSocket connection(s)")
        return stale

    async def run_sweep(self, interval: float) -> None:
        """Sweep forever; cancelled at shutdown."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Connection sweep failed: {e}")

    def connection_count(self) -> int:
        return len(self._connections)

    def identified_users(self) -> set[int]:
        return {c.user_id for c in self._connections.values() if c.user_id is not None}
