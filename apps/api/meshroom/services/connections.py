"""Connection registry for signaling sockets.

Holds the mapping between ephemeral connection ids, the verified user bound
to each connection and the room it currently sits in. One registry lives on
the application state and is shared by the relay and the coordinator.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable
from uuid import uuid4

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True)
class SignalingConnection:
    """One live signaling socket."""

    connection_id: str
    send: SendCallable
    user_id: str | None = None
    display_name: str | None = None
    room_id: str | None = None


class ConnectionRegistry:
    """Track live connections and fan messages out to them."""

    def __init__(self) -> None:
        self._connections: dict[str, SignalingConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def register(self, send: SendCallable, connection_id: str | None = None) -> SignalingConnection:
        connection = SignalingConnection(connection_id=connection_id or uuid4().hex, send=send)
        self._connections[connection.connection_id] = connection
        logger.debug("Registered connection %s (%d live)", connection.connection_id, len(self._connections))
        return connection

    def unregister(self, connection_id: str) -> SignalingConnection | None:
        connection = self._connections.pop(connection_id, None)
        if connection is not None:
            logger.debug("Unregistered connection %s (%d live)", connection_id, len(self._connections))
        return connection

    def get(self, connection_id: str) -> SignalingConnection | None:
        return self._connections.get(connection_id)

    def bind_user(self, connection_id: str, user_id: str, display_name: str | None = None) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.user_id = user_id
        if display_name:
            connection.display_name = display_name

    def set_room(self, connection_id: str, room_id: str | None) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.room_id = room_id

    def room_of(self, connection_id: str) -> str | None:
        connection = self._connections.get(connection_id)
        return connection.room_id if connection else None

    def user_of(self, connection_id: str) -> str | None:
        connection = self._connections.get(connection_id)
        return connection.user_id if connection else None

    def clear(self) -> None:
        self._connections.clear()

    async def send_to(self, connection_id: str, message: dict) -> bool:
        """Deliver a message to one connection. Returns False when it could not be sent."""

        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        try:
            await connection.send(message)
        except Exception as exc:  # noqa: BLE001 - a dead socket is cleaned up by its own handler
            logger.debug("Send to %s failed: %s", connection_id, exc)
            return False
        return True

    async def send_many(self, connection_ids: Iterable[str], message: dict) -> None:
        """Deliver the same message to several connections concurrently."""

        targets = [cid for cid in dict.fromkeys(connection_ids) if cid in self._connections]
        if targets:
            await asyncio.gather(*(self.send_to(cid, message) for cid in targets))

    async def broadcast(self, message: dict, *, exclude: str | None = None) -> None:
        """Deliver a message to every live connection."""

        await self.send_many((cid for cid in list(self._connections) if cid != exclude), message)
