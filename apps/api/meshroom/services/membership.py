"""Membership coordinator: join / leave / reconnect orchestration."""
from __future__ import annotations

import logging

from pydantic import ValidationError

from ..schemas.rooms import ParticipantInfo
from ..schemas.signaling import (
    Authenticate,
    GetRooms,
    JoinRoom,
    LeaveRoom,
    Relayed,
    ToggleMic,
    ToggleVideo,
    inbound_adapter,
)
from .connections import ConnectionRegistry, SendCallable, SignalingConnection
from .ledger import (
    LedgerUnavailableError,
    RoomChange,
    RoomFullError,
    RoomLedger,
    RoomNotFoundError,
)
from .relay import SignalingRelay

logger = logging.getLogger(__name__)


def _peer(participant: ParticipantInfo) -> dict:
    return participant.model_dump(mode="json")


class MembershipCoordinator:
    """Drive room membership from signaling messages.

    The ledger is the only place membership is decided; this class turns its
    results into the private and broadcast notices each connection needs.
    """

    def __init__(self, ledger: RoomLedger, registry: ConnectionRegistry, relay: SignalingRelay) -> None:
        self.ledger = ledger
        self.registry = registry
        self.relay = relay
        ledger.subscribe(self._on_room_change)

    async def connect(self, send: SendCallable) -> str:
        """Register a new socket and greet it with its connection id."""

        connection = self.registry.register(send)
        await self.registry.send_to(connection.connection_id, {"type": "connected", "connection_id": connection.connection_id})
        return connection.connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Treat a closed socket as an explicit leave of whatever room it was in."""

        connection = self.registry.unregister(connection_id)
        if connection is None or connection.room_id is None or connection.user_id is None:
            return
        try:
            await self._leave(connection_id, connection.user_id, connection.room_id)
        except LedgerUnavailableError:
            logger.exception("Could not record disconnect of %s from room %s", connection_id, connection.room_id)

    async def dispatch(self, connection_id: str, raw: object) -> None:
        """Validate one inbound message and route it."""

        connection = self.registry.get(connection_id)
        if connection is None:
            return

        try:
            message = inbound_adapter.validate_python(raw)
        except ValidationError as exc:
            kind = raw.get("type") if isinstance(raw, dict) else None
            logger.debug("Invalid message from %s: %s", connection_id, exc)
            await self._error(connection_id, "invalid-message", f"Invalid {kind or 'message'}")
            return

        try:
            if isinstance(message, Relayed):
                await self.relay.forward(connection_id, message)
            elif isinstance(message, JoinRoom):
                await self.join(connection, message)
            elif isinstance(message, LeaveRoom):
                await self.leave(connection)
            elif isinstance(message, ToggleMic):
                await self.toggle_media(connection, "user-mic-toggled", is_muted=message.is_muted)
            elif isinstance(message, ToggleVideo):
                await self.toggle_media(connection, "user-video-toggled", is_video_off=message.is_video_off)
            elif isinstance(message, Authenticate):
                await self.authenticate(connection, message)
            elif isinstance(message, GetRooms):
                await self.send_rooms(connection_id)
        except LedgerUnavailableError:
            logger.exception("Ledger unavailable while handling %s from %s", message.type, connection_id)
            await self._error(connection_id, "unavailable", "Room service temporarily unavailable")
        except Exception:  # noqa: BLE001 - one bad message must not drop the socket
            logger.exception("Handling %s from %s failed", message.type, connection_id)
            await self._error(connection_id, "internal-error", f"Could not handle {message.type}")

    async def authenticate(self, connection: SignalingConnection, message: Authenticate) -> None:
        self.registry.bind_user(connection.connection_id, message.user_id, message.display_name)
        logger.info("Connection %s authenticated as %s", connection.connection_id, message.user_id)
        await self.registry.send_to(connection.connection_id, {"type": "authenticated", "user_id": message.user_id})

    async def join(self, connection: SignalingConnection, message: JoinRoom) -> None:
        connection_id = connection.connection_id
        user_id = connection.user_id or message.user_id
        if connection.user_id and connection.user_id != message.user_id:
            logger.warning(
                "Connection %s authenticated as %s asked to join as %s; using the authenticated id",
                connection_id,
                connection.user_id,
                message.user_id,
            )
        display_name = message.display_name or connection.display_name or "Anonymous"

        if connection.room_id and connection.room_id != message.room_id:
            await self.leave(connection)

        try:
            result = await self.ledger.join(
                message.room_id,
                user_id=user_id,
                display_name=display_name,
                connection_id=connection_id,
            )
        except RoomFullError as exc:
            await self._error(connection_id, "room-full", str(exc), room_id=message.room_id)
            return
        except RoomNotFoundError as exc:
            await self._error(connection_id, "room-not-found", str(exc), room_id=message.room_id)
            return

        self.registry.bind_user(connection_id, user_id, display_name)
        self.registry.set_room(connection_id, message.room_id)

        # The joiner hears about its peers before any of them can send it an offer.
        await self.registry.send_to(
            connection_id,
            {
                "type": "existing-participants",
                "room_id": message.room_id,
                "participants": [_peer(p) for p in result.others],
                "room": result.room.model_dump(mode="json"),
            },
        )

        previous = result.previous_connection_id
        if result.reconnected and previous == connection_id:
            return

        notice = _peer(result.participant)
        if result.reconnected:
            if previous:
                # The replaced socket may still be open; it no longer speaks for this user.
                self.registry.set_room(previous, None)
            notice.update(type="user-reconnected", previous_connection_id=previous)
        else:
            notice["type"] = "user-joined"
        await self.registry.send_many((p.connection_id for p in result.others), notice)

    async def leave(self, connection: SignalingConnection) -> None:
        if connection.room_id is None or connection.user_id is None:
            return
        room_id = connection.room_id
        self.registry.set_room(connection.connection_id, None)
        await self._leave(connection.connection_id, connection.user_id, room_id)

    async def _leave(self, connection_id: str, user_id: str, room_id: str) -> None:
        result = await self.ledger.leave(room_id, user_id=user_id, connection_id=connection_id)
        if not result.removed or result.room_deleted:
            return
        await self.registry.send_many(
            result.remaining_connections,
            {"type": "user-left", "connection_id": connection_id, "user_id": user_id, "room_id": room_id},
        )

    async def toggle_media(self, connection: SignalingConnection, event: str, **flags: bool) -> None:
        """Persist mute / camera flags and tell the other members. No negotiation impact."""

        if connection.room_id is None or connection.user_id is None:
            await self._error(connection.connection_id, "not-in-room", "Join a room first")
            return
        room_id = connection.room_id
        await self.ledger.set_media_state(room_id, user_id=connection.user_id, **flags)
        try:
            room = await self.ledger.get(room_id)
        except RoomNotFoundError:
            return
        others = [p.connection_id for p in room.participants if p.connection_id != connection.connection_id]
        await self.registry.send_many(
            others,
            {"type": event, "connection_id": connection.connection_id, "user_id": connection.user_id, **flags},
        )

    async def send_rooms(self, connection_id: str) -> None:
        rooms = await self.ledger.list()
        await self.registry.send_to(
            connection_id,
            {"type": "rooms-list", "count": len(rooms), "rooms": [room.model_dump(mode="json") for room in rooms]},
        )

    async def _on_room_change(self, change: RoomChange) -> None:
        if change.deleted:
            for connection_id in change.evicted:
                self.registry.set_room(connection_id, None)
            await self.registry.broadcast({"type": "room-deleted", "room_id": change.room_id, "version": change.version})
            return
        await self.registry.broadcast(
            {"type": "room-updated", "version": change.version, "room": change.room.model_dump(mode="json")}
        )

    async def _error(self, connection_id: str, code: str, detail: str, **extra: object) -> None:
        await self.registry.send_to(connection_id, {"type": "error", "code": code, "message": detail, **extra})
