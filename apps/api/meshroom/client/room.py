"""Room session: the client's view of one room membership."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

from .aiortc_transport import AiortcTransportFactory
from .config import ClientSettings, get_client_settings
from .lobby import LobbyView
from .media import AiortcMediaSource, DeviceSelection, MediaAcquisitionError, MediaController, MediaSource
from .negotiator import LostCallback, Role, SessionNegotiator
from .signaling import SignalingChannel
from .topology import PeerTopologyManager
from .transport import TransportFactory

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Awaitable[None]]
ChannelFactory = Callable[..., SignalingChannel]

REJECTION_CODES = frozenset({"room-full", "room-not-found", "unavailable"})


class RoomState(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    JOINED = "joined"
    LEAVING = "leaving"
    LEFT = "left"


class JoinRejectedError(RuntimeError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class RoomSession:
    """Join a room and keep a full mesh of peer sessions with its members.

    Use as ``async with RoomSession(...) as room:``; leaving the block
    releases every peer session and the local media whatever the exit path.
    """

    def __init__(
        self,
        room_id: str,
        user_id: str,
        display_name: str,
        *,
        settings: ClientSettings | None = None,
        channel_factory: ChannelFactory = SignalingChannel,
        transport_factory: TransportFactory | None = None,
        media_source: MediaSource | None = None,
        on_event: EventHandler | None = None,
    ) -> None:
        self.room_id = room_id
        self.user_id = user_id
        self.display_name = display_name
        self.settings = settings or get_client_settings()
        self._on_event = on_event
        self._state = RoomState.IDLE
        self._joined: asyncio.Future[list[dict]] | None = None
        self._rejoining = False

        self.channel = channel_factory(
            self.settings.signaling_url,
            self._on_message,
            on_reconnect=self._on_reconnect,
            on_lost=self._on_channel_lost,
            reconnect_attempts=self.settings.reconnect_attempts,
            reconnect_delay=self.settings.reconnect_delay_seconds,
        )
        self._transport_factory = transport_factory or AiortcTransportFactory(self.settings.ice_servers)
        self.lobby = LobbyView()
        self.topology = PeerTopologyManager(self._make_session, on_peer_lost=self._on_peer_lost)
        self.media = MediaController(
            media_source
            or AiortcMediaSource(video_format=self.settings.video_format, audio_format=self.settings.audio_format),
            self.topology.sessions,
            quality=self.settings.default_quality,
            devices=DeviceSelection(video_device=self.settings.video_device, audio_device=self.settings.audio_device),
        )
        self.media_error: MediaAcquisitionError | None = None

    @property
    def state(self) -> RoomState:
        return self._state

    @property
    def connection_id(self) -> str | None:
        return self.channel.connection_id

    async def __aenter__(self) -> "RoomSession":
        await self.join()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.leave()

    async def join(self) -> list[dict]:
        """Enter the room; returns the members that were already there."""

        if self._state not in (RoomState.IDLE, RoomState.LEFT):
            raise RuntimeError(f"Cannot join from state {self._state.value}")
        self._state = RoomState.JOINING

        try:
            try:
                await self.media.start()
            except MediaAcquisitionError as exc:
                # The room still works; this user just sends no media until retried.
                logger.warning("Joining without local media: %s", exc)
                self.media_error = exc
            await self.channel.connect()
            participants = await self._request_join()
        except BaseException:
            await self._release()
            self._state = RoomState.LEFT
            raise

        self._state = RoomState.JOINED
        logger.info("Joined room %s as %s with %d peers", self.room_id, self.connection_id, len(participants))
        return participants

    async def leave(self) -> None:
        """Leave the room. Every exit path ends here or in ``_release``."""

        if self._state in (RoomState.IDLE, RoomState.LEFT):
            await self._release()
            return
        was_joined = self._state is RoomState.JOINED
        self._state = RoomState.LEAVING
        try:
            if was_joined and self.channel.connected:
                try:
                    await self.channel.send({"type": "leave-room", "room_id": self.room_id, "user_id": self.user_id})
                except ConnectionError as exc:
                    logger.info("Could not announce leave: %s", exc)
        finally:
            await self._release()
            self._state = RoomState.LEFT
            logger.info("Left room %s", self.room_id)

    async def toggle_mic(self, muted: bool) -> None:
        await self.media.set_enabled("audio", not muted)
        await self.channel.send({"type": "toggle-mic", "room_id": self.room_id, "is_muted": muted})

    async def toggle_video(self, video_off: bool) -> None:
        await self.media.set_enabled("video", not video_off)
        await self.channel.send({"type": "toggle-video", "room_id": self.room_id, "is_video_off": video_off})

    async def change_devices(self, *, video_device: str | None = None, audio_device: str | None = None) -> None:
        await self.media.change_devices(video_device=video_device, audio_device=audio_device)
        self.media_error = None

    async def change_quality(self, name: str) -> None:
        await self.media.change_quality(name)

    async def refresh_rooms(self) -> None:
        await self.channel.send({"type": "get-rooms"})

    async def _request_join(self) -> list[dict]:
        self._joined = asyncio.get_running_loop().create_future()
        await self.channel.send(
            {
                "type": "join-room",
                "room_id": self.room_id,
                "user_id": self.user_id,
                "display_name": self.display_name,
            }
        )
        try:
            return await self._joined
        finally:
            self._joined = None

    def _make_session(self, remote_id: str, role: Role, on_lost: LostCallback) -> SessionNegotiator:
        return SessionNegotiator(
            remote_id,
            role,
            transport_factory=self._transport_factory,
            send=self._send_signal,
            tracks_provider=self.media.peer_tracks,
            preset_provider=lambda: self.media.preset,
            local_id=self.channel.connection_id,
            restart_grace=self.settings.restart_grace_seconds,
            on_lost=on_lost,
            on_track=self._on_remote_track,
        )

    async def _send_signal(self, message_type: str, to: str, payload: Any) -> None:
        await self.channel.send({"type": message_type, "to": to, "payload": payload})

    async def _on_message(self, message: dict) -> None:
        kind = message.get("type")

        if kind == "existing-participants":
            participants = message.get("participants", [])
            self._rejoining = False
            await self.topology.add_existing(participants)
            if self._joined is not None and not self._joined.done():
                self._joined.set_result(participants)
        elif kind == "user-joined":
            await self.topology.add_joined(message)
        elif kind == "user-reconnected":
            await self.topology.replace(message, message.get("previous_connection_id"))
        elif kind in ("user-left", "user-left-timeout"):
            await self.topology.remove(message["connection_id"])
        elif kind in ("offer", "answer", "ice-candidate", "renegotiation-hint"):
            await self.topology.route(message)
        elif kind in ("room-updated", "room-deleted", "rooms-list"):
            self.lobby.apply(message)
            if kind == "room-deleted" and message.get("room_id") == self.room_id and self._state is RoomState.JOINED:
                logger.info("Room %s was deleted, leaving", self.room_id)
                await self._teardown()
        elif kind in ("user-mic-toggled", "user-video-toggled"):
            flags = {key: message[key] for key in ("is_muted", "is_video_off") if key in message}
            self.topology.update_peer(message.get("connection_id", ""), **flags)
        elif kind == "error":
            code = message.get("code")
            if self._joined is not None and not self._joined.done() and code in REJECTION_CODES:
                self._joined.set_exception(JoinRejectedError(code, message.get("message", "")))
            elif self._rejoining and code in REJECTION_CODES:
                # The room moved on while we were away; there is nothing to go back to.
                self._rejoining = False
                logger.warning("Rejoin of %s rejected (%s), leaving", self.room_id, code)
                await self._teardown()
                if self._on_event is not None:
                    await self._on_event({"type": "join-rejected", "room_id": self.room_id, "code": code})
            else:
                logger.warning("Signaling error %s: %s", message.get("code"), message.get("message"))

        if self._on_event is not None:
            await self._on_event(message)

    async def _on_reconnect(self, connection_id: str) -> None:
        """Our connection id changed: every peer session is stale."""

        await self.topology.reset()
        if self._state not in (RoomState.JOINING, RoomState.JOINED):
            return
        logger.info("Signaling reconnected as %s, rejoining %s", connection_id, self.room_id)
        self._rejoining = self._state is RoomState.JOINED
        await self.channel.send(
            {
                "type": "join-room",
                "room_id": self.room_id,
                "user_id": self.user_id,
                "display_name": self.display_name,
            }
        )

    async def _on_channel_lost(self) -> None:
        if self._joined is not None and not self._joined.done():
            self._joined.set_exception(ConnectionError("Signaling connection lost"))
        if self._state is RoomState.JOINED:
            await self._teardown()
        if self._on_event is not None:
            await self._on_event({"type": "connection-lost", "room_id": self.room_id})

    async def _on_peer_lost(self, connection_id: str, reason: str) -> None:
        if self._on_event is not None:
            await self._on_event({"type": "peer-lost", "connection_id": connection_id, "reason": reason})

    async def _on_remote_track(self, connection_id: str, track: Any) -> None:
        if self._on_event is not None:
            await self._on_event({"type": "remote-track", "connection_id": connection_id, "track": track})

    async def _teardown(self) -> None:
        self._state = RoomState.LEAVING
        try:
            await self._release()
        finally:
            self._state = RoomState.LEFT

    async def _release(self) -> None:
        try:
            await self.topology.close()
        finally:
            try:
                await self.media.stop()
            finally:
                await self.channel.close()
