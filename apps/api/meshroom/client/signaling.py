"""Signaling websocket client with automatic reconnection."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Awaitable, Callable

import websockets
from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict], Awaitable[None]]
ReconnectHandler = Callable[[str], Awaitable[None]]
LostHandler = Callable[[], Awaitable[None]]


class SignalingChannel:
    """JSON message channel to the signaling server.

    The server greets each socket with ``{"type": "connected"}`` carrying the
    connection id; a reconnect therefore always yields a new id, reported via
    ``on_reconnect``. When every reconnection attempt fails ``on_lost`` runs.
    """

    def __init__(
        self,
        url: str,
        on_message: MessageHandler,
        *,
        on_reconnect: ReconnectHandler | None = None,
        on_lost: LostHandler | None = None,
        reconnect_attempts: int = 10,
        reconnect_delay: float = 1.0,
    ) -> None:
        self.url = url
        self._on_message = on_message
        self._on_reconnect = on_reconnect
        self._on_lost = on_lost
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task[None] | None = None
        self._closing = False
        self.connection_id: str | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> str:
        """Open the socket and return the connection id the server assigned."""

        self._closing = False
        await self._open()
        self._reader = asyncio.create_task(self._read_loop(), name="signaling-reader")
        return self.connection_id

    async def send(self, message: dict) -> None:
        if self._ws is None:
            raise ConnectionError("Signaling channel is not connected")
        await self._ws.send(json.dumps(message))

    async def close(self) -> None:
        self._closing = True
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def _open(self) -> None:
        ws = await websockets.connect(self.url)
        try:
            greeting = json.loads(await ws.recv())
        except BaseException:
            await ws.close()
            raise
        if greeting.get("type") != "connected" or not greeting.get("connection_id"):
            await ws.close()
            raise ConnectionError(f"Unexpected greeting from signaling server: {greeting!r}")
        self._ws = ws
        self.connection_id = greeting["connection_id"]
        logger.info("Signaling connected as %s", self.connection_id)

    async def _read_loop(self) -> None:
        while not self._closing:
            try:
                async for raw in self._ws:
                    if isinstance(raw, bytes):
                        continue
                    try:
                        message = json.loads(raw)
                    except ValueError:
                        logger.warning("Ignoring non-JSON signaling frame")
                        continue
                    try:
                        await self._on_message(message)
                    except Exception:  # noqa: BLE001 - a handler bug must not kill the channel
                        logger.exception("Signaling handler failed for %s", message.get("type"))
            except websockets.ConnectionClosed as exc:
                logger.warning("Signaling connection closed: %s", exc)

            self._ws = None
            if self._closing:
                return
            if not await self._reconnect():
                if self._on_lost is not None:
                    await self._on_lost()
                return

    async def _reconnect(self) -> bool:
        for attempt in range(1, self._reconnect_attempts + 1):
            await asyncio.sleep(self._reconnect_delay)
            if self._closing:
                return False
            try:
                await self._open()
            except (OSError, ConnectionError, websockets.WebSocketException) as exc:
                logger.info("Reconnect attempt %d/%d failed: %s", attempt, self._reconnect_attempts, exc)
                continue
            if self._on_reconnect is not None:
                await self._on_reconnect(self.connection_id)
            return True
        logger.error("Giving up on signaling after %d attempts", self._reconnect_attempts)
        return False
