"""In-memory collaborators for client and coordinator tests."""
from __future__ import annotations

import asyncio
from typing import Any, Mapping

from meshroom.client.media import DeviceSelection, LocalMedia, MediaAcquisitionError
from meshroom.client.negotiator import Role, SessionNegotiator
from meshroom.client.presets import QualityPreset
from meshroom.client.transport import IceCandidate, SessionDescription, TransportEvents


class DummyConnection:
    """Stands in for a websocket: records what the server sends."""

    def __init__(self) -> None:
        self.messages: list[dict] = []

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    def of_type(self, kind: str) -> list[dict]:
        return [message for message in self.messages if message.get("type") == kind]

    def types(self, *, skip_lobby: bool = True) -> list[str]:
        lobby = {"room-updated", "room-deleted"}
        return [m["type"] for m in self.messages if not (skip_lobby and m["type"] in lobby)]


class FakeTrack:
    def __init__(self, kind: str, label: str) -> None:
        self.kind = kind
        self.label = label
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True

    def __repr__(self) -> str:
        return f"<FakeTrack {self.kind} {self.label}>"


class FakeTransport:
    """Peer transport that follows offer/answer rules without any network."""

    def __init__(self, events: TransportEvents, tracks: Mapping[str, Any]) -> None:
        self.events = events
        self.tracks = dict(tracks)
        self.local: SessionDescription | None = None
        self.remote: SessionDescription | None = None
        self.calls: list[str] = []
        self.applied_candidates: list[str] = []
        self.limits: list[str] = []
        self.received: dict[str, Any] = {}
        self.peer: FakeTransport | None = None
        self.fail_replace = False
        self.replace_delay = 0.0
        self.closed = False
        self._offers = 0

    def link(self, other: "FakeTransport") -> None:
        self.peer = other
        other.peer = self

    async def create_offer(self, *, ice_restart: bool = False) -> SessionDescription:
        self._offers += 1
        self.calls.append("restart-offer" if ice_restart else "offer")
        self.local = SessionDescription(sdp=f"v=0 offer {self._offers}", type="offer")
        return self.local

    async def create_answer(self) -> SessionDescription:
        if self.remote is None or self.remote.type != "offer":
            raise RuntimeError("answer without a remote offer")
        self.calls.append("answer")
        self.local = SessionDescription(sdp="v=0 answer", type="answer")
        return self.local

    async def set_remote_description(self, description: SessionDescription) -> None:
        if description.type == "offer" and self.local is not None and self.local.type == "offer" and self.remote is None:
            raise RuntimeError("remote offer while a local offer is pending")
        if description.type == "answer" and (self.local is None or self.local.type != "offer"):
            raise RuntimeError("answer without a local offer")
        self.calls.append(f"remote-{description.type}")
        self.remote = description

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if self.remote is None:
            raise RuntimeError("candidate before remote description")
        self.applied_candidates.append(candidate.candidate)

    async def rollback(self) -> None:
        self.calls.append("rollback")
        self.local = None

    async def replace_track(self, kind: str, track: Any | None) -> None:
        if self.replace_delay:
            await asyncio.sleep(self.replace_delay)
        if self.fail_replace:
            raise RuntimeError("sender gone")
        self.tracks[kind] = track
        if self.peer is not None:
            self.peer.received[kind] = track

    async def apply_encoding_limits(self, preset: QualityPreset) -> None:
        self.limits.append(preset.name)

    async def close(self) -> None:
        self.closed = True

    async def report(self, state: str) -> None:
        await self.events.on_state_change(state)


class TransportPool:
    """Transport factory that keeps every transport it builds, keyed by owner and peer."""

    def __init__(self) -> None:
        self.built: dict[tuple[str, str], list[FakeTransport]] = {}

    def factory(self, owner: str, remote: str):
        def build(events: TransportEvents, tracks: Mapping[str, Any]) -> FakeTransport:
            transport = FakeTransport(events, tracks)
            self.built.setdefault((owner, remote), []).append(transport)
            return transport

        return build

    def latest(self, owner: str, remote: str) -> FakeTransport:
        return self.built[(owner, remote)][-1]


class Wire:
    """Delivers relayed messages between negotiators the way the relay would."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str, Any]] = []
        self.sessions: dict[tuple[str, str], SessionNegotiator] = {}

    def attach(self, owner: str, session: SessionNegotiator) -> None:
        self.sessions[(owner, session.remote_id)] = session

    def sender(self, owner: str):
        async def send(kind: str, to: str, payload: Any) -> None:
            self.sent.append((owner, kind, to, payload))
            target = self.sessions.get((to, owner))
            if target is not None:
                target.deliver(kind, payload)

        return send

    def count(self, kind: str, *, sender: str | None = None) -> int:
        return sum(1 for owner, k, _, _ in self.sent if k == kind and (sender is None or owner == sender))


def make_session(
    wire: Wire,
    pool: TransportPool,
    owner: str,
    remote: str,
    role: Role,
    *,
    restart_grace: float = 0.01,
    on_lost=None,
    tracks_provider=dict,
    preset_provider=lambda: None,
) -> SessionNegotiator:
    session = SessionNegotiator(
        remote,
        role,
        transport_factory=pool.factory(owner, remote),
        send=wire.sender(owner),
        local_id=owner,
        restart_grace=restart_grace,
        on_lost=on_lost,
        tracks_provider=tracks_provider,
        preset_provider=preset_provider,
    )
    wire.attach(owner, session)
    return session


async def settle(*sessions: SessionNegotiator, rounds: int = 6) -> None:
    """Let queued transitions, including ones they trigger on other sessions, run out."""

    for _ in range(rounds):
        await asyncio.gather(*(session.idle() for session in sessions))
        await asyncio.sleep(0)


class FakeMediaSource:
    """Hands out fake tracks; acquisitions can be held open or made to fail."""

    def __init__(self) -> None:
        self.requests: list[tuple[DeviceSelection, QualityPreset]] = []
        self.gate: asyncio.Event | None = None
        self.fail: Exception | None = None
        self.produced: list[LocalMedia] = []

    async def acquire(self, devices: DeviceSelection, preset: QualityPreset) -> LocalMedia:
        self.requests.append((devices, preset))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        label = f"{devices.video_device or 'default'}@{preset.name}"
        media = LocalMedia(
            {"audio": FakeTrack("audio", devices.audio_device or "mic"), "video": FakeTrack("video", label)},
            devices=devices,
            preset=preset,
        )
        self.produced.append(media)
        return media


class FailingMediaSource(FakeMediaSource):
    def __init__(self) -> None:
        super().__init__()
        self.fail = MediaAcquisitionError("no camera")


class FakeChannel:
    """Signaling channel double; ``responder`` scripts the server side."""

    def __init__(self, url, on_message, *, on_reconnect=None, on_lost=None, reconnect_attempts=10, reconnect_delay=1.0):
        self.url = url
        self.on_message = on_message
        self.on_reconnect = on_reconnect
        self.on_lost = on_lost
        self.sent: list[dict] = []
        self.connection_id: str | None = None
        self.connected = False
        self.closed = False
        self.responder = None
        self._ids = iter(f"me-{n}" for n in range(1, 100))

    async def connect(self) -> str:
        self.connection_id = next(self._ids)
        self.connected = True
        self.closed = False
        return self.connection_id

    async def send(self, message: dict) -> None:
        if not self.connected:
            raise ConnectionError("not connected")
        self.sent.append(message)
        if self.responder is not None:
            await self.responder(message)

    async def close(self) -> None:
        self.connected = False
        self.closed = True

    async def push(self, message: dict) -> None:
        await self.on_message(message)

    async def drop_and_reconnect(self) -> str:
        self.connection_id = next(self._ids)
        await self.on_reconnect(self.connection_id)
        return self.connection_id

    async def drop_for_good(self) -> None:
        self.connected = False
        await self.on_lost()

    def of_type(self, kind: str) -> list[dict]:
        return [message for message in self.sent if message.get("type") == kind]
