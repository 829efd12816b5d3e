"""aiortc-backed peer transport.

aiortc implements neither SDP rollback nor ICE restart, and it exposes no
encoder parameters. Rollback and restart are therefore carried out by
replacing the ``RTCPeerConnection`` with a fresh one that sends the same
tracks; events from a replaced connection are ignored. Bitrate ceilings are
written into every local description as ``b=AS`` and ``b=TIAS`` lines so the
remote encoder honours them (aiortc itself ignores them on receipt), and the
capture side (``MediaPlayer`` options) enforces resolution and frame rate.
New ceilings reach the peer with the next offer or answer.
"""
from __future__ import annotations

import inspect
import logging
import re
from typing import Any, Mapping

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack
from aiortc.sdp import candidate_from_sdp

from .presets import QualityPreset
from .transport import IceCandidate, SessionDescription, TransportEvents

logger = logging.getLogger(__name__)

MEDIA_KINDS = ("audio", "video")

_UFRAG = re.compile(r"^a=ice-ufrag:(\S+)", re.MULTILINE)


def build_configuration(ice_servers: list[dict[str, Any]]) -> RTCConfiguration:
    servers = []
    for server in ice_servers:
        urls = server.get("urls")
        if not urls:
            continue
        servers.append(
            RTCIceServer(
                urls=urls,
                username=server.get("username"),
                credential=server.get("credential"),
            )
        )
    return RTCConfiguration(iceServers=servers)


def _placeholder(kind: str) -> Any:
    return AudioStreamTrack() if kind == "audio" else VideoStreamTrack()


def _ice_ufrag(sdp: str | None) -> str | None:
    if not sdp:
        return None
    match = _UFRAG.search(sdp)
    return match.group(1) if match else None


def _with_bandwidth(sdp: str, preset: QualityPreset | None) -> str:
    """Put the preset's bitrate ceiling on each audio and video section."""

    if preset is None:
        return sdp
    ceilings = {"audio": preset.audio_bitrate, "video": preset.video_bitrate}
    lines: list[str] = []
    bandwidth: list[str] = []
    kind = None
    for line in sdp.splitlines():
        if line.startswith("m="):
            lines.extend(bandwidth)
            kind = line[2:].split(" ", 1)[0]
            bps = ceilings.get(kind)
            bandwidth = [f"b=AS:{bps // 1000}", f"b=TIAS:{bps}"] if bps else []
        elif kind in ceilings and line.startswith("b="):
            continue
        elif bandwidth and line.startswith(("k=", "a=")):
            # b= precedes k= and a= within a media section.
            lines.extend(bandwidth)
            bandwidth = []
        lines.append(line)
    lines.extend(bandwidth)
    return "\r\n".join(lines) + "\r\n"


class AiortcTransport:
    """One ``RTCPeerConnection`` plus the bookkeeping needed to rebuild it."""

    def __init__(
        self,
        configuration: RTCConfiguration,
        tracks: Mapping[str, Any],
        events: TransportEvents,
    ) -> None:
        self._configuration = configuration
        self._tracks: dict[str, Any] = {kind: tracks.get(kind) for kind in MEDIA_KINDS}
        self._events = events
        self._limits: QualityPreset | None = None
        self._pc = self._build()

    @property
    def encoding_limits(self) -> QualityPreset | None:
        return self._limits

    def _build(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._configuration)
        for kind in MEDIA_KINDS:
            transceiver = pc.addTransceiver(kind, direction="sendrecv")
            transceiver.sender.replaceTrack(self._tracks[kind] or _placeholder(kind))

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            if pc is not self._pc:
                return
            logger.debug("Peer connection state -> %s", pc.connectionState)
            await self._events.on_state_change(pc.connectionState)

        @pc.on("track")
        async def on_track(track) -> None:  # noqa: ANN001
            if pc is self._pc and self._events.on_track is not None:
                await self._events.on_track(track)

        return pc

    async def _rebuild(self, reason: str) -> None:
        old, self._pc = self._pc, self._build()
        logger.debug("Rebuilt peer connection (%s)", reason)
        await old.close()

    async def create_offer(self, *, ice_restart: bool = False) -> SessionDescription:
        if ice_restart:
            await self._rebuild("ice restart")
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        local = self._pc.localDescription
        return SessionDescription(sdp=_with_bandwidth(local.sdp, self._limits), type=local.type)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        local = self._pc.localDescription
        return SessionDescription(sdp=_with_bandwidth(local.sdp, self._limits), type=local.type)

    async def set_remote_description(self, description: SessionDescription) -> None:
        current = self._pc.remoteDescription
        if (
            description.type == "offer"
            and current is not None
            and _ice_ufrag(current.sdp) != _ice_ufrag(description.sdp)
        ):
            await self._rebuild("remote ice restart")
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if not candidate.candidate:
            return
        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:") :]
        ice = candidate_from_sdp(sdp)
        ice.sdpMid = candidate.sdp_mid
        ice.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice)

    async def rollback(self) -> None:
        await self._rebuild("rollback")

    async def replace_track(self, kind: str, track: Any | None) -> None:
        self._tracks[kind] = track
        for transceiver in self._pc.getTransceivers():
            if transceiver.kind != kind:
                continue
            result = transceiver.sender.replaceTrack(track or _placeholder(kind))
            if inspect.isawaitable(result):
                await result

    async def apply_encoding_limits(self, preset: QualityPreset) -> None:
        self._limits = preset
        logger.debug(
            "Encoding ceilings %s: video %d bps, audio %d bps, %d fps",
            preset.name,
            preset.video_bitrate,
            preset.audio_bitrate,
            preset.frame_rate,
        )

    async def close(self) -> None:
        await self._pc.close()


class AiortcTransportFactory:
    """Builds an ``AiortcTransport`` per peer session."""

    def __init__(self, ice_servers: list[dict[str, Any]]) -> None:
        self._configuration = build_configuration(ice_servers)

    def __call__(self, events: TransportEvents, tracks: Mapping[str, Any]) -> AiortcTransport:
        return AiortcTransport(self._configuration, tracks, events)
