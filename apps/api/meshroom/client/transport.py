"""Peer transport contract used by the session negotiator.

A transport owns one peer connection. The negotiator never talks to aiortc
directly, which keeps the state machine testable with in-memory transports.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol

from .presets import QualityPreset


@dataclass(frozen=True, slots=True)
class SessionDescription:
    sdp: str
    type: str

    def to_dict(self) -> dict[str, str]:
        return {"sdp": self.sdp, "type": self.type}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SessionDescription":
        return cls(sdp=str(payload["sdp"]), type=str(payload["type"]))


@dataclass(frozen=True, slots=True)
class IceCandidate:
    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"candidate": self.candidate, "sdpMid": self.sdp_mid, "sdpMLineIndex": self.sdp_mline_index}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "IceCandidate":
        return cls(
            candidate=str(payload.get("candidate") or ""),
            sdp_mid=payload.get("sdpMid"),
            sdp_mline_index=payload.get("sdpMLineIndex"),
        )


@dataclass(slots=True)
class TransportEvents:
    """Callbacks a transport reports through.

    ``on_state_change`` receives the connection state names of the W3C API:
    new, connecting, connected, disconnected, failed, closed.
    """

    on_state_change: Callable[[str], Awaitable[None]]
    on_local_candidate: Callable[[IceCandidate], Awaitable[None]] | None = None
    on_track: Callable[[Any], Awaitable[None]] | None = None


class PeerTransport(Protocol):
    async def create_offer(self, *, ice_restart: bool = False) -> SessionDescription:
        """Create an offer, apply it locally and return the applied description."""

    async def create_answer(self) -> SessionDescription:
        """Create an answer to the applied remote offer, apply it and return it."""

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    async def rollback(self) -> None:
        """Discard a pending local offer."""

    async def replace_track(self, kind: str, track: Any | None) -> None:
        """Swap the outgoing track of ``kind`` without renegotiating."""

    async def apply_encoding_limits(self, preset: QualityPreset) -> None: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[TransportEvents, Mapping[str, Any]], PeerTransport]
