"""Messages accepted on the signaling websocket."""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Authenticate(_Inbound):
    type: Literal["authenticate"]
    user_id: str = Field(..., min_length=1, alias="userId")
    display_name: str | None = Field(default=None, alias="username")


class JoinRoom(_Inbound):
    type: Literal["join-room"]
    room_id: str = Field(..., min_length=1, alias="roomId")
    user_id: str = Field(..., min_length=1, alias="userId")
    display_name: str = Field(default="Anonymous", alias="username")


class LeaveRoom(_Inbound):
    type: Literal["leave-room"]
    room_id: str | None = Field(default=None, alias="roomId")
    user_id: str | None = Field(default=None, alias="userId")


class ToggleMic(_Inbound):
    type: Literal["toggle-mic"]
    room_id: str | None = Field(default=None, alias="roomId")
    is_muted: bool = Field(..., alias="isMuted")


class ToggleVideo(_Inbound):
    type: Literal["toggle-video"]
    room_id: str | None = Field(default=None, alias="roomId")
    is_video_off: bool = Field(..., alias="isVideoOff")


class GetRooms(_Inbound):
    type: Literal["get-rooms"]


class Relayed(_Inbound):
    """Peer-to-peer payload; the server only reads ``to``."""

    type: Literal["offer", "answer", "ice-candidate", "renegotiation-hint"]
    to: str = Field(..., min_length=1)
    payload: Any = None


InboundMessage = Annotated[
    Union[Authenticate, JoinRoom, LeaveRoom, ToggleMic, ToggleVideo, GetRooms, Relayed],
    Field(discriminator="type"),
]

inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)
