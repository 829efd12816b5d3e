"""Data contracts for room endpoints and lobby broadcasts."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, computed_field


class RoomCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120, description="Display name of the room")
    max_participants: int | None = Field(default=None, ge=2, description="Capacity; server default when omitted")


class RoomUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    max_participants: int | None = Field(default=None, ge=2)


class ParticipantInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    connection_id: str
    user_id: str
    display_name: str
    joined_at: datetime | None = None
    is_muted: bool = False
    is_video_off: bool = False


class RoomSummary(BaseModel):
    """Full-replace view of a room; ``version`` only ever grows."""

    room_id: str
    name: str
    max_participants: int
    created_by: str
    is_active: bool
    version: int
    created_at: datetime | None = None
    participants: list[ParticipantInfo] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def participant_count(self) -> int:
        return len(self.participants)


class RoomListResponse(BaseModel):
    count: int
    rooms: list[RoomSummary]


class IceServersResponse(BaseModel):
    ice_servers: list[dict[str, object]]
