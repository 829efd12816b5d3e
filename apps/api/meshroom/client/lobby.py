"""Lobby view of open rooms, kept current from versioned broadcasts."""
from __future__ import annotations

from typing import Any, Mapping


class LobbyView:
    """Apply ``room-updated`` / ``room-deleted`` / ``rooms-list`` idempotently.

    Every broadcast carries the room's version. Anything not newer than what
    is already known (including a deletion) is ignored, so duplicates and
    late deliveries cannot resurrect or roll back a room.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, dict[str, Any]] = {}
        self._versions: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def get(self, room_id: str) -> dict[str, Any] | None:
        return self._rooms.get(room_id)

    def rooms(self) -> list[dict[str, Any]]:
        return sorted(self._rooms.values(), key=lambda room: room.get("created_at") or "", reverse=True)

    def apply(self, message: Mapping[str, Any]) -> bool:
        """Apply one lobby message; returns True when the view changed."""

        kind = message.get("type")
        if kind == "room-updated":
            room = message["room"]
            return self._upsert(room, int(message.get("version", room.get("version", 0))))
        if kind == "room-deleted":
            return self._delete(message["room_id"], int(message.get("version", 0)))
        if kind == "rooms-list":
            return self._replace_all(message.get("rooms", []))
        return False

    def _upsert(self, room: Mapping[str, Any], version: int) -> bool:
        room_id = room["room_id"]
        if version <= self._versions.get(room_id, -1):
            return False
        self._versions[room_id] = version
        self._rooms[room_id] = dict(room)
        return True

    def _delete(self, room_id: str, version: int) -> bool:
        if version <= self._versions.get(room_id, -1):
            return False
        self._versions[room_id] = version
        return self._rooms.pop(room_id, None) is not None

    def _replace_all(self, rooms: list[Mapping[str, Any]]) -> bool:
        changed = False
        listed = set()
        for room in rooms:
            listed.add(room["room_id"])
            changed |= self._upsert(room, int(room.get("version", 0)))
        for room_id in [room_id for room_id in self._rooms if room_id not in listed]:
            del self._rooms[room_id]
            changed = True
        return changed
