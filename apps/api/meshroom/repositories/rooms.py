"""Room repository helpers.

Every mutation here is one SQL statement whose WHERE clause carries the
precondition, so callers never read a value, decide, and write it back.
"""
from __future__ import annotations

from sqlalchemy import Select, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..models.room import Participant, Room

_NO_SYNC = {"synchronize_session": False}


async def insert_room(
    session: AsyncSession,
    *,
    room_id: str,
    name: str,
    capacity: int,
    created_by: str,
) -> Room:
    """Insert an empty room."""

    room = Room(id=room_id, name=name, capacity=capacity, created_by=created_by, participant_count=0, version=0)
    session.add(room)
    await session.flush()
    return room


async def get_room(session: AsyncSession, room_id: str) -> Room | None:
    """Return a room with its participants, bypassing stale identity-map state."""

    stmt: Select[tuple[Room]] = (
        select(Room)
        .where(Room.id == room_id)
        .options(selectinload(Room.participants))
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_rooms(session: AsyncSession) -> list[Room]:
    """Return active rooms, newest first."""

    stmt = (
        select(Room)
        .where(Room.is_active.is_(True))
        .options(selectinload(Room.participants))
        .order_by(Room.created_at.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def rebind_connection(
    session: AsyncSession,
    *,
    room_id: str,
    user_id: str,
    connection_id: str,
    display_name: str,
) -> bool:
    """Point an existing membership at a new connection. Returns False if there is none."""

    stmt = (
        update(Participant)
        .where(Participant.room_id == room_id, Participant.user_id == user_id)
        .values(
            previous_connection_id=Participant.connection_id,
            connection_id=connection_id,
            display_name=display_name,
        )
        .execution_options(**_NO_SYNC)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def reserve_seat(session: AsyncSession, room_id: str) -> bool:
    """Take one seat if the room is active and below capacity."""

    stmt = (
        update(Room)
        .where(
            Room.id == room_id,
            Room.is_active.is_(True),
            Room.participant_count < Room.capacity,
        )
        .values(participant_count=Room.participant_count + 1, version=Room.version + 1)
        .execution_options(**_NO_SYNC)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def add_participant(
    session: AsyncSession,
    *,
    room_id: str,
    user_id: str,
    display_name: str,
    connection_id: str,
) -> None:
    """Insert the membership row for a seat reserved in the same transaction."""

    session.add(
        Participant(
            room_id=room_id,
            user_id=user_id,
            display_name=display_name,
            connection_id=connection_id,
        )
    )
    await session.flush()


async def remove_participant(
    session: AsyncSession,
    *,
    room_id: str,
    user_id: str,
    connection_id: str | None = None,
) -> bool:
    """Delete a membership, optionally only while it is bound to ``connection_id``."""

    stmt = delete(Participant).where(Participant.room_id == room_id, Participant.user_id == user_id)
    if connection_id is not None:
        stmt = stmt.where(Participant.connection_id == connection_id)
    result = await session.execute(stmt.execution_options(**_NO_SYNC))
    return result.rowcount == 1


async def release_seat(session: AsyncSession, room_id: str) -> None:
    stmt = (
        update(Room)
        .where(Room.id == room_id, Room.participant_count > 0)
        .values(participant_count=Room.participant_count - 1, version=Room.version + 1)
        .execution_options(**_NO_SYNC)
    )
    await session.execute(stmt)


async def delete_if_empty(session: AsyncSession, room_id: str) -> bool:
    """Drop the room if nobody is left in it."""

    stmt = delete(Room).where(Room.id == room_id, Room.participant_count == 0).execution_options(**_NO_SYNC)
    result = await session.execute(stmt)
    return result.rowcount == 1


async def purge_participants(session: AsyncSession) -> dict[str, list[str]]:
    """Delete every membership row, returning the dropped connection ids per room."""

    result = await session.execute(
        delete(Participant).returning(Participant.room_id, Participant.connection_id).execution_options(**_NO_SYNC)
    )
    dropped: dict[str, list[str]] = {}
    for room_id, connection_id in result.all():
        dropped.setdefault(room_id, []).append(connection_id)
    return dropped


async def room_versions(session: AsyncSession, room_ids: list[str]) -> dict[str, int]:
    if not room_ids:
        return {}
    result = await session.execute(select(Room.id, Room.version).where(Room.id.in_(room_ids)))
    return {room_id: version for room_id, version in result.all()}


async def delete_rooms(session: AsyncSession, room_ids: list[str]) -> None:
    if room_ids:
        await session.execute(delete(Room).where(Room.id.in_(room_ids)).execution_options(**_NO_SYNC))


async def delete_room(session: AsyncSession, room_id: str) -> list[str]:
    """Delete a room and its memberships, returning the evicted connection ids."""

    evicted = await session.execute(
        delete(Participant)
        .where(Participant.room_id == room_id)
        .returning(Participant.connection_id)
        .execution_options(**_NO_SYNC)
    )
    connection_ids = list(evicted.scalars().all())
    await session.execute(delete(Room).where(Room.id == room_id).execution_options(**_NO_SYNC))
    return connection_ids


async def update_settings(
    session: AsyncSession,
    *,
    room_id: str,
    name: str | None,
    capacity: int | None,
) -> bool:
    """Rename or resize a room; a resize below the current occupancy matches no row."""

    values: dict[str, object] = {"version": Room.version + 1}
    stmt = update(Room).where(Room.id == room_id)
    if name is not None:
        values["name"] = name
    if capacity is not None:
        values["capacity"] = capacity
        stmt = stmt.where(Room.participant_count <= capacity)
    result = await session.execute(stmt.values(**values).execution_options(**_NO_SYNC))
    return result.rowcount == 1


async def update_media_state(
    session: AsyncSession,
    *,
    room_id: str,
    user_id: str,
    is_muted: bool | None = None,
    is_video_off: bool | None = None,
) -> bool:
    """Persist mute / camera-off flags for a participant."""

    values: dict[str, object] = {}
    if is_muted is not None:
        values["is_muted"] = is_muted
    if is_video_off is not None:
        values["is_video_off"] = is_video_off
    if not values:
        return False
    stmt = (
        update(Participant)
        .where(Participant.room_id == room_id, Participant.user_id == user_id)
        .values(**values)
        .execution_options(**_NO_SYNC)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1
