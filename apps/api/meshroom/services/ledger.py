"""Room Ledger: the persisted, authoritative list of participants per room.

Each public operation runs in its own transaction and expresses its
precondition inside a single statement (see ``repositories.rooms``), so
concurrent joins on the same room can never push it past capacity and a
reconnect never produces a second membership row.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from secrets import token_urlsafe
from typing import AsyncIterator, Awaitable, Callable

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.room import Room
from ..repositories import rooms as rooms_repo
from ..schemas.rooms import ParticipantInfo, RoomSummary

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    """Base class for ledger failures."""


class RoomNotFoundError(LedgerError):
    def __init__(self, room_id: str) -> None:
        super().__init__(f"Room {room_id} not found")
        self.room_id = room_id


class RoomFullError(LedgerError):
    def __init__(self, room_id: str, capacity: int) -> None:
        super().__init__(f"Room {room_id} is full ({capacity} participants)")
        self.room_id = room_id
        self.capacity = capacity


class NotAuthorizedError(LedgerError):
    def __init__(self, room_id: str, user_id: str) -> None:
        super().__init__(f"User {user_id} may not modify room {room_id}")
        self.room_id = room_id
        self.user_id = user_id


class CapacityConflictError(LedgerError):
    """Raised when a resize would leave the room over capacity."""


class LedgerUnavailableError(LedgerError):
    """Raised when the backing store cannot be reached."""


@dataclass(slots=True)
class JoinResult:
    room: RoomSummary
    participant: ParticipantInfo
    others: list[ParticipantInfo]
    reconnected: bool = False
    previous_connection_id: str | None = None


@dataclass(slots=True)
class LeaveResult:
    removed: bool
    remaining: int = 0
    room_deleted: bool = False
    room: RoomSummary | None = None
    remaining_connections: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RoomChange:
    """Emitted after commit for the lobby layer; ``room`` is None once deleted."""

    room_id: str
    version: int
    room: RoomSummary | None = None
    evicted: tuple[str, ...] = ()

    @property
    def deleted(self) -> bool:
        return self.room is None


ChangeListener = Callable[[RoomChange], Awaitable[None]]


def to_summary(room: Room) -> RoomSummary:
    """Convert an ORM room (participants loaded) into its broadcast form."""

    return RoomSummary(
        room_id=room.id,
        name=room.name,
        max_participants=room.capacity,
        created_by=room.created_by,
        is_active=room.is_active,
        version=room.version,
        created_at=room.created_at,
        participants=[ParticipantInfo.model_validate(p) for p in room.participants],
    )


class RoomLedger:
    """Transactional room membership store."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], *, default_capacity: int = 6) -> None:
        self._sessionmaker = sessionmaker
        self._default_capacity = default_capacity
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> None:
        """Register a coroutine called with every committed room change."""

        self._listeners.append(listener)

    async def create(self, *, name: str, created_by: str, capacity: int | None = None) -> RoomSummary:
        """Create an empty room with a fresh opaque id."""

        capacity = capacity or self._default_capacity
        if capacity < 2:
            raise ValueError("Room capacity must be at least 2")

        room_id = token_urlsafe(8)
        async with self._transaction() as session:
            await rooms_repo.insert_room(session, room_id=room_id, name=name, capacity=capacity, created_by=created_by)
            room = await rooms_repo.get_room(session, room_id)
            summary = to_summary(room)

        logger.info("Room %s (%s) created by %s, capacity %d", room_id, name, created_by, capacity)
        await self._emit(RoomChange(room_id=room_id, version=summary.version, room=summary))
        return summary

    async def join(self, room_id: str, *, user_id: str, display_name: str, connection_id: str) -> JoinResult:
        """Add ``user_id`` to the room, or rebind its connection when already a member."""

        try:
            result = await self._join_once(room_id, user_id, display_name, connection_id)
        except IntegrityError:
            # Two fresh joins for the same user raced; the loser is a reconnect.
            logger.info("Concurrent join for %s in %s, retrying as reconnect", user_id, room_id)
            result = await self._join_once(room_id, user_id, display_name, connection_id)

        if not result.reconnected:
            await self._emit(RoomChange(room_id=room_id, version=result.room.version, room=result.room))
        logger.info(
            "%s (%s) %s room %s via %s (%d/%d)",
            display_name,
            user_id,
            "rejoined" if result.reconnected else "joined",
            room_id,
            connection_id,
            result.room.participant_count,
            result.room.max_participants,
        )
        return result

    async def _join_once(self, room_id: str, user_id: str, display_name: str, connection_id: str) -> JoinResult:
        async with self._transaction() as session:
            reconnected = await rooms_repo.rebind_connection(
                session,
                room_id=room_id,
                user_id=user_id,
                connection_id=connection_id,
                display_name=display_name,
            )
            if not reconnected:
                if not await rooms_repo.reserve_seat(session, room_id):
                    room = await rooms_repo.get_room(session, room_id)
                    if room is None or not room.is_active:
                        raise RoomNotFoundError(room_id)
                    raise RoomFullError(room_id, room.capacity)
                await rooms_repo.add_participant(
                    session,
                    room_id=room_id,
                    user_id=user_id,
                    display_name=display_name,
                    connection_id=connection_id,
                )

            room = await rooms_repo.get_room(session, room_id)
            summary = to_summary(room)

        me = next(p for p in summary.participants if p.user_id == user_id)
        others = [p for p in summary.participants if p.user_id != user_id]
        previous = None
        if reconnected:
            previous = next(
                (p.previous_connection_id for p in room.participants if p.user_id == user_id),
                None,
            )
        return JoinResult(
            room=summary,
            participant=me,
            others=others,
            reconnected=reconnected,
            previous_connection_id=previous,
        )

    async def leave(self, room_id: str, *, user_id: str, connection_id: str | None = None) -> LeaveResult:
        """Remove a membership; the room is dropped in the same transaction once empty.

        With ``connection_id`` the removal only happens while the membership is
        still bound to that connection, so the late disconnect of a replaced
        connection leaves the reconnected participant alone.
        """

        async with self._transaction() as session:
            removed = await rooms_repo.remove_participant(
                session, room_id=room_id, user_id=user_id, connection_id=connection_id
            )
            if not removed:
                return LeaveResult(removed=False)

            await rooms_repo.release_seat(session, room_id)
            room = await rooms_repo.get_room(session, room_id)
            summary = to_summary(room)
            deleted = await rooms_repo.delete_if_empty(session, room_id)

        if deleted:
            logger.info("Room %s deleted (empty)", room_id)
            await self._emit(RoomChange(room_id=room_id, version=summary.version + 1))
            return LeaveResult(removed=True, remaining=0, room_deleted=True)

        logger.info("User %s left room %s, %d remaining", user_id, room_id, summary.participant_count)
        await self._emit(RoomChange(room_id=room_id, version=summary.version, room=summary))
        return LeaveResult(
            removed=True,
            remaining=summary.participant_count,
            room=summary,
            remaining_connections=[p.connection_id for p in summary.participants],
        )

    async def get(self, room_id: str) -> RoomSummary:
        async with self._transaction() as session:
            room = await rooms_repo.get_room(session, room_id)
            if room is None:
                raise RoomNotFoundError(room_id)
            return to_summary(room)

    async def list(self) -> list[RoomSummary]:
        async with self._transaction() as session:
            return [to_summary(room) for room in await rooms_repo.list_rooms(session)]

    async def update(
        self,
        room_id: str,
        *,
        requester: str,
        name: str | None = None,
        capacity: int | None = None,
    ) -> RoomSummary:
        """Rename or resize a room on behalf of its creator."""

        async with self._transaction() as session:
            room = await rooms_repo.get_room(session, room_id)
            if room is None:
                raise RoomNotFoundError(room_id)
            if room.created_by != requester:
                raise NotAuthorizedError(room_id, requester)
            if not await rooms_repo.update_settings(session, room_id=room_id, name=name, capacity=capacity):
                raise CapacityConflictError(f"Room {room_id} has more participants than {capacity}")
            summary = to_summary(await rooms_repo.get_room(session, room_id))

        await self._emit(RoomChange(room_id=room_id, version=summary.version, room=summary))
        return summary

    async def delete(self, room_id: str, *, requester: str) -> RoomSummary:
        """Delete a room on behalf of its creator, evicting every participant."""

        async with self._transaction() as session:
            room = await rooms_repo.get_room(session, room_id)
            if room is None:
                raise RoomNotFoundError(room_id)
            if room.created_by != requester:
                raise NotAuthorizedError(room_id, requester)
            summary = to_summary(room)
            evicted = await rooms_repo.delete_room(session, room_id)

        logger.info("Room %s deleted by %s, evicting %d", room_id, requester, len(evicted))
        await self._emit(
            RoomChange(room_id=room_id, version=summary.version + 1, evicted=tuple(evicted))
        )
        return summary

    async def purge_connections(self) -> int:
        """Forget every membership left behind by a previous server process.

        Connection ids do not outlive the process that issued them, so at
        startup every persisted participant is a ghost. Rooms that had
        occupants are dropped, as they would have been on the last leave;
        rooms that were never joined stay. Returns the number of memberships
        removed.
        """

        async with self._transaction() as session:
            dropped = await rooms_repo.purge_participants(session)
            room_ids = list(dropped)
            versions = await rooms_repo.room_versions(session, room_ids)
            await rooms_repo.delete_rooms(session, room_ids)

        removed = sum(len(connections) for connections in dropped.values())
        if removed:
            logger.warning("Purged %d stale memberships, deleted %d rooms", removed, len(room_ids))
        for room_id, connections in dropped.items():
            await self._emit(
                RoomChange(room_id=room_id, version=versions.get(room_id, 0) + 1, evicted=tuple(connections))
            )
        return removed

    async def set_media_state(
        self,
        room_id: str,
        *,
        user_id: str,
        is_muted: bool | None = None,
        is_video_off: bool | None = None,
    ) -> bool:
        """Persist a participant's mute / camera flags. Advisory, no broadcast of its own."""

        async with self._transaction() as session:
            return await rooms_repo.update_media_state(
                session,
                room_id=room_id,
                user_id=user_id,
                is_muted=is_muted,
                is_video_off=is_video_off,
            )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session, session.begin():
                yield session
        except OperationalError as exc:
            logger.error("Room store unavailable: %s", exc)
            raise LedgerUnavailableError(str(exc)) from exc

    async def _emit(self, change: RoomChange) -> None:
        for listener in list(self._listeners):
            try:
                await listener(change)
            except Exception:  # noqa: BLE001 - a lobby failure must not undo a committed change
                logger.exception("Room change listener failed for %s", change.room_id)

