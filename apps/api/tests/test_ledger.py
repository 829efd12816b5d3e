"""Tests for the room ledger."""
from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from meshroom.db.session import build_engine, build_sessionmaker
from meshroom.models.room import Participant, Room
from meshroom.services.ledger import (
    CapacityConflictError,
    LedgerUnavailableError,
    NotAuthorizedError,
    RoomChange,
    RoomFullError,
    RoomLedger,
    RoomNotFoundError,
)


async def count_entries(ledger: RoomLedger, room_id: str, user_id: str | None = None) -> int:
    async with ledger._sessionmaker() as session:
        stmt = select(func.count()).select_from(Participant).where(Participant.room_id == room_id)
        if user_id is not None:
            stmt = stmt.where(Participant.user_id == user_id)
        return (await session.execute(stmt)).scalar_one()


async def room_exists(ledger: RoomLedger, room_id: str) -> bool:
    async with ledger._sessionmaker() as session:
        return await session.get(Room, room_id) is not None


@pytest.mark.asyncio
async def test_join_returns_other_participants(ledger):
    room = await ledger.create(name="standup", created_by="alice", capacity=2)
    assert room.participant_count == 0

    first = await ledger.join(room.room_id, user_id="alice", display_name="Alice", connection_id="c-a")
    assert first.others == []
    assert first.reconnected is False
    assert first.participant.connection_id == "c-a"

    second = await ledger.join(room.room_id, user_id="bob", display_name="Bob", connection_id="c-b")
    assert [p.user_id for p in second.others] == ["alice"]
    assert second.room.participant_count == 2


@pytest.mark.asyncio
async def test_join_unknown_room(ledger):
    with pytest.raises(RoomNotFoundError):
        await ledger.join("missing", user_id="alice", display_name="Alice", connection_id="c-a")


@pytest.mark.asyncio
async def test_full_room_rejects_and_keeps_membership(ledger):
    room = await ledger.create(name="pair", created_by="alice", capacity=2)
    await ledger.join(room.room_id, user_id="alice", display_name="Alice", connection_id="c-a")
    await ledger.join(room.room_id, user_id="bob", display_name="Bob", connection_id="c-b")

    with pytest.raises(RoomFullError) as excinfo:
        await ledger.join(room.room_id, user_id="carol", display_name="Carol", connection_id="c-c")

    assert excinfo.value.capacity == 2
    snapshot = await ledger.get(room.room_id)
    assert sorted(p.user_id for p in snapshot.participants) == ["alice", "bob"]


@pytest.mark.asyncio
@pytest.mark.parametrize("capacity,attempts", [(2, 6), (3, 10)])
async def test_concurrent_joins_never_exceed_capacity(ledger, capacity, attempts):
    room = await ledger.create(name="rush", created_by="host", capacity=capacity)

    results = await asyncio.gather(
        *(
            ledger.join(room.room_id, user_id=f"user-{n}", display_name=f"User {n}", connection_id=f"c-{n}")
            for n in range(attempts)
        ),
        return_exceptions=True,
    )

    joined = [r for r in results if not isinstance(r, BaseException)]
    rejected = [r for r in results if isinstance(r, BaseException)]
    assert len(joined) == capacity
    assert all(isinstance(r, RoomFullError) for r in rejected)
    assert await count_entries(ledger, room.room_id) == capacity
    assert (await ledger.get(room.room_id)).participant_count == capacity


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "leave_order",
    [["alice", "bob", "carol"], ["carol", "alice", "bob"], ["bob", "carol", "alice"]],
)
async def test_room_removed_after_last_leave(ledger, leave_order):
    room = await ledger.create(name="short-lived", created_by="alice", capacity=3)
    for user in ("alice", "bob", "carol"):
        await ledger.join(room.room_id, user_id=user, display_name=user.title(), connection_id=f"c-{user}")

    results = [await ledger.leave(room.room_id, user_id=user) for user in leave_order]

    assert [r.remaining for r in results] == [2, 1, 0]
    assert [r.room_deleted for r in results] == [False, False, True]
    assert not await room_exists(ledger, room.room_id)
    with pytest.raises(RoomNotFoundError):
        await ledger.get(room.room_id)


@pytest.mark.asyncio
async def test_reconnect_updates_connection_in_place(ledger):
    room = await ledger.create(name="flaky", created_by="alice", capacity=2)
    await ledger.join(room.room_id, user_id="alice", display_name="Alice", connection_id="c-1")
    await ledger.join(room.room_id, user_id="bob", display_name="Bob", connection_id="c-b")

    again = await ledger.join(room.room_id, user_id="alice", display_name="Alice", connection_id="c-2")

    assert again.reconnected is True
    assert again.previous_connection_id == "c-1"
    assert again.participant.connection_id == "c-2"
    assert await count_entries(ledger, room.room_id, "alice") == 1
    # A reconnect does not take a seat, even in a full room.
    assert again.room.participant_count == 2


@pytest.mark.asyncio
async def test_concurrent_rejoins_of_same_user_leave_one_entry(ledger):
    room = await ledger.create(name="double-click", created_by="alice", capacity=4)

    await asyncio.gather(
        *(
            ledger.join(room.room_id, user_id="alice", display_name="Alice", connection_id=f"c-{n}")
            for n in range(4)
        )
    )

    assert await count_entries(ledger, room.room_id, "alice") == 1
    assert (await ledger.get(room.room_id)).participant_count == 1


@pytest.mark.asyncio
async def test_stale_connection_leave_is_ignored(ledger):
    room = await ledger.create(name="flaky", created_by="alice", capacity=2)
    await ledger.join(room.room_id, user_id="alice", display_name="Alice", connection_id="c-old")
    await ledger.join(room.room_id, user_id="alice", display_name="Alice", connection_id="c-new")

    stale = await ledger.leave(room.room_id, user_id="alice", connection_id="c-old")
    assert stale.removed is False
    assert await count_entries(ledger, room.room_id, "alice") == 1

    current = await ledger.leave(room.room_id, user_id="alice", connection_id="c-new")
    assert current.removed is True
    assert current.room_deleted is True


@pytest.mark.asyncio
async def test_update_and_delete_are_creator_only(ledger):
    room = await ledger.create(name="owned", created_by="alice", capacity=4)
    await ledger.join(room.room_id, user_id="bob", display_name="Bob", connection_id="c-b")
    await ledger.join(room.room_id, user_id="carol", display_name="Carol", connection_id="c-c")
    await ledger.join(room.room_id, user_id="dave", display_name="Dave", connection_id="c-d")

    with pytest.raises(NotAuthorizedError):
        await ledger.update(room.room_id, requester="bob", name="mine now")
    with pytest.raises(NotAuthorizedError):
        await ledger.delete(room.room_id, requester="bob")
    with pytest.raises(CapacityConflictError):
        await ledger.update(room.room_id, requester="alice", capacity=2)

    renamed = await ledger.update(room.room_id, requester="alice", name="renamed", capacity=3)
    assert renamed.name == "renamed"
    assert renamed.max_participants == 3

    deleted = await ledger.delete(room.room_id, requester="alice")
    assert sorted(p.connection_id for p in deleted.participants) == ["c-b", "c-c", "c-d"]
    assert not await room_exists(ledger, room.room_id)
    assert await count_entries(ledger, room.room_id) == 0


@pytest.mark.asyncio
async def test_media_state_is_persisted(ledger):
    room = await ledger.create(name="quiet", created_by="alice", capacity=2)
    await ledger.join(room.room_id, user_id="alice", display_name="Alice", connection_id="c-a")

    assert await ledger.set_media_state(room.room_id, user_id="alice", is_muted=True)
    assert await ledger.set_media_state(room.room_id, user_id="alice", is_video_off=True)
    assert not await ledger.set_media_state(room.room_id, user_id="ghost", is_muted=True)

    (alice,) = (await ledger.get(room.room_id)).participants
    assert alice.is_muted is True
    assert alice.is_video_off is True


@pytest.mark.asyncio
async def test_listeners_see_increasing_versions(ledger):
    changes: list[RoomChange] = []

    async def record(change: RoomChange) -> None:
        changes.append(change)

    ledger.subscribe(record)
    room = await ledger.create(name="watched", created_by="alice", capacity=3)
    await ledger.join(room.room_id, user_id="alice", display_name="Alice", connection_id="c-a")
    await ledger.join(room.room_id, user_id="bob", display_name="Bob", connection_id="c-b")
    await ledger.join(room.room_id, user_id="bob", display_name="Bob", connection_id="c-b2")
    await ledger.leave(room.room_id, user_id="bob")
    await ledger.leave(room.room_id, user_id="alice")

    versions = [change.version for change in changes]
    assert versions == sorted(versions)
    assert len(set(versions)) == len(versions)
    # The reconnect is not a membership change.
    assert len(changes) == 5
    assert changes[-1].deleted
    assert [p.user_id for p in changes[2].room.participants] == ["alice", "bob"]


@pytest.mark.asyncio
async def test_failing_listener_does_not_undo_change(ledger):
    async def broken(change: RoomChange) -> None:
        raise RuntimeError("lobby down")

    ledger.subscribe(broken)
    room = await ledger.create(name="sturdy", created_by="alice", capacity=2)
    result = await ledger.join(room.room_id, user_id="alice", display_name="Alice", connection_id="c-a")
    assert result.participant.user_id == "alice"


@pytest.mark.asyncio
async def test_unreachable_store_raises_unavailable(tmp_path, test_settings):
    broken = test_settings.model_copy(
        update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nested' / 'x.db'}"}
    )
    engine = build_engine(broken)
    ledger = RoomLedger(build_sessionmaker(engine))
    try:
        with pytest.raises(LedgerUnavailableError):
            await ledger.list()
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_purge_connections_drops_ghost_memberships(ledger):
    occupied = await ledger.create(name="busy", created_by="alice", capacity=2)
    idle = await ledger.create(name="idle", created_by="carol", capacity=2)
    await ledger.join(occupied.room_id, user_id="alice", display_name="Alice", connection_id="c-a")
    await ledger.join(occupied.room_id, user_id="bob", display_name="Bob", connection_id="c-b")

    changes: list[RoomChange] = []

    async def record(change: RoomChange) -> None:
        changes.append(change)

    ledger.subscribe(record)
    assert await ledger.purge_connections() == 2

    assert not await room_exists(ledger, occupied.room_id)
    assert await count_entries(ledger, occupied.room_id) == 0
    assert await room_exists(ledger, idle.room_id)
    (change,) = changes
    assert change.room_id == occupied.room_id
    assert change.deleted
    assert sorted(change.evicted) == ["c-a", "c-b"]

    # Nothing left to purge.
    assert await ledger.purge_connections() == 0
    assert len(changes) == 1
