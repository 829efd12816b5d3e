"""Tests for the peer topology manager."""
from __future__ import annotations

import asyncio

import pytest

from fakes import TransportPool, Wire, settle
from meshroom.client.negotiator import Role, SessionNegotiator, SessionState
from meshroom.client.topology import MAX_ORPHAN_CANDIDATES, PeerTopologyManager


class Harness:
    """A topology for local connection ``me`` whose signals land on a wire."""

    def __init__(self, local_id: str = "me") -> None:
        self.local_id = local_id
        self.wire = Wire()
        self.pool = TransportPool()
        self.lost: list[tuple[str, str]] = []
        self.topology = PeerTopologyManager(self.make_session, on_peer_lost=self.on_peer_lost)

    def make_session(self, remote_id: str, role: Role, on_lost) -> SessionNegotiator:
        session = SessionNegotiator(
            remote_id,
            role,
            transport_factory=self.pool.factory(self.local_id, remote_id),
            send=self.wire.sender(self.local_id),
            local_id=self.local_id,
            restart_grace=0.01,
            on_lost=on_lost,
        )
        self.wire.attach(self.local_id, session)
        return session

    async def on_peer_lost(self, connection_id: str, reason: str) -> None:
        self.lost.append((connection_id, reason))

    async def settle(self) -> None:
        await settle(*self.topology.sessions())


def participant(connection_id: str, user_id: str | None = None) -> dict:
    return {"connection_id": connection_id, "user_id": user_id or connection_id, "display_name": connection_id}


@pytest.mark.asyncio
async def test_existing_members_are_waited_on_and_new_members_are_offered_to():
    h = Harness()
    await h.topology.add_existing([participant("p-1"), participant("p-2")])
    await h.topology.add_joined(participant("p-3"))
    await h.settle()

    roles = {session.remote_id: session.role for session in h.topology.sessions()}
    assert roles == {"p-1": Role.RESPONDER, "p-2": Role.RESPONDER, "p-3": Role.INITIATOR}
    assert [(to, kind) for _, kind, to, _ in h.wire.sent] == [("p-3", "offer")]
    assert set(h.topology.peers) == {"p-1", "p-2", "p-3"}
    await h.topology.close()


@pytest.mark.asyncio
async def test_offer_before_join_notice_creates_one_responder():
    h = Harness()
    await h.topology.route({"type": "offer", "from": "p-9", "payload": {"type": "offer", "sdp": "v=0"}})
    session = h.topology.get("p-9")
    assert session is not None and session.role is Role.RESPONDER

    again = await h.topology.add_joined(participant("p-9"))
    await h.settle()

    assert again is session
    assert len(h.topology) == 1
    assert h.wire.count("answer") == 1
    assert h.wire.count("offer") == 0
    await h.topology.close()


@pytest.mark.asyncio
async def test_messages_from_unknown_peers_other_than_offers_are_dropped():
    h = Harness()
    await h.topology.route({"type": "answer", "from": "ghost", "payload": {"type": "answer", "sdp": "v=0"}})
    await h.topology.route({"type": "renegotiation-hint", "from": "ghost", "payload": {}})
    await h.topology.route({"type": "offer", "payload": {"type": "offer", "sdp": "v=0"}})

    assert len(h.topology) == 0
    assert h.pool.built == {}


@pytest.mark.asyncio
async def test_candidates_before_the_session_exists_are_kept_in_order():
    h = Harness()
    for n in range(1, 4):
        await h.topology.route(
            {"type": "ice-candidate", "from": "p-5", "payload": {"candidate": f"candidate:{n}", "sdpMid": "0"}}
        )
    assert len(h.topology) == 0

    await h.topology.route({"type": "offer", "from": "p-5", "payload": {"type": "offer", "sdp": "v=0"}})
    await h.settle()

    transport = h.pool.latest("me", "p-5")
    assert transport.applied_candidates == ["candidate:1", "candidate:2", "candidate:3"]
    await h.topology.close()


@pytest.mark.asyncio
async def test_reconnected_peer_gets_a_fresh_session():
    h = Harness()
    await h.topology.add_existing([participant("old-conn", "bob")])
    await h.settle()
    old = h.topology.get("old-conn")

    fresh = await h.topology.replace(participant("new-conn", "bob"), "old-conn")
    await h.settle()

    assert "old-conn" not in h.topology
    assert old.state is SessionState.CLOSED
    assert h.pool.latest("me", "old-conn").closed
    assert fresh.role is Role.INITIATOR
    assert h.topology.get("new-conn") is fresh
    assert ("new-conn", "offer") in [(to, kind) for _, kind, to, _ in h.wire.sent]
    await h.topology.close()


@pytest.mark.asyncio
async def test_replace_discards_a_session_already_under_the_new_id():
    h = Harness()
    await h.topology.route({"type": "offer", "from": "new-conn", "payload": {"type": "offer", "sdp": "v=0"}})
    early = h.topology.get("new-conn")

    fresh = await h.topology.replace(participant("new-conn", "bob"), None)

    assert fresh is not early
    assert early.state is SessionState.CLOSED
    assert len(h.topology) == 1
    await h.topology.close()


@pytest.mark.asyncio
async def test_remove_closes_the_session_and_forgets_the_peer():
    h = Harness()
    await h.topology.add_joined(participant("p-1"))
    await h.settle()

    await h.topology.remove("p-1")
    await h.topology.remove("p-1")

    assert len(h.topology) == 0
    assert h.topology.peers == {}
    assert h.pool.latest("me", "p-1").closed


@pytest.mark.asyncio
async def test_late_messages_from_a_departed_peer_are_dropped():
    h = Harness()
    await h.topology.add_joined(participant("p-1"))
    await h.settle()
    await h.topology.remove("p-1")

    await h.topology.route({"type": "ice-candidate", "from": "p-1", "payload": {"candidate": "candidate:1"}})
    await h.topology.route({"type": "offer", "from": "p-1", "payload": {"type": "offer", "sdp": "v=0"}})

    assert len(h.topology) == 0
    assert h.topology._orphan_candidates == {}
    assert len(h.pool.built[("me", "p-1")]) == 1


@pytest.mark.asyncio
async def test_held_candidates_are_bounded_per_sender():
    h = Harness()
    for n in range(MAX_ORPHAN_CANDIDATES + 10):
        await h.topology.route(
            {"type": "ice-candidate", "from": "p-5", "payload": {"candidate": f"candidate:{n}", "sdpMid": "0"}}
        )

    await h.topology.route({"type": "offer", "from": "p-5", "payload": {"type": "offer", "sdp": "v=0"}})
    await h.settle()

    applied = h.pool.latest("me", "p-5").applied_candidates
    assert applied == [f"candidate:{n}" for n in range(MAX_ORPHAN_CANDIDATES)]
    await h.topology.close()


@pytest.mark.asyncio
async def test_lost_peer_is_dropped_and_reported():
    h = Harness()
    await h.topology.add_joined(participant("p-1"))
    await h.settle()
    transport = h.pool.latest("me", "p-1")

    await h.topology.route({"type": "answer", "from": "p-1", "payload": {"type": "answer", "sdp": "v=0"}})
    await h.settle()
    await transport.report("failed")
    # Grace expires, one restart, then a second failure abandons the peer.
    await _wait_for(lambda: transport.calls.count("restart-offer") == 1)
    await transport.report("failed")
    await _wait_for(lambda: h.lost)

    assert h.lost == [("p-1", "ice-restart-failed")]
    assert "p-1" not in h.topology
    assert transport.closed


@pytest.mark.asyncio
async def test_mute_flags_update_peer_info():
    h = Harness()
    await h.topology.add_existing([participant("p-1")])
    h.topology.update_peer("p-1", is_muted=True)
    h.topology.update_peer("nobody", is_muted=True)

    assert h.topology.peers["p-1"]["is_muted"] is True
    assert "nobody" not in h.topology.peers
    await h.topology.close()


@pytest.mark.asyncio
async def test_reset_releases_everything():
    h = Harness()
    await h.topology.add_existing([participant("p-1"), participant("p-2")])
    await h.topology.route({"type": "ice-candidate", "from": "p-3", "payload": {"candidate": "candidate:1"}})

    await h.topology.reset()

    assert len(h.topology) == 0
    assert all(h.pool.latest("me", peer).closed for peer in ("p-1", "p-2"))

    await h.topology.route({"type": "offer", "from": "p-3", "payload": {"type": "offer", "sdp": "v=0"}})
    await h.settle()
    assert h.pool.latest("me", "p-3").applied_candidates == []
    await h.topology.close()


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
