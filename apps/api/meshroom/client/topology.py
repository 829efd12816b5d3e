"""Peer topology: one negotiator per other room member."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Iterable, Mapping

from .negotiator import LostCallback, Role, SessionNegotiator

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str, Role, LostCallback], SessionNegotiator]
PeerLostCallback = Callable[[str, str], Awaitable[None]]

MAX_ORPHAN_CANDIDATES = 64


def _connection_id(participant: Mapping[str, Any] | str) -> str:
    if isinstance(participant, str):
        return participant
    return str(participant["connection_id"])


class PeerTopologyManager:
    """Keep exactly one session per remote connection id.

    Who offers is decided by how a peer was learned about: peers listed in
    ``existing-participants`` wait for an offer, peers announced by
    ``user-joined`` or ``user-reconnected`` are offered to.
    """

    def __init__(self, session_factory: SessionFactory, *, on_peer_lost: PeerLostCallback | None = None) -> None:
        self._session_factory = session_factory
        self._on_peer_lost = on_peer_lost
        self._sessions: dict[str, SessionNegotiator] = {}
        self._peers: dict[str, dict[str, Any]] = {}
        self._orphan_candidates: dict[str, list[Any]] = defaultdict(list)
        self._departed: set[str] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    def get(self, connection_id: str) -> SessionNegotiator | None:
        return self._sessions.get(connection_id)

    def sessions(self) -> list[SessionNegotiator]:
        return list(self._sessions.values())

    @property
    def peers(self) -> dict[str, dict[str, Any]]:
        """Participant info of every peer with a session, keyed by connection id."""

        return dict(self._peers)

    async def add_existing(self, participants: Iterable[Mapping[str, Any]]) -> None:
        for participant in participants:
            connection_id = _connection_id(participant)
            self._peers[connection_id] = dict(participant)
            if connection_id not in self._sessions:
                await self._create(connection_id, Role.RESPONDER)

    async def add_joined(self, participant: Mapping[str, Any]) -> SessionNegotiator:
        connection_id = _connection_id(participant)
        self._peers[connection_id] = dict(participant)
        existing = self._sessions.get(connection_id)
        if existing is not None:
            # An early offer already created the session.
            return existing
        return await self._create(connection_id, Role.INITIATOR)

    async def replace(self, participant: Mapping[str, Any], previous_connection_id: str | None) -> SessionNegotiator:
        """Drop whatever we had for this peer, healthy or not, and offer afresh."""

        connection_id = _connection_id(participant)
        if previous_connection_id:
            await self.remove(previous_connection_id)
        await self._discard(connection_id)
        self._peers[connection_id] = dict(participant)
        return await self._create(connection_id, Role.INITIATOR)

    async def remove(self, connection_id: str) -> None:
        self._departed.add(connection_id)
        self._orphan_candidates.pop(connection_id, None)
        self._peers.pop(connection_id, None)
        await self._discard(connection_id)

    async def route(self, message: Mapping[str, Any]) -> None:
        """Hand a relayed message to the session of its sender."""

        kind = message.get("type")
        sender = message.get("from")
        payload = message.get("payload")
        if not sender:
            return

        session = self._sessions.get(sender)
        if session is None:
            if sender in self._departed:
                # Connection ids are never reused once the server says they left.
                logger.debug("Dropping %s from departed peer %s", kind, sender)
                return
            if kind == "offer":
                session = await self._create(sender, Role.RESPONDER)
            elif kind == "ice-candidate":
                self._hold_candidate(sender, payload)
                return
            else:
                logger.debug("Dropping %s from unknown peer %s", kind, sender)
                return
        session.deliver(kind, payload)

    def update_peer(self, connection_id: str, **changes: Any) -> None:
        if connection_id in self._peers:
            self._peers[connection_id].update(changes)

    async def reset(self) -> None:
        """Release every session, e.g. after our own connection id changed."""

        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._peers.clear()
        self._orphan_candidates.clear()
        self._departed.clear()
        if sessions:
            results = await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)
            for session, result in zip(sessions, results):
                if isinstance(result, Exception):
                    logger.warning("Closing session with %s failed: %s", session.remote_id, result)

    async def close(self) -> None:
        await self.reset()

    async def _create(self, connection_id: str, role: Role) -> SessionNegotiator:
        self._departed.discard(connection_id)
        session = self._session_factory(connection_id, role, self._session_lost)
        self._sessions[connection_id] = session
        await session.start()
        for payload in self._orphan_candidates.pop(connection_id, []):
            session.deliver("ice-candidate", payload)
        logger.info("Peer session with %s created as %s", connection_id, role.value)
        return session

    def _hold_candidate(self, sender: str, payload: Any) -> None:
        """Keep a candidate that outran its offer, up to a bound per sender."""

        held = self._orphan_candidates[sender]
        if len(held) >= MAX_ORPHAN_CANDIDATES:
            logger.debug("Dropping candidate from %s: %d already held", sender, len(held))
            return
        held.append(payload)

    async def _discard(self, connection_id: str) -> None:
        session = self._sessions.pop(connection_id, None)
        if session is not None:
            await session.close()
            logger.info("Peer session with %s discarded", connection_id)

    async def _session_lost(self, connection_id: str, reason: str) -> None:
        await self._discard(connection_id)
        self._peers.pop(connection_id, None)
        if self._on_peer_lost is not None:
            await self._on_peer_lost(connection_id, reason)
