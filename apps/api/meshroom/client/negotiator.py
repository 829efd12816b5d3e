"""Per-peer session negotiation.

Every transition of one session runs on that session's own worker task,
fed through an inbox queue, so offer/answer/candidate handling for one peer
is strictly sequential while different peers never wait on each other.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from .presets import QualityPreset
from .transport import IceCandidate, PeerTransport, SessionDescription, TransportEvents, TransportFactory

logger = logging.getLogger(__name__)

SendSignal = Callable[[str, str, Any], Awaitable[None]]
LostCallback = Callable[[str, str], Awaitable[None]]
TrackCallback = Callable[[str, Any], Awaitable[None]]


class SessionState(str, Enum):
    IDLE = "idle"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    STABLE = "stable"
    CONNECTED = "connected"
    ICE_RESTARTING = "ice-restarting"
    FAILED = "failed"
    CLOSED = "closed"


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class NegotiationError(RuntimeError):
    """A negotiation step with one peer failed."""


class SessionNegotiator:
    """Offer/answer and ICE exchange with a single remote connection."""

    def __init__(
        self,
        remote_id: str,
        role: Role,
        *,
        transport_factory: TransportFactory,
        send: SendSignal,
        tracks_provider: Callable[[], Mapping[str, Any]] = dict,
        preset_provider: Callable[[], QualityPreset | None] = lambda: None,
        local_id: str | None = None,
        restart_grace: float = 2.0,
        on_lost: LostCallback | None = None,
        on_track: TrackCallback | None = None,
    ) -> None:
        self.remote_id = remote_id
        self.role = role
        self.local_id = local_id
        self.restart_grace = restart_grace
        self._transport_factory = transport_factory
        self._send = send
        self._tracks_provider = tracks_provider
        self._preset_provider = preset_provider
        self._on_lost = on_lost
        self._on_track = on_track

        self._state = SessionState.IDLE
        self._transport: PeerTransport | None = None
        self._transport_state = "new"
        self._inbox: asyncio.Queue[tuple[str, Any, asyncio.Future | None]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._failure_timer: asyncio.Task[None] | None = None

        self._local_offer_pending = False
        self._remote_description_set = False
        self._pending_candidates: list[IceCandidate] = []
        self._restart_attempted = False
        self._closing = False

    def __repr__(self) -> str:
        return f"<SessionNegotiator {self.remote_id} {self.role.value} {self._state.value}>"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def polite(self) -> bool:
        """The polite side yields when both sides offer at once.

        Both peers derive it from the same pair of ids, so exactly one of them
        yields. Without a local id the responder is polite.
        """

        if self.local_id is not None and self.local_id != self.remote_id:
            return self.local_id < self.remote_id
        return self.role is Role.RESPONDER

    @property
    def pending_candidates(self) -> tuple[IceCandidate, ...]:
        return tuple(self._pending_candidates)

    @property
    def transport(self) -> PeerTransport | None:
        return self._transport

    async def start(self) -> None:
        """Create the transport and start processing; an initiator sends its offer."""

        if self._worker is not None:
            return
        events = TransportEvents(
            on_state_change=self._on_transport_state,
            on_local_candidate=self._on_local_candidate,
            on_track=self._on_remote_track,
        )
        self._transport = self._transport_factory(events, self._tracks_provider())
        # Ceilings go into the first offer or answer.
        await self._apply_limits()
        self._worker = asyncio.create_task(self._run(), name=f"negotiator-{self.remote_id}")
        if self.role is Role.INITIATOR:
            self._enqueue("negotiate", False)

    def deliver(self, message_type: str, payload: Any) -> None:
        """Queue a relayed message (offer, answer, ice-candidate, renegotiation-hint)."""

        if self._closing:
            return
        self._enqueue(message_type, payload)

    async def replace_tracks(self, tracks: Mapping[str, Any], preset: QualityPreset) -> None:
        """Swap outgoing tracks in place, in order with any negotiation in progress."""

        if self._closing:
            raise NegotiationError(f"Session with {self.remote_id} is closed")
        future = asyncio.get_running_loop().create_future()
        self._enqueue("replace-tracks", (dict(tracks), preset), future)
        await future

    async def send_hint(self, payload: Mapping[str, Any]) -> None:
        """Tell the peer our outgoing media changed. Advisory only."""

        await self._send("renegotiation-hint", self.remote_id, dict(payload))

    async def idle(self) -> None:
        """Wait until every queued transition has been processed."""

        await self._inbox.join()

    async def close(self) -> None:
        """Stop processing and release the transport. Safe to call more than once."""

        if self._closing and self._state is SessionState.CLOSED:
            return
        self._closing = True
        self._cancel_failure_timer()

        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            with suppress(asyncio.CancelledError):
                await worker

        while not self._inbox.empty():
            _, _, future = self._inbox.get_nowait()
            if future is not None and not future.done():
                future.set_exception(NegotiationError(f"Session with {self.remote_id} closed"))
            self._inbox.task_done()

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception:  # noqa: BLE001 - closing is best effort
                logger.exception("Closing transport for %s failed", self.remote_id)
        self._pending_candidates.clear()
        self._state = SessionState.CLOSED
        logger.debug("Session with %s closed", self.remote_id)

    def _enqueue(self, kind: str, payload: Any, future: asyncio.Future | None = None) -> None:
        self._inbox.put_nowait((kind, payload, future))

    async def _run(self) -> None:
        while not self._closing:
            kind, payload, future = await self._inbox.get()
            try:
                await self._handle(kind, payload)
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.set_exception(NegotiationError(f"Session with {self.remote_id} closed"))
                raise
            except Exception as exc:  # noqa: BLE001 - one peer's failure never stops the worker
                logger.warning("Negotiation step %s with %s failed: %s", kind, self.remote_id, exc)
                if future is not None and not future.done():
                    future.set_exception(NegotiationError(str(exc)))
            else:
                if future is not None and not future.done():
                    future.set_result(None)
            finally:
                self._inbox.task_done()

    async def _handle(self, kind: str, payload: Any) -> None:
        if kind == "negotiate":
            await self._negotiate(ice_restart=payload)
        elif kind == "offer":
            await self._apply_offer(SessionDescription.from_dict(payload))
        elif kind == "answer":
            await self._apply_answer(SessionDescription.from_dict(payload))
        elif kind == "ice-candidate":
            await self._apply_candidate(IceCandidate.from_dict(payload))
        elif kind == "renegotiation-hint":
            logger.debug("Peer %s changed its outgoing media: %s", self.remote_id, payload)
        elif kind == "local-candidate":
            await self._send("ice-candidate", self.remote_id, payload.to_dict())
        elif kind == "transport-state":
            await self._transport_state_changed(payload)
        elif kind == "failure-timeout":
            await self._failure_timeout()
        elif kind == "restart-timeout":
            await self._restart_timeout()
        elif kind == "replace-tracks":
            tracks, preset = payload
            await self._replace_tracks(tracks, preset)
        else:
            logger.debug("Ignoring %s for %s", kind, self.remote_id)

    async def _negotiate(self, *, ice_restart: bool) -> None:
        offer = await self._transport.create_offer(ice_restart=ice_restart)
        self._local_offer_pending = True
        if ice_restart:
            self._state = SessionState.ICE_RESTARTING
            self._cancel_failure_timer()
            self._failure_timer = asyncio.create_task(self._wait_failure(self.restart_grace, "restart-timeout"))
            # Candidates of the previous round belong to the abandoned transport.
            self._remote_description_set = False
            self._pending_candidates.clear()
        else:
            self._state = SessionState.HAVE_LOCAL_OFFER
        await self._send("offer", self.remote_id, offer.to_dict())
        logger.debug("Sent %soffer to %s", "restart " if ice_restart else "", self.remote_id)

    async def _apply_offer(self, offer: SessionDescription) -> None:
        if self._local_offer_pending:
            if not self.polite:
                logger.info("Offer collision with %s: keeping our offer", self.remote_id)
                return
            logger.info("Offer collision with %s: rolling back and answering", self.remote_id)
            await self._transport.rollback()
            self._local_offer_pending = False

        await self._transport.set_remote_description(offer)
        self._remote_description_set = True
        self._state = SessionState.HAVE_REMOTE_OFFER
        await self._flush_candidates()

        answer = await self._transport.create_answer()
        await self._send("answer", self.remote_id, answer.to_dict())
        self._state = SessionState.CONNECTED if self._transport_state == "connected" else SessionState.STABLE

    async def _apply_answer(self, answer: SessionDescription) -> None:
        if not self._local_offer_pending:
            logger.debug("Dropping unexpected answer from %s in %s", self.remote_id, self._state.value)
            return
        await self._transport.set_remote_description(answer)
        self._local_offer_pending = False
        self._remote_description_set = True
        await self._flush_candidates()
        self._state = SessionState.CONNECTED if self._transport_state == "connected" else SessionState.STABLE

    async def _apply_candidate(self, candidate: IceCandidate) -> None:
        if not self._remote_description_set:
            self._pending_candidates.append(candidate)
            return
        await self._transport.add_ice_candidate(candidate)

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            try:
                await self._transport.add_ice_candidate(candidate)
            except Exception as exc:  # noqa: BLE001 - a bad candidate must not drop the ones after it
                logger.warning("Candidate from %s rejected: %s", self.remote_id, exc)

    async def _transport_state_changed(self, state: str) -> None:
        self._transport_state = state
        if state == "connected":
            self._cancel_failure_timer()
            self._restart_attempted = False
            if not self._local_offer_pending:
                self._state = SessionState.CONNECTED
            logger.info("Peer %s connected", self.remote_id)
            await self._apply_limits()
        elif state == "failed":
            self._state = SessionState.FAILED
            if self._failure_timer is None:
                grace = self.restart_grace if self.role is Role.INITIATOR else self.restart_grace * 2
                self._failure_timer = asyncio.create_task(self._wait_failure(grace))
            logger.warning("Transport to %s failed", self.remote_id)
        elif state == "disconnected":
            logger.info("Transport to %s disconnected, waiting for it to recover or fail", self.remote_id)

    async def _wait_failure(self, grace: float, kind: str = "failure-timeout") -> None:
        await asyncio.sleep(grace)
        self._failure_timer = None
        if not self._closing:
            self._enqueue(kind, None)

    async def _failure_timeout(self) -> None:
        if self._transport_state != "failed":
            return
        if self.role is Role.INITIATOR and not self._restart_attempted:
            self._restart_attempted = True
            logger.info("Restarting ICE with %s", self.remote_id)
            await self._negotiate(ice_restart=True)
            return
        await self._abandon("ice-restart-failed" if self.role is Role.INITIATOR else "transport-failed")

    async def _restart_timeout(self) -> None:
        if self._transport_state == "connected":
            return
        await self._abandon("ice-restart-failed")

    async def _abandon(self, reason: str) -> None:
        logger.warning("Giving up on peer %s (%s)", self.remote_id, reason)
        self._closing = True
        self._state = SessionState.FAILED
        if self._on_lost is not None:
            await self._on_lost(self.remote_id, reason)
        else:
            await self.close()

    async def _replace_tracks(self, tracks: Mapping[str, Any], preset: QualityPreset) -> None:
        for kind, track in tracks.items():
            await self._transport.replace_track(kind, track)
        await self._transport.apply_encoding_limits(preset)

    async def _apply_limits(self) -> None:
        preset = self._preset_provider()
        if preset is not None:
            await self._transport.apply_encoding_limits(preset)

    def _cancel_failure_timer(self) -> None:
        timer, self._failure_timer = self._failure_timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _on_transport_state(self, state: str) -> None:
        if not self._closing:
            self._enqueue("transport-state", state)

    async def _on_local_candidate(self, candidate: IceCandidate) -> None:
        if not self._closing:
            self._enqueue("local-candidate", candidate)

    async def _on_remote_track(self, track: Any) -> None:
        if self._on_track is not None:
            await self._on_track(self.remote_id, track)
