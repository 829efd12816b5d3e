"""Signaling relay: forwards negotiation payloads between two connections."""
from __future__ import annotations

import logging

from ..schemas.signaling import Relayed
from .connections import ConnectionRegistry

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Store-less point-to-point forwarding.

    The payload is passed through untouched; a destination that no longer
    exists is expected under normal churn and the message is simply dropped.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    async def forward(self, sender_id: str, message: Relayed) -> bool:
        envelope = {"type": message.type, "from": sender_id, "payload": message.payload}
        delivered = await self._registry.send_to(message.to, envelope)
        if not delivered:
            logger.debug("Dropped %s from %s: destination %s is gone", message.type, sender_id, message.to)
        return delivered
