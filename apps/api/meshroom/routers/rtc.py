"""RTC configuration and the signaling websocket."""
from __future__ import annotations

import logging

import anyio
from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect

from ..schemas.rooms import IceServersResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/ice-servers", response_model=IceServersResponse)
async def ice_servers(request: Request) -> IceServersResponse:
    """Return the ICE servers clients should use when building peer sessions."""

    return IceServersResponse(ice_servers=request.app.state.settings.ice_servers)


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """JSON signaling channel: membership events plus point-to-point relay."""

    coordinator = websocket.app.state.coordinator
    await websocket.accept()
    connection_id = await coordinator.connect(websocket.send_json)
    logger.info("Signaling connection %s opened", connection_id)

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "error", "code": "invalid-message", "message": "Frames must be JSON"})
                continue
            await coordinator.dispatch(connection_id, message)
    except WebSocketDisconnect:
        pass
    finally:
        # The server may be cancelling this task; the departure must still be recorded.
        with anyio.CancelScope(shield=True):
            await coordinator.disconnect(connection_id)
        logger.info("Signaling connection %s closed", connection_id)
