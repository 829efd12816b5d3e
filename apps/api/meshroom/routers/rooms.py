"""Room CRUD endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..schemas.rooms import RoomCreateRequest, RoomListResponse, RoomSummary, RoomUpdateRequest
from ..services.ledger import (
    CapacityConflictError,
    LedgerUnavailableError,
    NotAuthorizedError,
    RoomLedger,
    RoomNotFoundError,
)
from .deps import Identity, get_identity, get_ledger

router = APIRouter()


def _capacity(request: Request, requested: int | None) -> int | None:
    if requested is None:
        return None
    limit = request.app.state.settings.max_participants_limit
    if requested > limit:
        raise HTTPException(status_code=422, detail=f"max_participants may not exceed {limit}")
    return requested


@router.post("", response_model=RoomSummary, status_code=status.HTTP_201_CREATED)
async def create_room(
    payload: RoomCreateRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    ledger: RoomLedger = Depends(get_ledger),
) -> RoomSummary:
    """Create an empty room owned by the caller."""

    capacity = _capacity(request, payload.max_participants)
    try:
        return await ledger.create(name=payload.name, created_by=identity.user_id, capacity=capacity)
    except LedgerUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Room store unavailable") from exc


@router.get("", response_model=RoomListResponse)
async def list_rooms(ledger: RoomLedger = Depends(get_ledger)) -> RoomListResponse:
    try:
        rooms = await ledger.list()
    except LedgerUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Room store unavailable") from exc
    return RoomListResponse(count=len(rooms), rooms=rooms)


@router.get("/{room_id}", response_model=RoomSummary)
async def get_room(room_id: str, ledger: RoomLedger = Depends(get_ledger)) -> RoomSummary:
    try:
        return await ledger.get(room_id)
    except RoomNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except LedgerUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Room store unavailable") from exc


@router.patch("/{room_id}", response_model=RoomSummary)
async def update_room(
    room_id: str,
    payload: RoomUpdateRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    ledger: RoomLedger = Depends(get_ledger),
) -> RoomSummary:
    """Rename or resize a room. Only its creator may do this."""

    capacity = _capacity(request, payload.max_participants)
    try:
        return await ledger.update(room_id, requester=identity.user_id, name=payload.name, capacity=capacity)
    except RoomNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except NotAuthorizedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except CapacityConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except LedgerUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Room store unavailable") from exc


@router.delete("/{room_id}", response_model=RoomSummary)
async def delete_room(
    room_id: str,
    identity: Identity = Depends(get_identity),
    ledger: RoomLedger = Depends(get_ledger),
) -> RoomSummary:
    """Delete a room and evict everyone in it."""

    try:
        return await ledger.delete(room_id, requester=identity.user_id)
    except RoomNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except NotAuthorizedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except LedgerUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Room store unavailable") from exc
