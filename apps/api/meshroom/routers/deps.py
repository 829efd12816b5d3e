"""Request dependencies shared by routers."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

from ..services.ledger import RoomLedger


@dataclass(slots=True)
class Identity:
    """Caller identity as asserted by the upstream auth layer."""

    user_id: str
    display_name: str


def get_identity(
    x_user_id: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
) -> Identity:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return Identity(user_id=x_user_id, display_name=x_user_name or x_user_id)


def get_ledger(request: Request) -> RoomLedger:
    return request.app.state.ledger