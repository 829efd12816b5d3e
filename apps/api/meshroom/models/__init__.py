"""Expose ORM models."""
from .room import Participant, Room

__all__ = [
    "Participant",
    "Room",
]
