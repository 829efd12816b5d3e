"""Create the database schema and seed a demo room for development."""
from __future__ import annotations

import asyncio

from meshroom.core.config import get_settings
from meshroom.db.session import build_engine, build_sessionmaker, create_schema
from meshroom.services.ledger import RoomLedger

DEMO_ROOMS = [
	{"name": "Daily standup", "capacity": 6, "created_by": "seed"},
	{"name": "Pairing", "capacity": 2, "created_by": "seed"},
]


async def seed_rooms(ledger: RoomLedger) -> None:
	"""Create demo rooms unless rooms with the same names are already open."""

	existing = {room.name for room in await ledger.list()}
	for room in DEMO_ROOMS:
		if room["name"] in existing:
			continue
		summary = await ledger.create(name=room["name"], capacity=room["capacity"], created_by=room["created_by"])
		print(f"Created room {summary.name!r} ({summary.room_id})")


async def main() -> None:
	settings = get_settings()
	engine = build_engine(settings)
	try:
		await create_schema(engine)
		await seed_rooms(RoomLedger(build_sessionmaker(engine), default_capacity=settings.default_max_participants))
	finally:
		await engine.dispose()
	print("Database schema ensured and demo rooms seeded.")


if __name__ == "__main__":
	asyncio.run(main())
