"""Shared fixtures: every test gets its own SQLite file."""
from __future__ import annotations

import pytest
import pytest_asyncio

from meshroom.core.config import Settings
from meshroom.db.session import build_engine, build_sessionmaker, create_schema
from meshroom.main import create_app
from meshroom.services.connections import ConnectionRegistry
from meshroom.services.ledger import RoomLedger
from meshroom.services.membership import MembershipCoordinator
from meshroom.services.relay import SignalingRelay


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'meshroom.db'}",
        cors_allow_origins=[],
        default_max_participants=6,
        max_participants_limit=10,
    )


@pytest_asyncio.fixture
async def ledger(test_settings):
    engine = build_engine(test_settings)
    await create_schema(engine)
    yield RoomLedger(build_sessionmaker(engine), default_capacity=test_settings.default_max_participants)
    await engine.dispose()


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def coordinator(ledger, registry) -> MembershipCoordinator:
    return MembershipCoordinator(ledger, registry, SignalingRelay(registry))


@pytest.fixture
def app(test_settings):
    return create_app(test_settings)
