"""FastAPI application for the mesh room signaling server."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from .core.config import Settings, get_settings
from .db.session import build_engine, build_sessionmaker, create_schema
from .routers import rooms as rooms_router
from .routers import rtc as rtc_router
from .services.connections import ConnectionRegistry
from .services.ledger import RoomLedger
from .services.membership import MembershipCoordinator
from .services.relay import SignalingRelay

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Build the application; every stateful collaborator lives on ``app.state``."""

    app_settings = app_settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine = build_engine(app_settings)
        await create_schema(engine)
        registry = ConnectionRegistry()
        ledger = RoomLedger(build_sessionmaker(engine), default_capacity=app_settings.default_max_participants)
        # No socket survives a restart; a crash skips shutdown, so clean up here.
        await ledger.purge_connections()
        relay = SignalingRelay(registry)
        app.state.engine = engine
        app.state.registry = registry
        app.state.ledger = ledger
        app.state.coordinator = MembershipCoordinator(ledger, registry, relay)
        logger.info("Signaling server ready (%s)", app_settings.app_env)
        try:
            yield
        finally:
            registry.clear()
            await engine.dispose()
            logger.info("Signaling server stopped")

    app = FastAPI(title="Mesh Room Signaling API", version="0.1.0", lifespan=lifespan)
    app.state.settings = app_settings

    if app_settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=app_settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/api/health", tags=["meta"])
    async def health() -> dict[str, str]:
        """Simple liveness probe."""

        return {"status": "ok"}

    @app.head("/api/health", tags=["meta"])
    async def health_head() -> Response:
        """Allow HEAD for uptime monitors that only need the status code."""

        return Response(status_code=200)

    app.include_router(rooms_router.router, prefix="/api/rooms", tags=["rooms"])
    app.include_router(rtc_router.router, prefix="/api/rtc", tags=["rtc"])
    return app


configure_logging(get_settings().log_level)
app = create_app()


def run() -> None:
    """Serve with uvicorn; websocket pings bound how long a dead client stays in its room."""

    import uvicorn

    app_settings = get_settings()
    uvicorn.run(
        "meshroom.main:app",
        host=app_settings.host,
        port=app_settings.port,
        ws_ping_interval=app_settings.ws_ping_interval,
        ws_ping_timeout=app_settings.ws_ping_timeout,
        log_level=app_settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
