"""Configuration for the Python room client."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.config import DEFAULT_ICE_SERVERS


class ClientSettings(BaseSettings):
    """Client runtime configuration, read from ``MESHROOM_CLIENT_*`` variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MESHROOM_CLIENT_",
        case_sensitive=False,
        extra="ignore",
    )

    signaling_url: str = Field(default="ws://localhost:8000/api/rtc/signaling")
    ice_servers: list[dict[str, object]] = Field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))

    # Delay between a peer transport reporting "failed" and the ICE restart.
    restart_grace_seconds: float = Field(default=2.0, gt=0)

    reconnect_attempts: int = Field(default=10, ge=0)
    reconnect_delay_seconds: float = Field(default=1.0, ge=0)

    default_quality: str = Field(default="high")
    video_device: str | None = Field(default=None)
    video_format: str = Field(default="v4l2")
    audio_device: str | None = Field(default=None)
    audio_format: str = Field(default="pulse")


@lru_cache
def get_client_settings() -> ClientSettings:
    """Return cached client settings."""

    return ClientSettings()
