"""Application configuration for the signaling server."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ICE_SERVERS: list[dict[str, object]] = [
    {"urls": ["stun:stun.l.google.com:19302"]},
    {"urls": ["stun:stun1.l.google.com:19302"]},
]


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")

    database_url: str = Field(default="sqlite+aiosqlite:///./meshroom.db")
    database_echo: bool = Field(default=False)

    default_max_participants: int = Field(default=6, ge=2)
    max_participants_limit: int = Field(default=50, ge=2)

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    # Liveness of signaling sockets; a silent client is treated as gone once
    # the ping goes unanswered for ws_ping_timeout seconds.
    ws_ping_interval: float = Field(default=20.0, gt=0)
    ws_ping_timeout: float = Field(default=20.0, gt=0)

    ice_servers: list[dict[str, object]] = Field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str) and not value.strip().startswith("["):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()
