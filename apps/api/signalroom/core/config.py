"""Application configuration for the signaling service and peers."""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    # 0 disables the cap and lets rooms grow without bound.
    room_capacity: int = Field(default=2, ge=0)
    initiator_policy: Literal["promote", "retain"] = Field(default="promote")

    signaling_url: str = Field(default="ws://localhost:8000/api/signaling")
    signaling_open_timeout: float = Field(default=20.0, gt=0)
    data_channel_label: str = Field(default="signalroom-data")

    stun_urls: list[str] = Field(default_factory=lambda: [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
        "stun:stun3.l.google.com:19302",
        "stun:stun4.l.google.com:19302",
    ])
    turn_url: str = Field(default="")
    turn_username: str = Field(default="")
    turn_credential: str = Field(default="")

    @field_validator("cors_allow_origins", "stun_urls", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value

    @property
    def has_turn_server(self) -> bool:
        return all([self.turn_url, self.turn_username, self.turn_credential])


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
