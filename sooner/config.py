"""Runtime configuration loaded from the environment (``SOONER_*``) or ``.env``."""

import logging
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SOONER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = "sqlite:///data/queue.db"
    log_level: str = "INFO"

    # Background sweep
    sweeper_enabled: bool = True
    sweep_interval_seconds: float = 30.0
    near_turn_window: int = 5
    arrival_grace_minutes: int = 45

    # Dashboard stream keep-alive
    heartbeat_seconds: float = 25.0

    wait_minutes_per_group: int = 8
    min_party_size: int = 1
    max_party_size: int = 12

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return (value or "INFO").upper()

    @field_validator("sweep_interval_seconds", "heartbeat_seconds")
    @classmethod
    def positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval must be positive")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()


def setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    # force=True: uvicorn configures the root logger before the app starts
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
