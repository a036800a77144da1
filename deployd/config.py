"""Configuration, sourced from ADM_* environment variables and an optional .env file."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ADM_", env_file=".env", env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = 8080
    repo_root: Path = Path("./builds")
    webhook_secret: SecretStr | None = None
    target_branch: str = "master"
    parallel_builds: int = 2
    queue_size: int = 16
    build_command: str = "docker-compose up --build -d"
    project_prefix: str = "adm"
    lock_timeout: float | None = None
    telegram_token: SecretStr | None = None
    telegram_groups: Annotated[list[int], NoDecode] = Field(default_factory=list)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "ADM_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("telegram_groups", mode="before")
    @classmethod
    def _parse_groups(cls, value):
        if value is None or value == "":
            return []
        if isinstance(value, str):
            value = value.strip()
            if value.startswith("["):
                return json.loads(value)
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("parallel_builds", "queue_size")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("lock_timeout")
    @classmethod
    def _positive_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("ADM_LOCK_TIMEOUT must be > 0 when set")
        return value

    @field_validator("webhook_secret", "telegram_token", "lock_timeout",
                     mode="before")
    @classmethod
    def _empty_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("build_command")
    @classmethod
    def _non_empty_command(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("ADM_BUILD_COMMAND must not be empty")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""

    settings = Settings()
    settings.repo_root = settings.repo_root.expanduser().resolve()
    return settings


__all__ = ["Settings", "get_settings"]
