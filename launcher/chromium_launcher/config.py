"""Declarative configuration for the Chromium launcher."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_ROOT = Path(__file__).resolve().parent
DEFAULT_CACHE_PATH = PACKAGE_ROOT.parent / ".local-chromium"
DEFAULT_DOWNLOAD_HOST = "https://storage.googleapis.com"
DEFAULT_REVISION = "724623"


class LauncherSettings(BaseSettings):
    """Runtime settings for the launcher service and library helpers."""

    model_config = SettingsConfigDict(env_prefix="LAUNCHER_", env_file=".env", extra="ignore")

    host: str = "0.0.0.0"
    port: int = 8080
    metrics_endpoint: str = "/metrics"
    cors_origins: list[str] = Field(default_factory=list)

    revision: str = DEFAULT_REVISION
    download_host: str = DEFAULT_DOWNLOAD_HOST
    cache_path: Path = DEFAULT_CACHE_PATH
    # ``None`` means "detect from the running interpreter".
    platform: str | None = None

    launch_timeout_seconds: Annotated[float, Field(ge=0.0, le=600.0, allow_inf_nan=False)] = 30.0
    grace_period_seconds: Annotated[float, Field(gt=0.0, le=120.0, allow_inf_nan=False)] = 5.0

    cleanup_interval: Annotated[int, Field(gt=0, le=3600)] = 15
    idle_ttl_seconds: Annotated[int, Field(ge=30, le=86400)] = 600
    headless: bool = True

    @field_validator("download_host")
    @classmethod
    def _strip_host(cls, value: str) -> str:
        value = value.rstrip("/")
        if not value:
            raise ValueError("download_host must not be empty")
        return value

    @field_validator("revision")
    @classmethod
    def _validate_revision(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("revision must not be empty")
        return value


@lru_cache
def load_settings() -> LauncherSettings:
    """Return cached settings instance."""

    return LauncherSettings()


__all__ = ["LauncherSettings", "load_settings", "DEFAULT_CACHE_PATH", "DEFAULT_DOWNLOAD_HOST"]
