from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CENTRAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Kiosk Attendance Central Server"
    api_prefix: str = "/api"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./central_server.db"

    # Shared secret the kiosks send as a bearer token. Empty disables the check.
    api_key: str = ""
    public_key: str = ""

    default_device_status: str = "pending"

    cors_origins_raw: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
