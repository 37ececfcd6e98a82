from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent


class KioskSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KIOSK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Kiosk Attendance"
    data_dir: Path = BASE_DIR / "data"
    db_filename: str = "kiosk.db"
    log_dir: Path = BASE_DIR / "logs"
    log_level: str = "INFO"
    log_to_file: bool = True

    # Webcam settings
    camera_index: int = 0
    frame_width: int = 720
    frame_height: int = 1280
    jpeg_quality: int = 80

    # Recognition settings
    model_name: str = "buffalo_l"
    detection_size: int = 320
    detection_score_threshold: float = 0.5
    descriptor_scale: float = Field(default=0.55, gt=0)
    match_distance_threshold: float = 0.5
    matcher_threshold: float = 0.6

    # Decision pipeline
    poll_interval_seconds: float = 0.25
    match_cooldown_seconds: float = 5.0
    unknown_streak_required: int = 3
    unknown_alert_cooldown_seconds: float = 10.0

    # Attendance rules
    recent_mark_guard_seconds: float = 10.0
    live_window_seconds: float = 15.0

    # Sync
    default_server_url: str = "http://localhost:3001"
    autosync_interval_seconds: float = Field(default=300.0, ge=5.0)
    request_timeout_seconds: float = 15.0
    health_timeout_seconds: float = 5.0
    proactive_sync_on_enroll: bool = True

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename


@lru_cache(maxsize=1)
def get_settings() -> KioskSettings:
    return KioskSettings()
