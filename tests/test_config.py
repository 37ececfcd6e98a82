import pytest
from pydantic import ValidationError

from kiosk_attendance.config import KioskSettings


def test_defaults_follow_kiosk_timings(tmp_path):
    settings = KioskSettings(data_dir=tmp_path)
    assert settings.poll_interval_seconds == 0.25
    assert settings.match_distance_threshold == 0.5
    assert settings.matcher_threshold == 0.6
    assert settings.match_cooldown_seconds == 5
    assert settings.unknown_streak_required == 3
    assert settings.unknown_alert_cooldown_seconds == 10
    assert settings.autosync_interval_seconds == 300
    assert settings.health_timeout_seconds == 5
    assert settings.db_path == tmp_path / "kiosk.db"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("KIOSK_MATCH_DISTANCE_THRESHOLD", "0.45")
    monkeypatch.setenv("KIOSK_CAMERA_INDEX", "2")
    settings = KioskSettings()
    assert settings.match_distance_threshold == 0.45
    assert settings.camera_index == 2


def test_autosync_interval_has_a_floor():
    with pytest.raises(ValidationError):
        KioskSettings(autosync_interval_seconds=1)
