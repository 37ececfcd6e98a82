import pytest

import run
from kiosk_attendance.database import KioskDatabase
from kiosk_attendance.sync_service import SYNC_CONFIG_KEY


@pytest.fixture
def cli(monkeypatch, settings):
    monkeypatch.setattr(run, "get_settings", lambda: settings)
    return run.main


def _stored_config(settings):
    return KioskDatabase(settings.db_path).get_setting(SYNC_CONFIG_KEY)


def test_configure_sync_keeps_earlier_settings(cli, settings, capsys):
    assert cli(["configure-sync", "--url", "http://central:3001", "--api-key", "secret"]) == 0
    assert cli(["configure-sync", "--enable"]) == 0
    assert _stored_config(settings) == {"server_url": "http://central:3001", "api_key": "secret", "enabled": True}

    assert cli(["configure-sync", "--disable"]) == 0
    assert _stored_config(settings) == {"server_url": "http://central:3001", "api_key": "secret", "enabled": False}
    assert "disabled -> http://central:3001" in capsys.readouterr().out


def test_sync_command_needs_an_active_config(cli, capsys):
    assert cli(["sync"]) == 1
    assert "disabled" in capsys.readouterr().out


def test_list_users_on_an_empty_kiosk(cli, capsys):
    assert cli(["list-users"]) == 0
    assert "No people enrolled." in capsys.readouterr().out
