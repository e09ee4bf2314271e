from __future__ import annotations

import pytest

from potluck import config
from potluck.config import load_settings, settings_as_dict, update_config_file


@pytest.fixture()
def isolated_env(monkeypatch, tmp_path):
    for key in list(config.DEFAULTS):
        monkeypatch.delenv(f"POTLUCK_{key.upper()}", raising=False)
    monkeypatch.delenv("POTLUCK_CONFIG", raising=False)
    monkeypatch.delenv("POTLUCK_DATA_DIR", raising=False)
    monkeypatch.delenv("POTLUCK_DB", raising=False)
    monkeypatch.setenv("POTLUCK_BASE_DIR", str(tmp_path))
    monkeypatch.setattr(config, "settings", config.settings)
    return tmp_path


def test_defaults_and_derived_paths(isolated_env):
    loaded = load_settings()

    assert loaded.data_dir == isolated_env / "data"
    assert loaded.database_path == isolated_env / "data" / "potluck.db"
    assert loaded.upload_dir == isolated_env / "data" / "uploads"
    assert loaded.json_store_path == isolated_env / "data" / "potluck.json"
    assert loaded.display_timezone == "America/New_York"
    assert loaded.calendar_window_years == 13
    assert loaded.recipe_max_bytes == 5 * 1024 * 1024
    assert loaded.shared_content_max_bytes == 10 * 1024 * 1024
    assert loaded.upload_backend == "database"
    assert loaded.data_dir.is_dir()


def test_toml_values_are_cast_and_env_wins(isolated_env, monkeypatch):
    (isolated_env / "potluck.toml").write_text(
        'store_backend = "JSON"\n'
        'calendar_feed_url = "webcal://example.com/feed.ics"\n'
        "app_port = 9000\n"
        'enable_scheduler = "off"\n'
    )
    monkeypatch.setenv("POTLUCK_APP_PORT", "9100")

    loaded = load_settings()

    assert loaded.store_backend == "json"
    assert loaded.calendar_feed_url == "webcal://example.com/feed.ics"
    assert loaded.app_port == 9100
    assert loaded.enable_scheduler is False


def test_invalid_backend_is_rejected(isolated_env, monkeypatch):
    monkeypatch.setenv("POTLUCK_UPLOAD_BACKEND", "s3")
    with pytest.raises(ValueError, match="Invalid upload_backend"):
        load_settings()


def test_update_config_file_merges_and_ignores_unknown_keys(isolated_env):
    path = isolated_env / "custom.toml"
    path.write_text("sqlite_vacuum_hours = 6\n")

    updated = update_config_file(
        {"display_timezone": "Europe/Berlin", "not_a_setting": 1}, path=path
    )

    text = path.read_text()
    assert 'display_timezone = "Europe/Berlin"' in text
    assert "sqlite_vacuum_hours = 6" in text
    assert "not_a_setting" not in text
    assert updated.display_timezone == "Europe/Berlin"
    assert updated.config_path == path


def test_settings_as_dict_includes_paths(isolated_env):
    payload = settings_as_dict(load_settings())
    assert payload["upload_dir"].endswith("uploads")
    assert payload["store_backend"] == "sql"


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("DISPLAY_TIMEZONE", "Mars/Olympus", "Invalid display_timezone"),
        ("CALENDAR_WINDOW_YEARS", "0", "Invalid calendar_window_years"),
        ("ENABLE_SCHEDULER", "sometimes", "Invalid enable_scheduler"),
    ],
)
def test_bad_values_name_the_setting(isolated_env, monkeypatch, key, value, message):
    monkeypatch.setenv(f"POTLUCK_{key}", value)
    with pytest.raises(ValueError, match=message):
        load_settings()
