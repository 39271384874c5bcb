"""
Tests for settings loading and saving.
"""

import json
import os
import stat

import pytest

from act_billing_sync.config import ENV_MAPPINGS, SyncSettings, load_settings, save_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for env_var in ENV_MAPPINGS.values():
        monkeypatch.delenv(env_var, raising=False)


class TestSettings:
    """Tests for load_settings/save_settings."""

    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(tmp_path / "missing.json")

        assert settings == SyncSettings()
        assert settings.rate_limit_calls == 100
        assert settings.token_refresh_threshold_seconds == 3000

    def test_file_values(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"rate_limit_calls": 50, "sync_tasks": False}))

        settings = load_settings(path)

        assert settings.rate_limit_calls == 50
        assert settings.sync_tasks is False

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"rate_limit_calls": 50, "sync_tasks": True}))
        monkeypatch.setenv("ACT_SYNC_RATE_LIMIT_CALLS", "250")
        monkeypatch.setenv("ACT_SYNC_TASKS", "no")
        monkeypatch.setenv("ACT_SYNC_DATABASE_URL", "postgresql+psycopg://db/billing")

        settings = load_settings(path)

        assert settings.rate_limit_calls == 250
        assert settings.sync_tasks is False
        assert settings.database_url == "postgresql+psycopg://db/billing"

    def test_save_round_trip_is_private(self, tmp_path):
        settings = SyncSettings(max_retries=4)

        path = save_settings(settings, tmp_path / "nested" / "config.json")

        assert load_settings(path).max_retries == 4
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
