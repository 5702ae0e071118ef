import os

import pytest

from wa_relay.config_loader import load_settings


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("WAR_"):
            monkeypatch.delenv(key)
    monkeypatch.delenv("ID_SEKOLAH", raising=False)
    monkeypatch.delenv("TOKEN", raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WAR_DATA_DIR", str(tmp_path / "data"))
    return tmp_path


def test_defaults_without_config_file(clean_env):
    settings = load_settings()
    data_dir = str(clean_env / "data")

    assert settings["http_host"] == "127.0.0.1"
    assert settings["http_port"] == 8000
    assert settings["api_token"] is None
    assert settings["tenant_ids"] == []
    assert settings["loop_interval"] == 30.0
    assert (settings["send_delay_min"], settings["send_delay_max"]) == (1.0, 8.0)
    assert settings["fetch_attempts"] == 2
    assert settings["remote_timeout"] == 15.0
    assert settings["send_timeout"] == 30.0
    assert settings["test_mode"] is False
    assert settings["connector"] == "gateway"
    assert settings["contact_suffix"] == "@c.us"
    assert settings["dedup_file"] == os.path.join(data_dir, "sent_ids.json")
    assert settings["liveness_file"] == os.path.join(data_dir, "bot_running.flag")
    assert settings["session_dir"] == os.path.join(data_dir, "sessions")
    assert settings["session_backup_dir"] == os.path.join(data_dir, "sessions_backup")
    assert settings["log_file"] is None


def test_config_file_takes_precedence_over_env(clean_env, monkeypatch):
    config = clean_env / "relay.ini"
    config.write_text(
        """
[server]
port = 9100
api_token = from-file

[tenants]
ids = 7, 8 ,9

[loop]
interval_seconds = 12.5
test_mode = yes

[connector]
backend = dry-run
session_dir = ~/wa-sessions
"""
    )
    monkeypatch.setenv("WAR_PORT", "9200")
    monkeypatch.setenv("WAR_TENANT_IDS", "1")
    monkeypatch.setenv("WAR_CONFIG", str(config))

    settings = load_settings()

    assert settings["http_port"] == 9100
    assert settings["api_token"] == "from-file"
    assert settings["tenant_ids"] == ["7", "8", "9"]
    assert settings["loop_interval"] == 12.5
    assert settings["test_mode"] is True
    assert settings["connector"] == "dry-run"
    assert settings["session_dir"] == os.path.expanduser("~/wa-sessions")


def test_environment_overrides_defaults(clean_env, monkeypatch):
    monkeypatch.setenv("WAR_PENDING_URL", "https://school.example/pending.php")
    monkeypatch.setenv("WAR_UPDATE_URL", "  ")
    monkeypatch.setenv("WAR_GATEWAY_URL", "http://gw:3000")
    monkeypatch.setenv("WAR_SEND_DELAY_MAX", "2")
    monkeypatch.setenv("WAR_TEST_MODE", "1")

    settings = load_settings()

    assert settings["pending_url"] == "https://school.example/pending.php"
    assert settings["update_url"] is None
    assert settings["gateway_url"] == "http://gw:3000"
    assert settings["send_delay_max"] == 2.0
    assert settings["test_mode"] is True


def test_legacy_launcher_variables(clean_env, monkeypatch):
    monkeypatch.setenv("ID_SEKOLAH", "12;13")
    monkeypatch.setenv("TOKEN", "legacy-secret")

    settings = load_settings()

    assert settings["tenant_ids"] == ["12", "13"]
    assert settings["api_token"] == "legacy-secret"


def test_prefixed_variables_win_over_legacy(clean_env, monkeypatch):
    monkeypatch.setenv("ID_SEKOLAH", "12")
    monkeypatch.setenv("WAR_TENANT_IDS", "7")
    monkeypatch.setenv("TOKEN", "legacy")
    monkeypatch.setenv("WAR_API_TOKEN", "current")

    settings = load_settings()

    assert settings["tenant_ids"] == ["7"]
    assert settings["api_token"] == "current"
