"""Settings loader: ``config.ini`` first, ``WAR_*`` environment variables as fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import List


def _split_ids(value: str | None) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.replace(";", ",").split(",") if item.strip()]


def _env(name: str, *legacy: str) -> str | None:
    for key in (name, *legacy):
        value = os.getenv(key)
        if value is not None:
            return value
    return None


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with WAR_):
      WAR_CONFIG - Path to config.ini file (default: config.ini)
      WAR_HOST / WAR_PORT - HTTP bind address (default: 127.0.0.1:8000)
      WAR_API_TOKEN - Shared secret for the x-auth header (legacy: TOKEN)
      WAR_PENDING_URL / WAR_UPDATE_URL - Remote endpoints
      WAR_REMOTE_TIMEOUT - Remote call timeout in seconds (default: 15)
      WAR_TENANT_IDS - Comma separated tenant ids (legacy: ID_SEKOLAH)
      WAR_LOOP_INTERVAL - Seconds between ticks (default: 30)
      WAR_SEND_DELAY_MIN / WAR_SEND_DELAY_MAX - Pause between sends (default: 1 / 8)
      WAR_FETCH_ATTEMPTS / WAR_FETCH_RETRY_DELAY - Fetch retry policy (default: 2 / 2)
      WAR_DEDUP_FLUSH_INTERVAL - Periodic dedup flush in seconds, 0 disables (default: 300)
      WAR_TEST_MODE - Only run ticks on demand (default: False)
      WAR_DATA_DIR - Base directory for local state (default: ~/.wa-relay)
      WAR_DEDUP_FILE / WAR_LIVENESS_FILE - Files inside the data directory
      WAR_CONNECTOR - Connector backend: gateway or dry-run (default: gateway)
      WAR_GATEWAY_URL / WAR_GATEWAY_SESSION / WAR_GATEWAY_API_KEY - Gateway access
      WAR_SEND_TIMEOUT - Connector send timeout in seconds (default: 30)
      WAR_CONTACT_SUFFIX - Suffix appended to bare phone numbers (default: @c.us)
      WAR_SESSION_DIR / WAR_SESSION_BACKUP_DIR - Session folder and its backup
      WAR_DRAIN_TIMEOUT / WAR_GRACE_SECONDS - Shutdown bounds (default: 10 / 0.5)
      WAR_LOG_LEVEL / WAR_LOG_FILE - Logging (default: INFO, console only)

    Config file sections/keys:
      [server] host, port, api_token
      [remote] pending_url, update_url, timeout_seconds
      [tenants] ids
      [loop] interval_seconds, send_delay_min, send_delay_max, fetch_attempts,
             fetch_retry_delay, dedup_flush_interval, test_mode
      [storage] data_dir, dedup_file, liveness_file
      [connector] backend, base_url, session, api_key, send_timeout,
                  contact_suffix, session_dir, session_backup_dir
      [shutdown] drain_timeout, grace_seconds
      [logging] level, file
    """
    config_path = Path(config_path or os.getenv("WAR_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    data_dir = os.path.expanduser(get("storage", "data_dir", os.getenv("WAR_DATA_DIR", "~/.wa-relay")))

    settings: dict[str, object] = {
        "http_host": get("server", "host", os.getenv("WAR_HOST", "127.0.0.1")),
        "http_port": get_int("server", "port", os.getenv("WAR_PORT"), default=8000),
        "api_token": get("server", "api_token", _env("WAR_API_TOKEN", "TOKEN")),
        "pending_url": get("remote", "pending_url", os.getenv("WAR_PENDING_URL")),
        "update_url": get("remote", "update_url", os.getenv("WAR_UPDATE_URL")),
        "remote_timeout": get_float("remote", "timeout_seconds", os.getenv("WAR_REMOTE_TIMEOUT"), default=15.0),
        "tenant_ids": _split_ids(get("tenants", "ids", _env("WAR_TENANT_IDS", "ID_SEKOLAH"))),
        "loop_interval": get_float("loop", "interval_seconds", os.getenv("WAR_LOOP_INTERVAL"), default=30.0),
        "send_delay_min": get_float("loop", "send_delay_min", os.getenv("WAR_SEND_DELAY_MIN"), default=1.0),
        "send_delay_max": get_float("loop", "send_delay_max", os.getenv("WAR_SEND_DELAY_MAX"), default=8.0),
        "fetch_attempts": get_int("loop", "fetch_attempts", os.getenv("WAR_FETCH_ATTEMPTS"), default=2),
        "fetch_retry_delay": get_float("loop", "fetch_retry_delay", os.getenv("WAR_FETCH_RETRY_DELAY"), default=2.0),
        "dedup_flush_interval": get_float(
            "loop",
            "dedup_flush_interval",
            os.getenv("WAR_DEDUP_FLUSH_INTERVAL"),
            default=300.0,
        ),
        "test_mode": get_bool("loop", "test_mode", os.getenv("WAR_TEST_MODE"), False),
        "data_dir": data_dir,
        "dedup_file": get("storage", "dedup_file", os.getenv("WAR_DEDUP_FILE"))
        or os.path.join(data_dir, "sent_ids.json"),
        "liveness_file": get("storage", "liveness_file", os.getenv("WAR_LIVENESS_FILE"))
        or os.path.join(data_dir, "bot_running.flag"),
        "connector": get("connector", "backend", os.getenv("WAR_CONNECTOR", "gateway")),
        "gateway_url": get("connector", "base_url", os.getenv("WAR_GATEWAY_URL", "http://127.0.0.1:3000")),
        "gateway_session": get("connector", "session", os.getenv("WAR_GATEWAY_SESSION", "default")),
        "gateway_api_key": get("connector", "api_key", os.getenv("WAR_GATEWAY_API_KEY")),
        "send_timeout": get_float("connector", "send_timeout", os.getenv("WAR_SEND_TIMEOUT"), default=30.0),
        "contact_suffix": get("connector", "contact_suffix", os.getenv("WAR_CONTACT_SUFFIX", "@c.us")),
        "session_dir": get("connector", "session_dir", os.getenv("WAR_SESSION_DIR"))
        or os.path.join(data_dir, "sessions"),
        "session_backup_dir": get("connector", "session_backup_dir", os.getenv("WAR_SESSION_BACKUP_DIR"))
        or os.path.join(data_dir, "sessions_backup"),
        "drain_timeout": get_float("shutdown", "drain_timeout", os.getenv("WAR_DRAIN_TIMEOUT"), default=10.0),
        "grace_seconds": get_float("shutdown", "grace_seconds", os.getenv("WAR_GRACE_SECONDS"), default=0.5),
        "log_level": get("logging", "level", os.getenv("WAR_LOG_LEVEL", "INFO")),
        "log_file": get("logging", "file", os.getenv("WAR_LOG_FILE")),
    }

    for key in ("dedup_file", "liveness_file", "session_dir", "session_backup_dir", "log_file"):
        value = settings.get(key)
        if isinstance(value, str):
            settings[key] = os.path.expanduser(value) if value.strip() else None
    for key in ("api_token", "gateway_api_key", "pending_url", "update_url"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings
