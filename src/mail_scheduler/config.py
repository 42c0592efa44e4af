# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Settings loader for the mail scheduler.

Configuration comes from an INI file (default: ``config.ini``) with
environment variables as fallbacks. Every environment variable is prefixed
with ``MSCHED_``:

    MSCHED_CONFIG - Path to config.ini file (default: config.ini)
    MSCHED_LOG_LEVEL - Logging level (default: INFO)
    MSCHED_DB_PATH - Database path (default: ./mail_scheduler.db)
    MSCHED_HOST / MSCHED_PORT - HTTP bind address (default: 0.0.0.0:3001)
    MSCHED_API_TOKEN - API authentication token
    MSCHED_POLL_INTERVAL - Seconds between poller passes (default: 5)
    MSCHED_BATCH_SIZE - Messages claimed per pass (default: 10)
    MSCHED_ORPHAN_TIMEOUT - Re-dispatch orphaned claims after N seconds (default: disabled)
    MSCHED_MAX_ATTEMPTS - Delivery attempts per job (default: 3)
    MSCHED_BACKOFF_TYPE / MSCHED_BACKOFF_DELAY - Retry backoff (default: exponential, 1s)
    MSCHED_REMOVE_ON_SUCCESS - Prune completed jobs (default: true)
    MSCHED_GLOBAL_LIMIT_MAX / MSCHED_GLOBAL_LIMIT_DURATION - Queue cap, max >= 1 (default: 100 per 3600s)
    MSCHED_CONCURRENCY - Concurrent deliveries (default: 5)
    MSCHED_SENDER_LIMIT / MSCHED_SENDER_WINDOW - Per-sender cap (default: 10 per 3600s)
    MSCHED_WORKER_POLL_INTERVAL - Idle worker wait in seconds (default: 0.5)
    MSCHED_SMTP_HOST, MSCHED_SMTP_PORT, MSCHED_SMTP_USER, MSCHED_SMTP_PASSWORD,
    MSCHED_SMTP_USE_TLS, MSCHED_SMTP_FROM, MSCHED_SMTP_TIMEOUT - SMTP relay

Config file sections/keys:
    [storage] db_path
    [server] host, port, api_token
    [scheduler] poll_interval, batch_size, orphan_timeout
    [queue] max_attempts, backoff_type, backoff_delay, remove_on_success,
            global_limit_max, global_limit_duration
    [worker] concurrency, sender_limit, sender_window, poll_interval
    [smtp] host, port, user, password, use_tls, from_address, timeout
    [logging] level
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

ENV_PREFIX = "MSCHED_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def load_settings(
    config_path: str | os.PathLike | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load settings from the INI file, falling back to environment variables.

    Args:
        config_path: Explicit INI path. Defaults to ``$MSCHED_CONFIG`` or
            ``config.ini``; a missing file is not an error.
        environ: Environment mapping (defaults to ``os.environ``).

    Raises:
        ValueError: When a numeric or boolean setting cannot be parsed.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get(f"{ENV_PREFIX}CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, env_name: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return env.get(f"{ENV_PREFIX}{env_name}", fallback)

    def get_int(section: str, option: str, env_name: str, default: int | None) -> int | None:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"Invalid integer for [{section}] {option}: {value!r}") from exc

    def get_float(section: str, option: str, env_name: str, default: float | None) -> float | None:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ValueError(f"Invalid number for [{section}] {option}: {value!r}") from exc

    def get_bool(section: str, option: str, env_name: str, default: bool | None) -> bool | None:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        normalized = str(value).strip().lower()
        if normalized in _TRUE:
            return True
        if normalized in _FALSE:
            return False
        raise ValueError(f"Invalid boolean for [{section}] {option}: {value!r}")

    settings: dict[str, Any] = {
        "db_path": get("storage", "db_path", "DB_PATH", "./mail_scheduler.db"),
        "http_host": get("server", "host", "HOST", "0.0.0.0"),
        "http_port": get_int("server", "port", "PORT", 3001),
        "api_token": get("server", "api_token", "API_TOKEN"),
        "poll_interval": get_float("scheduler", "poll_interval", "POLL_INTERVAL", 5.0),
        "batch_size": get_int("scheduler", "batch_size", "BATCH_SIZE", 10),
        "orphan_timeout": get_float("scheduler", "orphan_timeout", "ORPHAN_TIMEOUT", None),
        "max_attempts": get_int("queue", "max_attempts", "MAX_ATTEMPTS", 3),
        "backoff_type": get("queue", "backoff_type", "BACKOFF_TYPE", "exponential"),
        "backoff_delay": get_float("queue", "backoff_delay", "BACKOFF_DELAY", 1.0),
        "remove_on_success": get_bool("queue", "remove_on_success", "REMOVE_ON_SUCCESS", True),
        "global_limit_max": get_int("queue", "global_limit_max", "GLOBAL_LIMIT_MAX", 100),
        "global_limit_duration": get_float("queue", "global_limit_duration", "GLOBAL_LIMIT_DURATION", 3600.0),
        "concurrency": get_int("worker", "concurrency", "CONCURRENCY", 5),
        "sender_limit": get_int("worker", "sender_limit", "SENDER_LIMIT", 10),
        "sender_window": get_int("worker", "sender_window", "SENDER_WINDOW", 3600),
        "worker_poll_interval": get_float("worker", "poll_interval", "WORKER_POLL_INTERVAL", 0.5),
        "smtp_host": get("smtp", "host", "SMTP_HOST"),
        "smtp_port": get_int("smtp", "port", "SMTP_PORT", 587),
        "smtp_user": get("smtp", "user", "SMTP_USER"),
        "smtp_password": get("smtp", "password", "SMTP_PASSWORD"),
        "smtp_use_tls": get_bool("smtp", "use_tls", "SMTP_USE_TLS", None),
        "smtp_from": get("smtp", "from_address", "SMTP_FROM", '"Mail Scheduler" <scheduler@localhost>'),
        "smtp_timeout": get_float("smtp", "timeout", "SMTP_TIMEOUT", 10.0),
        "log_level": (get("logging", "level", "LOG_LEVEL", "INFO") or "INFO").upper(),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    for key in ("api_token", "smtp_host", "smtp_user", "smtp_password"):
        value = settings.get(key)
        if isinstance(value, str):
            settings[key] = value.strip() or None
    if settings["global_limit_max"] < 1 or settings["global_limit_duration"] <= 0:
        raise ValueError("[queue] global_limit_max must be >= 1 and global_limit_duration > 0")
    return settings
