"""Engine configuration loading and validation.

Reads ``lifeos.toml``, resolves ``${VAR}`` references against the environment,
and returns a validated :class:`EngineConfig`. Every job receives its settings
from this object at construction time; nothing is read from process-wide
globals after startup.

Example::

    [engine]
    name = "lifeos"
    metrics_port = 9464

    [engine.logging]
    level = "INFO"
    format = "json"

    [database]
    url = "${DATABASE_URL}"

    [reminders]
    interval_seconds = 60
    default_event_reminder_minutes = 15

    [calendar_sync]
    interval_minutes = 5
    max_results = 50

    [push]
    vapid_private_key = "${VAPID_PRIVATE_KEY}"
    vapid_subject = "mailto:notifications@lifeos.app"

    [google]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"
    redirect_uri = "http://localhost:7777/api/google-calendar/callback"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lifeos.db import db_params_from_database_url, db_params_from_env

ENV_CONFIG_PATH = "LIFEOS_CONFIG"
DEFAULT_VAPID_SUBJECT = "mailto:notifications@lifeos.app"
DEFAULT_REDIRECT_URI = "http://localhost:7777/api/google-calendar/callback"
GOOGLE_MAX_RESULTS_CAP = 250

# Matches ${VAR_NAME}; names are letters, digits and underscores.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = {"text", "json"}


class ConfigError(Exception):
    """Raised when engine configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [engine.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    name: str = "lifeos"
    host: str = "localhost"
    port: int = 5432
    user: str = "lifeos"
    password: str = "lifeos"
    ssl: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 5


@dataclass
class ReminderConfig:
    """Reminder scan settings from [reminders].

    ``interval_seconds`` is the tick granularity: a reminder window narrower
    than one tick can close between two polls and be skipped.
    ``default_event_reminder_minutes`` applies to events whose own offset is
    null; ``None`` means such events get no reminder.
    """

    enabled: bool = True
    interval_seconds: int = 60
    default_event_reminder_minutes: int | None = None


@dataclass
class CalendarSyncConfig:
    enabled: bool = True
    interval_minutes: int = 5
    max_results: int = 50
    calendar_id: str = "primary"
    http_timeout_seconds: float = 30.0


@dataclass
class PushConfig:
    vapid_private_key: str | None = None
    vapid_subject: str = DEFAULT_VAPID_SUBJECT
    ttl_seconds: int = 3600
    timeout_seconds: float = 10.0

    def __repr__(self) -> str:
        key = "<REDACTED>" if self.vapid_private_key else None
        return (
            f"PushConfig(vapid_private_key={key}, vapid_subject={self.vapid_subject!r}, "
            f"ttl_seconds={self.ttl_seconds}, timeout_seconds={self.timeout_seconds})"
        )


@dataclass
class GoogleConfig:
    """Engine-wide OAuth client, used when a workspace has no settings of its own."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI

    def __repr__(self) -> str:
        secret = "<REDACTED>" if self.client_secret else None
        return (
            f"GoogleConfig(client_id={self.client_id!r}, client_secret={secret}, "
            f"redirect_uri={self.redirect_uri!r})"
        )


@dataclass
class EngineConfig:
    """Parsed and validated engine configuration."""

    name: str = "lifeos"
    metrics_port: int | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    reminders: ReminderConfig = field(default_factory=ReminderConfig)
    calendar_sync: CalendarSyncConfig = field(default_factory=CalendarSyncConfig)
    push: PushConfig = field(default_factory=PushConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    return value


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive number.")
    return value


def _optional_str(section: dict[str, Any], key: str, env_name: str | None = None) -> str | None:
    raw = section.get(key)
    if raw is None and env_name is not None:
        raw = os.environ.get(env_name)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{key} must be a string when set")
    return raw.strip() or None


def _parse_logging(engine_section: dict[str, Any]) -> LoggingConfig:
    section = engine_section.get("logging", {})
    if not isinstance(section, dict):
        raise ConfigError("[engine.logging] must be a TOML table")
    fmt = str(section.get("format", "text")).strip().lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(f"Invalid engine.logging.format: {fmt!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).strip().upper() or "INFO",
        format=fmt,
        log_root=_optional_str(section, "log_root"),
    )


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    url = _optional_str(section, "url")
    params = db_params_from_database_url(url) if url is not None else db_params_from_env()

    return DatabaseConfig(
        name=str(section.get("name") or params["database"]),
        host=str(section.get("host") or params["host"]),
        port=int(section.get("port") or params["port"]),
        user=str(section.get("user") or params["user"]),
        password=str(section.get("password") or params["password"]),
        ssl=_optional_str(section, "ssl") or params["ssl"],  # type: ignore[arg-type]
        min_pool_size=_positive_int(section, "min_pool_size", 1, "database"),
        max_pool_size=_positive_int(section, "max_pool_size", 5, "database"),
    )


def _parse_reminders(data: dict[str, Any]) -> ReminderConfig:
    section = _section(data, "reminders")
    default_offset = section.get("default_event_reminder_minutes")
    if default_offset is not None:
        default_offset = _positive_int(
            section, "default_event_reminder_minutes", 15, "reminders"
        )
    return ReminderConfig(
        enabled=bool(section.get("enabled", True)),
        interval_seconds=_positive_int(section, "interval_seconds", 60, "reminders"),
        default_event_reminder_minutes=default_offset,
    )


def _parse_calendar_sync(data: dict[str, Any]) -> CalendarSyncConfig:
    section = _section(data, "calendar_sync")
    max_results = _positive_int(section, "max_results", 50, "calendar_sync")
    if max_results > GOOGLE_MAX_RESULTS_CAP:
        raise ConfigError(
            f"Invalid calendar_sync.max_results: {max_results}. "
            f"Must be at most {GOOGLE_MAX_RESULTS_CAP}."
        )
    calendar_id = str(section.get("calendar_id", "primary")).strip()
    if not calendar_id:
        raise ConfigError("calendar_sync.calendar_id must be a non-empty string")
    return CalendarSyncConfig(
        enabled=bool(section.get("enabled", True)),
        interval_minutes=_positive_int(section, "interval_minutes", 5, "calendar_sync"),
        max_results=max_results,
        calendar_id=calendar_id,
        http_timeout_seconds=_positive_float(
            section, "http_timeout_seconds", 30.0, "calendar_sync"
        ),
    )


def _parse_push(data: dict[str, Any]) -> PushConfig:
    section = _section(data, "push")
    return PushConfig(
        vapid_private_key=_optional_str(section, "vapid_private_key", "VAPID_PRIVATE_KEY"),
        vapid_subject=(
            _optional_str(section, "vapid_subject", "VAPID_SUBJECT") or DEFAULT_VAPID_SUBJECT
        ),
        ttl_seconds=_positive_int(section, "ttl_seconds", 3600, "push"),
        timeout_seconds=_positive_float(section, "timeout_seconds", 10.0, "push"),
    )


def _parse_google(data: dict[str, Any]) -> GoogleConfig:
    section = _section(data, "google")
    return GoogleConfig(
        client_id=_optional_str(section, "client_id", "GOOGLE_CLIENT_ID"),
        client_secret=_optional_str(section, "client_secret", "GOOGLE_CLIENT_SECRET"),
        redirect_uri=(
            _optional_str(section, "redirect_uri", "GOOGLE_REDIRECT_URI") or DEFAULT_REDIRECT_URI
        ),
    )


def parse_config(data: dict[str, Any]) -> EngineConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    engine_section = _section(data, "engine")
    name = str(engine_section.get("name", "lifeos")).strip()
    if not name:
        raise ConfigError("engine.name must be a non-empty string")

    metrics_port = engine_section.get("metrics_port")
    if metrics_port is not None:
        metrics_port = _positive_int(engine_section, "metrics_port", 9464, "engine")

    config = EngineConfig(
        name=name,
        metrics_port=metrics_port,
        logging=_parse_logging(engine_section),
        database=_parse_database(data),
        reminders=_parse_reminders(data),
        calendar_sync=_parse_calendar_sync(data),
        push=_parse_push(data),
        google=_parse_google(data),
    )

    if config.reminders.enabled and not config.push.vapid_private_key:
        raise ConfigError(
            "Reminders are enabled but no VAPID private key is configured. "
            "Set [push].vapid_private_key (or VAPID_PRIVATE_KEY), or disable [reminders]."
        )
    return config


def load_config(config_path: Path | None = None) -> EngineConfig:
    """Load and validate the engine config.

    When *config_path* is ``None`` the ``LIFEOS_CONFIG`` environment variable
    is consulted; if that is unset too, defaults plus environment variables
    are used.

    Raises
    ------
    ConfigError
        If an explicit file is missing, contains invalid TOML, or fails
        validation.
    """
    if config_path is None:
        env_path = os.environ.get(ENV_CONFIG_PATH)
        if not env_path:
            return parse_config({})
        config_path = Path(env_path)

    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        data = tomllib.loads(config_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc

    return parse_config(data)
