from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Any, Mapping, cast
from urllib.parse import urlsplit

import yaml
from dotenv import dotenv_values

LOGGER = logging.getLogger(__name__)

MAX_LOG_BACKUPS = 5

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

# Environment variable -> AppConfig field. YAML files use the field names.
_ENV_KEYS: dict[str, str] = {
    "GLPI_BASE_URL": "base_url",
    "GLPI_APP_TOKEN": "app_token",
    "GLPI_USER_TOKEN": "user_token",
    "POLL_SECONDS": "poll_seconds",
    "VERIFY_SSL": "verify_ssl",
    "FIRST_RUN_NOTIFY": "first_run_notify",
    "DEBUG_LIST": "debug_list",
    "GLPI_TICKET_URL_TEMPLATE": "ticket_url_template",
    "GLPI_LOGO_PATH": "logo_path",
    "REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
    "DISPATCH_TIMEOUT_SECONDS": "dispatch_timeout_seconds",
    "MAX_ROWS": "max_rows",
    "TOAST_COMMAND": "toast_command",
    "STATE_FILE": "state_file",
    "HEARTBEAT_FILE": "heartbeat_file",
    "LOG_FILE": "log_file",
    "LOG_LEVEL": "log_level",
    "LOG_CONSOLE_LEVEL": "log_console_level",
    "LOG_CONSOLE_ENABLED": "log_console_enabled",
    "LOG_MAX_BYTES": "log_max_bytes",
    "LOG_BACKUP_COUNT": "log_backup_count",
}

_DEFAULT_CONFIG_VALUES: dict[str, Any] = {
    "app_token": "",
    "poll_seconds": 60,
    "verify_ssl": True,
    "first_run_notify": False,
    "debug_list": False,
    "ticket_url_template": "",
    "logo_path": "",
    "request_timeout_seconds": 30,
    "dispatch_timeout_seconds": 30,
    "max_rows": 200,
    "toast_command": "",
    "state_file": "state.json",
    "heartbeat_file": "heartbeat.json",
    "log_file": "logs/glpinotifier.log",
    "log_level": "INFO",
    "log_console_level": "WARNING",
    "log_console_enabled": True,
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
}


class ConfigError(ValueError):
    """Missing or malformed settings; fatal at startup."""


@dataclass(frozen=True)
class AppConfig:
    base_url: str
    user_token: str
    app_token: str = ""
    poll_seconds: int = 60
    verify_ssl: bool = True
    first_run_notify: bool = False
    debug_list: bool = False
    ticket_url_template: str = ""
    logo_path: str = ""
    request_timeout_seconds: float = 30
    dispatch_timeout_seconds: float = 30
    max_rows: int = 200
    toast_command: str = ""
    state_file: str = "state.json"
    heartbeat_file: str = "heartbeat.json"
    log_file: str = "logs/glpinotifier.log"
    log_level: str = "INFO"
    log_console_level: str = "WARNING"
    log_console_enabled: bool = True
    log_max_bytes: int = 5_000_000
    log_backup_count: int = 3
    # files the settings were read from, in load order
    sources: tuple[str, ...] = field(default=(), compare=False)

    def ticket_url(self, ticket_id: int) -> str:
        template = self.ticket_url_template or default_ticket_url_template(self.base_url)
        return template.replace("{id}", str(ticket_id))


def _get_data_root_override() -> Path | None:
    override = os.environ.get("GLPINOTIFIER_DATA_DIR")
    if override:
        return Path(override)
    return None


def get_user_data_dir() -> Path:
    override = _get_data_root_override()
    if override is not None:
        return override
    local_appdata = os.environ.get("LOCALAPPDATA")
    if local_appdata:
        return Path(local_appdata) / "GlpiNotifier"
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data) / "glpinotifier"
    return Path.home() / ".local" / "share" / "glpinotifier"


def get_project_root() -> Path:
    override = os.environ.get("GLPINOTIFIER_ROOT")
    if override:
        return Path(override)
    return Path(__file__).resolve().parents[2]


def default_ticket_url_template(base_url: str) -> str:
    root = base_url.rstrip("/")
    if root.lower().endswith("/apirest.php"):
        root = root[: -len("/apirest.php")]
    return f"{root}/front/ticket.form.php?id={{id}}"


def default_toast_command() -> str:
    if sys.platform != "win32":
        return "notify-send"
    exe_dir = Path(sys.executable).resolve().parent
    candidate = exe_dir / "snoretoast.exe"
    if candidate.exists():
        return str(candidate)
    program_files = os.environ.get("ProgramFiles")
    if program_files:
        candidate = Path(program_files) / "SnoreToast" / "snoretoast.exe"
        if candidate.exists():
            return str(candidate)
    return shutil.which("snoretoast.exe") or "snoretoast.exe"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        raw: object = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Config must be a mapping")
    return cast(dict[str, Any], raw)


def _resolve_yaml_path(config_path: str | None) -> Path | None:
    if config_path:
        return Path(config_path)
    env_path = os.environ.get("GLPINOTIFIER_CONFIG")
    if env_path:
        return Path(env_path)
    default_path = get_user_data_dir() / "config.yaml"
    if default_path.exists():
        return default_path
    return None


def _read_env_sources(env_file: str | None) -> tuple[dict[str, str], Path | None]:
    """Merge .env values under the real environment.

    Returns the merged values and the .env file that was read, if any.
    """
    values: dict[str, str] = {}
    loaded: Path | None = None
    candidates: list[Path] = []
    if env_file:
        path = Path(env_file)
        if not path.exists():
            raise ConfigError(f"Env file not found: {path}")
        candidates.append(path)
    else:
        candidates.extend([Path.cwd() / ".env", get_user_data_dir() / ".env"])
    for path in candidates:
        if not path.exists():
            continue
        for key, value in dotenv_values(path).items():
            if value is not None and key in _ENV_KEYS:
                values.setdefault(key, value)
        loaded = path
        break
    for key in _ENV_KEYS:
        if key in os.environ:
            values[key] = os.environ[key]
    return values, loaded


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"{key} must be a boolean (true/false), got {value!r}")


def _parse_int(key: str, value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc


def _parse_float(key: str, value: Any) -> float:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc


def _resolve_data_path(value: str) -> str:
    candidate = Path(value).expanduser()
    if candidate.is_absolute():
        return str(candidate)
    return str(get_user_data_dir() / candidate)


def _is_valid_log_level(level: str) -> bool:
    return str(level).upper() in logging.getLevelNamesMapping()


def _build_config(
    data: Mapping[str, Any],
    *,
    require_credentials: bool,
    sources: tuple[str, ...] = (),
) -> AppConfig:
    unknown = sorted(set(data) - set(_DEFAULT_CONFIG_VALUES) - {"base_url", "user_token"})
    if unknown:
        LOGGER.warning(
            "Ignoring unknown config keys: %s",
            ", ".join(unknown),
            extra={"category": "config"},
        )
    merged = dict(_DEFAULT_CONFIG_VALUES)
    merged.update({key: value for key, value in data.items() if value is not None})

    base_url = str(merged.get("base_url", "") or "").strip().rstrip("/")
    user_token = str(merged.get("user_token", "") or "").strip()
    log_backup_count = _parse_int("log_backup_count", merged["log_backup_count"])
    if log_backup_count > MAX_LOG_BACKUPS:
        LOGGER.warning(
            "log_backup_count capped at %s (requested %s)",
            MAX_LOG_BACKUPS,
            log_backup_count,
            extra={"category": "config"},
        )
        log_backup_count = MAX_LOG_BACKUPS

    config = AppConfig(
        base_url=base_url,
        user_token=user_token,
        app_token=str(merged["app_token"] or "").strip(),
        poll_seconds=_parse_int("poll_seconds", merged["poll_seconds"]),
        verify_ssl=_parse_bool("verify_ssl", merged["verify_ssl"]),
        first_run_notify=_parse_bool("first_run_notify", merged["first_run_notify"]),
        debug_list=_parse_bool("debug_list", merged["debug_list"]),
        ticket_url_template=str(merged["ticket_url_template"] or "").strip(),
        logo_path=str(merged["logo_path"] or "").strip(),
        request_timeout_seconds=_parse_float(
            "request_timeout_seconds", merged["request_timeout_seconds"]
        ),
        dispatch_timeout_seconds=_parse_float(
            "dispatch_timeout_seconds", merged["dispatch_timeout_seconds"]
        ),
        max_rows=_parse_int("max_rows", merged["max_rows"]),
        toast_command=str(merged["toast_command"] or "").strip() or default_toast_command(),
        state_file=_resolve_data_path(str(merged["state_file"])),
        heartbeat_file=_resolve_data_path(str(merged["heartbeat_file"])),
        log_file=_resolve_data_path(str(merged["log_file"])),
        log_level=str(merged["log_level"]).upper(),
        log_console_level=str(merged["log_console_level"]).upper(),
        log_console_enabled=_parse_bool("log_console_enabled", merged["log_console_enabled"]),
        log_max_bytes=_parse_int("log_max_bytes", merged["log_max_bytes"]),
        log_backup_count=log_backup_count,
        sources=sources,
    )
    _validate_config(config, require_credentials=require_credentials)
    return config


def _validate_config(config: AppConfig, *, require_credentials: bool) -> None:
    if require_credentials:
        if not config.base_url:
            raise ConfigError("GLPI_BASE_URL is required")
        if not config.user_token:
            raise ConfigError("GLPI_USER_TOKEN is required")
    if config.base_url:
        parts = urlsplit(config.base_url)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise ConfigError("GLPI_BASE_URL must be an http(s) URL")
    if config.poll_seconds < 1:
        raise ConfigError("POLL_SECONDS must be >= 1")
    if config.request_timeout_seconds <= 0:
        raise ConfigError("REQUEST_TIMEOUT_SECONDS must be > 0")
    if config.dispatch_timeout_seconds <= 0:
        raise ConfigError("DISPATCH_TIMEOUT_SECONDS must be > 0")
    if config.max_rows < 1:
        raise ConfigError("MAX_ROWS must be >= 1")
    if config.ticket_url_template and "{id}" not in config.ticket_url_template:
        raise ConfigError("GLPI_TICKET_URL_TEMPLATE must contain an {id} placeholder")
    if config.log_max_bytes < 1024:
        raise ConfigError("LOG_MAX_BYTES must be >= 1024")
    if config.log_backup_count < 0:
        raise ConfigError("LOG_BACKUP_COUNT must be >= 0")
    if not _is_valid_log_level(config.log_level):
        raise ConfigError("LOG_LEVEL must be a valid logging level")
    if not _is_valid_log_level(config.log_console_level):
        raise ConfigError("LOG_CONSOLE_LEVEL must be a valid logging level")


def load_config(
    *,
    env_file: str | None = None,
    config_path: str | None = None,
    require_credentials: bool = True,
) -> AppConfig:
    """Build the settings snapshot from YAML, .env and the environment."""
    data: dict[str, Any] = {}
    sources: list[str] = []
    yaml_path = _resolve_yaml_path(config_path)
    if yaml_path is not None:
        data.update(_load_yaml(yaml_path))
        sources.append(str(yaml_path))
    env_values, env_path = _read_env_sources(env_file)
    if env_path is not None:
        sources.append(str(env_path))
    for key, value in env_values.items():
        data[_ENV_KEYS[key]] = value
    return _build_config(
        data,
        require_credentials=require_credentials,
        sources=tuple(sources),
    )
