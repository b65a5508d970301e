"""
Configuration for the botwatch monitor.

Loads settings from environment variables with sensible defaults, then
applies the optional JSON config file. The file's "health" section overrides
individual settings and its "platforms" list defines notification channels.
"""

import json
import logging
import os
import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from .notify import NotificationChannel

load_dotenv()

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the config file cannot be parsed."""


TRUE_STRINGS = ("1", "true", "yes", "on")
FALSE_STRINGS = ("0", "false", "no", "off", "")


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in TRUE_STRINGS


def _coerce(key: str, value, kind: type):
    """Convert a config file value to the declared type of the setting it overrides."""
    if kind is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in TRUE_STRINGS + FALSE_STRINGS:
            return value.strip().lower() in TRUE_STRINGS
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        raise ConfigError(f"Invalid value for {key}: expected a boolean, got {value!r}")

    if kind in (int, float):
        if isinstance(value, bool):
            raise ConfigError(f"Invalid value for {key}: expected a number, got {value!r}")
        try:
            return kind(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {value!r}") from e

    if value is None:
        raise ConfigError(f"Invalid value for {key}: null")
    if kind is Path:
        return Path(value)
    return str(value)


# JSON "health" keys -> Config attribute
HEALTH_KEYS = {
    "host": "host",
    "port": "port",
    "workerCommand": "worker_command",
    "workerDir": "worker_dir",
    "autoRestart": "auto_restart",
    "restartDelay": "restart_delay",
    "manualRestartDelay": "manual_restart_delay",
    "stopTimeout": "stop_timeout",
    "echoOutput": "echo_output",
    "updateCommand": "update_command",
    "updateIntervalDays": "update_interval_days",
    "updateOnStart": "update_on_start",
    "updateTimeout": "update_timeout",
    "notifyUpdateFailures": "notify_update_failures",
    "throttleMinutes": "throttle_minutes",
    "notifyTimeout": "notify_timeout",
    "logFile": "log_file",
    "maxLogLines": "max_log_lines",
    "logLevel": "log_level",
    "resourceCheckInterval": "resource_check_interval",
    "memoryWarnPercent": "memory_warn_percent",
    "diskWarnPercent": "disk_warn_percent",
    "diskPath": "disk_path",
}


@dataclass
class Config:
    """Monitor configuration."""

    config_file: Path = Path(os.environ.get("MONITOR_CONFIG", "config.json"))

    # Server
    host: str = os.environ.get("MONITOR_HOST", "127.0.0.1")
    port: int = int(os.environ.get("MONITOR_PORT", "5010"))

    # Basic auth for control endpoints (disabled unless both are set)
    auth_user: str = os.environ.get("AUTH_USER", "")
    auth_pass: str = os.environ.get("AUTH_PASS", "")

    # Worker process
    worker_command: str = os.environ.get("WORKER_COMMAND", "node index.js")
    worker_dir: str = os.environ.get("WORKER_DIR", "")
    auto_restart: bool = _env_bool("AUTO_RESTART", "false")
    restart_delay: float = float(os.environ.get("RESTART_DELAY", "5"))
    manual_restart_delay: float = float(os.environ.get("MANUAL_RESTART_DELAY", "1"))
    stop_timeout: float = float(os.environ.get("STOP_TIMEOUT", "10"))
    echo_output: bool = _env_bool("ECHO_OUTPUT", "true")

    # Auto-update
    update_command: str = os.environ.get("UPDATE_COMMAND", "git pull")
    update_interval_days: float = float(os.environ.get("UPDATE_INTERVAL_DAYS", "1"))
    update_on_start: bool = _env_bool("UPDATE_ON_START", "true")
    update_timeout: float = float(os.environ.get("UPDATE_TIMEOUT", "120"))
    notify_update_failures: bool = _env_bool("NOTIFY_UPDATE_FAILURES", "false")

    # Notifications
    throttle_minutes: float = float(os.environ.get("THROTTLE_MINUTES", "10"))
    notify_timeout: float = float(os.environ.get("NOTIFY_TIMEOUT", "10"))
    channels: list[NotificationChannel] = field(default_factory=list)

    # Logging
    log_file: Path = Path(os.environ.get("LOG_FILE", "monitor.log"))
    max_log_lines: int = int(os.environ.get("MAX_LOG_LINES", "100"))
    log_level: str = os.environ.get("LOG_LEVEL", "INFO")

    # Resource monitoring
    resource_check_interval: float = float(os.environ.get("RESOURCE_CHECK_INTERVAL", "60"))
    memory_warn_percent: float = float(os.environ.get("MEMORY_WARN_PERCENT", "90"))
    disk_warn_percent: float = float(os.environ.get("DISK_WARN_PERCENT", "90"))
    disk_path: str = os.environ.get("DISK_PATH", ".")

    def __post_init__(self):
        """Apply the JSON config file, if any, and normalize paths."""
        self.config_file = Path(self.config_file)
        if self.config_file.is_file():
            self.apply_file(self.config_file)
        self.log_file = Path(self.log_file)

    @property
    def auth_enabled(self) -> bool:
        return bool(self.auth_user and self.auth_pass)

    @property
    def worker_args(self) -> list[str]:
        return shlex.split(self.worker_command)

    @property
    def update_args(self) -> list[str]:
        return shlex.split(self.update_command)

    @property
    def working_dir(self) -> str | None:
        return self.worker_dir or None

    @property
    def update_interval_seconds(self) -> float:
        return self.update_interval_days * 86400

    def apply_file(self, path: Path):
        """Override settings from a JSON config file."""
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

        self.apply_health(data.get("health") or {})
        self.channels = load_channels(data.get("platforms") or [])

    def apply_health(self, health: dict):
        """Override settings from the "health" section."""
        declared = {f.name: f.type for f in fields(self)}
        for key, attr in HEALTH_KEYS.items():
            if key in health:
                setattr(self, attr, _coerce(key, health[key], declared[attr]))

        auth = health.get("auth") or {}
        if auth:
            self.auth_user = auth.get("user", "")
            self.auth_pass = auth.get("pass", "")


def load_channels(entries: list) -> list[NotificationChannel]:
    """Parse channel entries, skipping (and logging) invalid ones."""
    channels = []
    for index, entry in enumerate(entries):
        try:
            channels.append(NotificationChannel.model_validate(entry))
        except ValidationError as e:
            logger.error(f"Ignoring invalid notification channel #{index}: {e}")
    return channels


config = Config()
