import os
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from parley.errors import ConfigError

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"
STORAGE_BACKENDS = ("filesystem", "sqlite", "memory")

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name, default)


def get_bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_duration(value: Any) -> float:
    """Parse ``30``, ``30s``, ``5m``, ``24h`` or ``1d`` into seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit or "s"]


def default_data_dir() -> Path:
    return Path(get_optional_env("PARLEY_HOME", str(Path.home() / ".parley")))


@dataclass
class StorageConfig:
    backend: str = field(
        default_factory=lambda: get_optional_env("PARLEY_STORAGE", "filesystem")
    )
    base_dir: str = field(
        default_factory=lambda: str(default_data_dir() / "sessions")
    )
    db_path: str = field(
        default_factory=lambda: str(default_data_dir() / "sessions.db")
    )
    # Backend-specific settings that pass through unmodified.
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class AutoRecoveryConfig:
    enabled: bool = True
    save_interval: float = 30.0
    max_recovery_age: float = 24 * 3600.0
    recovery_dir: str = field(
        default_factory=lambda: str(default_data_dir() / "recovery")
    )
    recovery_file: str = "recovery.json"
    backup_count: int = 3

    @property
    def recovery_path(self) -> Path:
        return Path(self.recovery_dir) / self.recovery_file


@dataclass
class AutoSaveConfig:
    enabled: bool = True
    interval: float = 300.0


@dataclass
class ParleyConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    recovery: AutoRecoveryConfig = field(default_factory=AutoRecoveryConfig)
    autosave: AutoSaveConfig = field(default_factory=AutoSaveConfig)
    model: str = field(
        default_factory=lambda: get_optional_env("PARLEY_MODEL", "gpt-4o")
    )
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    @classmethod
    def from_env(cls) -> "ParleyConfig":
        config = cls()
        data_dir = os.environ.get("PARLEY_DATA_DIR")
        if data_dir:
            config.storage.base_dir = str(Path(data_dir) / "sessions")
            config.storage.db_path = str(Path(data_dir) / "sessions.db")
            config.recovery.recovery_dir = str(Path(data_dir) / "recovery")
        config.recovery.enabled = get_bool_env("PARLEY_RECOVERY", config.recovery.enabled)
        config.autosave.enabled = get_bool_env("PARLEY_AUTOSAVE", config.autosave.enabled)
        if os.environ.get("PARLEY_RECOVERY_INTERVAL"):
            config.recovery.save_interval = parse_duration(
                os.environ["PARLEY_RECOVERY_INTERVAL"]
            )
        if os.environ.get("PARLEY_AUTOSAVE_INTERVAL"):
            config.autosave.interval = parse_duration(os.environ["PARLEY_AUTOSAVE_INTERVAL"])
        config.system_prompt = os.environ.get("PARLEY_SYSTEM_PROMPT") or None
        return config

    @classmethod
    def from_file(cls, path: str | Path) -> "ParleyConfig":
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        config = cls.from_env()
        config.apply(data)
        return config

    def apply(self, data: dict[str, Any]) -> None:
        storage = dict(data.get("storage") or {})
        if "backend" in storage:
            self.storage.backend = str(storage.pop("backend"))
        if "base_dir" in storage:
            self.storage.base_dir = str(storage.pop("base_dir"))
        if "db_path" in storage:
            self.storage.db_path = str(storage.pop("db_path"))
        self.storage.options.update(storage)

        recovery = data.get("recovery") or {}
        if "enabled" in recovery:
            self.recovery.enabled = bool(recovery["enabled"])
        if "interval" in recovery:
            self.recovery.save_interval = parse_duration(recovery["interval"])
        if "max_age" in recovery:
            self.recovery.max_recovery_age = parse_duration(recovery["max_age"])
        if "dir" in recovery:
            self.recovery.recovery_dir = str(recovery["dir"])
        if "backup_count" in recovery:
            self.recovery.backup_count = int(recovery["backup_count"])

        autosave = data.get("autosave") or {}
        if "enabled" in autosave:
            self.autosave.enabled = bool(autosave["enabled"])
        if "interval" in autosave:
            self.autosave.interval = parse_duration(autosave["interval"])

        for key in ("model", "system_prompt", "temperature", "max_tokens"):
            if key in data:
                setattr(self, key, data[key])

    def validate(self) -> None:
        if self.storage.backend not in STORAGE_BACKENDS:
            raise ConfigError(
                f"Unknown storage backend: {self.storage.backend} "
                f"(expected one of {', '.join(STORAGE_BACKENDS)})"
            )
        if self.storage.backend == "filesystem" and not self.storage.base_dir:
            raise ConfigError("filesystem backend requires storage.base_dir")
        if self.storage.backend == "sqlite" and not self.storage.db_path:
            raise ConfigError("sqlite backend requires storage.db_path")
        if self.recovery.save_interval <= 0:
            raise ConfigError("recovery.interval must be > 0")
        if self.recovery.max_recovery_age <= 0:
            raise ConfigError("recovery.max_age must be > 0")
        if self.recovery.backup_count < 0:
            raise ConfigError("recovery.backup_count must be >= 0")
        if self.autosave.interval <= 0:
            raise ConfigError("autosave.interval must be > 0")
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ConfigError("temperature must be between 0.0 and 2.0")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ConfigError("max_tokens must be > 0 when set")
        logger.debug("Configuration validated successfully")
