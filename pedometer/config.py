from __future__ import annotations

import logging
import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .constants import (
    BOOT_TIME_TOLERANCE_MS,
    DEFAULT_CLEANUP_EVERY_INSERTS,
    DEFAULT_RETENTION_DAYS,
    MS_PER_DAY,
)

LOGGER = logging.getLogger(__name__)

CONFIG_ENV_VAR = "PEDOMETER_CONFIG"

VALID_LOG_LEVELS = {"critical", "error", "warning", "info", "debug", "trace"}

DEFAULT_CONFIG: dict[str, Any] = {
    "server": {"host": "127.0.0.1", "port": 8000, "log_level": "info"},
    "storage": {
        "persist": True,
        "state_path": "data/pedometer_state.json",
        "history_db_path": "data/steps.db",
        "boot_marker_path": "data/boot_marker.json",
    },
    "retention": {
        "days": DEFAULT_RETENTION_DAYS,
        "cleanup_every_inserts": DEFAULT_CLEANUP_EVERY_INSERTS,
        "cleanup_probability": None,
    },
    "boot": {
        "detect_reboot": True,
        "tolerance_ms": BOOT_TIME_TOLERANCE_MS,
    },
    "sensor": {
        "available": True,
        "initial_value": 0,
        "walk": False,
        "steps_per_second": 1.8,
        "tick_seconds": 1.0,
    },
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _resolve_config_path(path_text: str, config_path: Path) -> Path:
    path = Path(path_text)
    if path.is_absolute():
        return path
    return config_path.resolve().parent / path


@dataclass(slots=True)
class ServerConfig:
    host: str
    port: int
    log_level: str = "info"

    def __post_init__(self) -> None:
        if not isinstance(self.port, int) or not (1 <= self.port <= 65535):
            raise ValueError(f"ServerConfig.port must be 1-65535, got {self.port!r}")
        if self.log_level not in VALID_LOG_LEVELS:
            raise ValueError(
                f"server.log_level must be one of {sorted(VALID_LOG_LEVELS)}, "
                f"got {self.log_level!r}"
            )


@dataclass(slots=True)
class StorageConfig:
    persist: bool
    state_path: Path
    history_db_path: Path
    boot_marker_path: Path


@dataclass(slots=True)
class RetentionConfig:
    days: int
    cleanup_every_inserts: int | None
    cleanup_probability: float | None

    def __post_init__(self) -> None:
        if self.days < 1:
            raise ValueError(f"retention.days must be >=1, got {self.days!r}")
        if self.cleanup_every_inserts is not None and self.cleanup_every_inserts < 1:
            LOGGER.warning(
                "retention.cleanup_every_inserts=%s is below 1; clamped to 1",
                self.cleanup_every_inserts,
            )
            self.cleanup_every_inserts = 1
        if self.cleanup_probability is not None and not 0.0 <= self.cleanup_probability <= 1.0:
            raise ValueError(
                "retention.cleanup_probability must be within [0, 1], "
                f"got {self.cleanup_probability!r}"
            )

    @property
    def retention_ms(self) -> int:
        return self.days * MS_PER_DAY


@dataclass(slots=True)
class BootConfig:
    detect_reboot: bool
    tolerance_ms: int

    def __post_init__(self) -> None:
        if self.tolerance_ms < 0:
            raise ValueError(f"boot.tolerance_ms must be >=0, got {self.tolerance_ms!r}")


@dataclass(slots=True)
class SensorConfig:
    available: bool
    initial_value: int
    walk: bool
    steps_per_second: float
    tick_seconds: float

    def __post_init__(self) -> None:
        if self.initial_value < 0:
            raise ValueError(f"sensor.initial_value must be >=0, got {self.initial_value!r}")
        if self.steps_per_second < 0:
            raise ValueError(
                f"sensor.steps_per_second must be >=0, got {self.steps_per_second!r}"
            )
        if self.tick_seconds <= 0:
            LOGGER.warning("sensor.tick_seconds=%s is not positive; using 1.0", self.tick_seconds)
            self.tick_seconds = 1.0


@dataclass(slots=True)
class AppConfig:
    server: ServerConfig
    storage: StorageConfig
    retention: RetentionConfig
    boot: BootConfig
    sensor: SensorConfig
    config_path: Path


def default_config_path() -> Path:
    env_path = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a YAML object at the top level.")
        return data


def _optional(value: Any, cast: Any) -> Any:
    return None if value is None else cast(value)


def load_config(config_path: Path | None = None) -> AppConfig:
    path = (config_path or default_config_path()).resolve()
    merged = _deep_merge(deepcopy(DEFAULT_CONFIG), _read_config_file(path))

    storage_cfg = merged["storage"]
    retention_cfg = merged["retention"]
    boot_cfg = merged["boot"]
    sensor_cfg = merged["sensor"]

    app_config = AppConfig(
        server=ServerConfig(
            host=str(merged["server"]["host"]),
            port=int(merged["server"]["port"]),
            log_level=str(merged["server"].get("log_level", "info")).lower(),
        ),
        storage=StorageConfig(
            persist=bool(storage_cfg["persist"]),
            state_path=_resolve_config_path(str(storage_cfg["state_path"]), path),
            history_db_path=_resolve_config_path(str(storage_cfg["history_db_path"]), path),
            boot_marker_path=_resolve_config_path(str(storage_cfg["boot_marker_path"]), path),
        ),
        retention=RetentionConfig(
            days=int(retention_cfg["days"]),
            cleanup_every_inserts=_optional(retention_cfg.get("cleanup_every_inserts"), int),
            cleanup_probability=_optional(retention_cfg.get("cleanup_probability"), float),
        ),
        boot=BootConfig(
            detect_reboot=bool(boot_cfg["detect_reboot"]),
            tolerance_ms=int(boot_cfg["tolerance_ms"]),
        ),
        sensor=SensorConfig(
            available=bool(sensor_cfg["available"]),
            initial_value=int(sensor_cfg["initial_value"]),
            walk=bool(sensor_cfg["walk"]),
            steps_per_second=float(sensor_cfg["steps_per_second"]),
            tick_seconds=float(sensor_cfg["tick_seconds"]),
        ),
        config_path=path,
    )
    LOGGER.info(
        "Loaded config=%s state_path=%s history_db_path=%s persist=%s",
        app_config.config_path,
        app_config.storage.state_path,
        app_config.storage.history_db_path,
        app_config.storage.persist,
    )
    return app_config
