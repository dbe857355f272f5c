from __future__ import annotations

import logging
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

SERVER_DIR = Path(__file__).resolve().parents[1]
"""Root of the source tree that holds the ``sporesignal`` package."""

LOGGER = logging.getLogger(__name__)

VALID_LOG_LEVELS: frozenset[str] = frozenset({"critical", "error", "warning", "info", "debug"})

DEFAULT_CONFIG: dict[str, Any] = {
    "server": {"host": "0.0.0.0", "port": 8000, "log_level": "info"},
    "storage": {"db_path": "data/signals.db"},
    "ingest": {
        "interval_ms": 1000,
        "timestamp_step_ms": 1000,
    },
    "stream": {
        "heartbeat_s": 15.0,
        "subscriber_queue_maxsize": 256,
    },
    "cache": {
        "ttl_s": 30.0,
        "live_max_points": 360,
    },
    "classification": {
        "min_windows": 3,
        "max_windows": 16,
        "min_window_ms": 60_000,
        "min_samples_per_window": 3,
    },
}


def documented_default_config() -> dict[str, Any]:
    """Return runtime defaults in the shape documented by config.example.yaml."""
    return deepcopy(DEFAULT_CONFIG)


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
        level = str(self.log_level).strip().lower()
        if level not in VALID_LOG_LEVELS:
            LOGGER.warning("server.log_level=%r is not recognised; using 'info'", self.log_level)
            level = "info"
        object.__setattr__(self, "log_level", level)


@dataclass(slots=True)
class StorageConfig:
    db_path: Path


@dataclass(slots=True)
class IngestConfig:
    interval_ms: int
    timestamp_step_ms: int

    def __post_init__(self) -> None:
        if self.interval_ms < 0:
            LOGGER.warning("ingest.interval_ms=%s is negative; clamped to 0", self.interval_ms)
            object.__setattr__(self, "interval_ms", 0)
        if self.timestamp_step_ms < 1:
            LOGGER.warning(
                "ingest.timestamp_step_ms=%s is below minimum 1; clamped to 1",
                self.timestamp_step_ms,
            )
            object.__setattr__(self, "timestamp_step_ms", 1)


@dataclass(slots=True)
class StreamConfig:
    heartbeat_s: float
    subscriber_queue_maxsize: int

    def __post_init__(self) -> None:
        if self.heartbeat_s <= 0:
            LOGGER.warning("stream.heartbeat_s=%s must be positive; using 15", self.heartbeat_s)
            object.__setattr__(self, "heartbeat_s", 15.0)
        if self.subscriber_queue_maxsize < 1:
            object.__setattr__(self, "subscriber_queue_maxsize", 1)


@dataclass(slots=True)
class CacheConfig:
    ttl_s: float
    live_max_points: int

    def __post_init__(self) -> None:
        if self.ttl_s < 0:
            object.__setattr__(self, "ttl_s", 0.0)
        if self.live_max_points < 1:
            LOGGER.warning(
                "cache.live_max_points=%s is below minimum 1; clamped to 1",
                self.live_max_points,
            )
            object.__setattr__(self, "live_max_points", 1)


@dataclass(slots=True)
class ClassificationConfig:
    min_windows: int
    max_windows: int
    min_window_ms: int
    min_samples_per_window: int

    def __post_init__(self) -> None:
        if self.min_windows < 1:
            object.__setattr__(self, "min_windows", 1)
        if self.max_windows < self.min_windows:
            LOGGER.warning(
                "classification.max_windows=%s < min_windows=%s; raised to match",
                self.max_windows,
                self.min_windows,
            )
            object.__setattr__(self, "max_windows", self.min_windows)
        if self.min_window_ms < 1:
            object.__setattr__(self, "min_window_ms", 1)
        if self.min_samples_per_window < 1:
            object.__setattr__(self, "min_samples_per_window", 1)


@dataclass(slots=True)
class AppConfig:
    server: ServerConfig
    storage: StorageConfig
    ingest: IngestConfig
    stream: StreamConfig
    cache: CacheConfig
    classification: ClassificationConfig
    config_path: Path


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a YAML object at the top level.")
        return data


def load_config(config_path: Path | None = None) -> AppConfig:
    path = config_path or (SERVER_DIR / "config.yaml")
    path = path.resolve()
    override = _read_config_file(path)
    merged = _deep_merge(DEFAULT_CONFIG, override)

    db_path_raw = merged["storage"].get("db_path")
    if not isinstance(db_path_raw, str) or not db_path_raw.strip():
        raise ValueError("storage.db_path must be a non-empty path.")

    server_port = int(merged["server"]["port"])
    if not 1 <= server_port <= 65535:
        raise ValueError(f"server.port must be 1-65535, got {server_port}")

    ingest_cfg = merged["ingest"]
    stream_cfg = merged["stream"]
    cache_cfg = merged["cache"]
    cls_cfg = merged["classification"]
    app_config = AppConfig(
        server=ServerConfig(
            host=str(merged["server"]["host"]),
            port=server_port,
            log_level=str(merged["server"].get("log_level", "info")),
        ),
        storage=StorageConfig(db_path=_resolve_config_path(db_path_raw, path)),
        ingest=IngestConfig(
            interval_ms=int(ingest_cfg["interval_ms"]),
            timestamp_step_ms=int(ingest_cfg.get("timestamp_step_ms", 1000)),
        ),
        stream=StreamConfig(
            heartbeat_s=float(stream_cfg["heartbeat_s"]),
            subscriber_queue_maxsize=int(stream_cfg.get("subscriber_queue_maxsize", 256)),
        ),
        cache=CacheConfig(
            ttl_s=float(cache_cfg["ttl_s"]),
            live_max_points=int(cache_cfg["live_max_points"]),
        ),
        classification=ClassificationConfig(
            min_windows=int(cls_cfg["min_windows"]),
            max_windows=int(cls_cfg["max_windows"]),
            min_window_ms=int(cls_cfg["min_window_ms"]),
            min_samples_per_window=int(cls_cfg["min_samples_per_window"]),
        ),
        config_path=path,
    )
    LOGGER.info(
        "Loaded config=%s db_path=%s ingest_interval_ms=%d",
        app_config.config_path,
        app_config.storage.db_path,
        app_config.ingest.interval_ms,
    )
    return app_config
