from __future__ import annotations

import logging
from pathlib import Path

import pytest
import yaml

from sporesignal.config import DEFAULT_CONFIG, documented_default_config, load_config


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_missing_file_uses_defaults(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "absent.yaml")
    assert cfg.server.port == 8000
    assert cfg.ingest.interval_ms == 1000
    assert cfg.stream.heartbeat_s == 15.0
    assert cfg.cache.live_max_points == 360
    assert cfg.classification.max_windows == 16
    assert cfg.storage.db_path == tmp_path / "data" / "signals.db"


def test_overrides_merge_over_defaults(tmp_path: Path) -> None:
    path = _write(tmp_path, {"server": {"port": 9100}, "ingest": {"interval_ms": 0}})
    cfg = load_config(path)
    assert cfg.server.port == 9100
    assert cfg.server.host == "0.0.0.0"
    assert cfg.ingest.interval_ms == 0
    assert cfg.ingest.timestamp_step_ms == 1000


def test_absolute_db_path_kept(tmp_path: Path) -> None:
    db = tmp_path / "elsewhere" / "x.db"
    cfg = load_config(_write(tmp_path, {"storage": {"db_path": str(db)}}))
    assert cfg.storage.db_path == db


def test_empty_db_path_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="db_path"):
        load_config(_write(tmp_path, {"storage": {"db_path": "  "}}))


def test_out_of_range_port_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="server.port"):
        load_config(_write(tmp_path, {"server": {"port": 70000}}))


def test_non_mapping_file_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError, match="YAML object"):
        load_config(path)


def test_invalid_values_are_clamped_with_warning(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    path = _write(
        tmp_path,
        {
            "server": {"log_level": "LOUD"},
            "ingest": {"interval_ms": -5, "timestamp_step_ms": 0},
            "cache": {"live_max_points": 0},
            "classification": {"min_windows": 5, "max_windows": 2},
        },
    )
    with caplog.at_level(logging.WARNING, logger="sporesignal.config"):
        cfg = load_config(path)

    assert cfg.server.log_level == "info"
    assert cfg.ingest.interval_ms == 0
    assert cfg.ingest.timestamp_step_ms == 1
    assert cfg.cache.live_max_points == 1
    assert cfg.classification.max_windows == 5
    assert "clamped" in caplog.text


def test_documented_defaults_are_a_copy() -> None:
    documented = documented_default_config()
    documented["server"]["port"] = 1
    assert DEFAULT_CONFIG["server"]["port"] == 8000


def test_example_config_matches_defaults() -> None:
    example = Path(__file__).resolve().parents[1] / "config.example.yaml"
    data = yaml.safe_load(example.read_text(encoding="utf-8"))
    assert data == documented_default_config()
