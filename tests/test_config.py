from __future__ import annotations

import json
from pathlib import Path

import pytest

from o2mon.config import MonitorConfig, load_config
from o2mon.errors import ValidationError


def test_defaults_without_file() -> None:
    cfg = load_config(env={})
    assert isinstance(cfg, MonitorConfig)
    assert cfg.plc.host == "192.168.1.3"
    assert cfg.plc.port == 500
    assert cfg.plc.demo is False
    assert cfg.poller.interval_ms == 500
    assert cfg.poller.sensor_mapping == {1: 0, 2: 1}
    assert cfg.alarms.registers == {1: "M00407", 2: "M00408"}
    assert [c.name for c in cfg.chambers] == ["Main", "Entry"]


def test_load_config_file_env_and_overrides(tmp_path: Path) -> None:
    cfg_path = tmp_path / "monitor.json"
    cfg_path.write_text(
        json.dumps(
            {
                "plc": {"host": "10.0.0.9", "port": 502},
                "poller": {"interval_ms": 750, "sensor_mapping": {"1": 3}},
                "alarms": {"registers": {"1": "M00500"}, "mute_minutes": 15},
                "chambers": [
                    {
                        "id": 1,
                        "name": "Chamber A",
                        "alarm_level_high": 23.5,
                        "calibration": {"zero_point_raw": 0, "mid_point_raw": 5000},
                    }
                ],
                "log_level": "debug",
            }
        ),
        encoding="utf-8",
    )
    env = {"PLC_PORT": "503", "DEMO_MODE": "true", "PLC_IP": " "}
    cfg = load_config(cfg_path, overrides=["plc.host=10.0.0.5", "poller.interval_ms=250"], env=env)

    assert cfg.plc.host == "10.0.0.5"
    assert cfg.plc.port == 503
    assert cfg.plc.demo is True
    assert cfg.poller.interval_ms == 250
    assert cfg.poller.sensor_mapping == {1: 3}
    assert cfg.alarms.registers == {1: "M00500"}
    assert cfg.alarms.mute_minutes == 15.0
    assert cfg.log_level == "DEBUG"
    assert len(cfg.chambers) == 1
    assert cfg.chambers[0].alarm_level_high == 23.5
    assert cfg.chambers[0].alarm_level_low == 16.0
    assert cfg.calibrations[1].mid_point_raw == 5000.0


def test_poll_interval_env_is_validated() -> None:
    with pytest.raises(ValueError):
        load_config(env={"POLL_INTERVAL_MS": "50"})


def test_override_requires_key_value() -> None:
    with pytest.raises(ValueError):
        load_config(overrides=["plc.host"], env={})


def test_chamber_entries_need_id_and_name(tmp_path: Path) -> None:
    cfg_path = tmp_path / "monitor.json"
    cfg_path.write_text(json.dumps({"chambers": [{"name": "nameless"}]}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(cfg_path, env={})


def test_invalid_seed_calibration(tmp_path: Path) -> None:
    cfg_path = tmp_path / "monitor.json"
    cfg_path.write_text(
        json.dumps({"chambers": [{"id": 1, "name": "A", "calibration": {"zero_point_raw": "x", "mid_point_raw": 1}}]}),
        encoding="utf-8",
    )
    with pytest.raises(ValidationError):
        load_config(cfg_path, env={})


def test_env_and_override_values_share_coercion() -> None:
    env = {"PLC_IP": "10.1.2.3", "DEMO_MODE": "yes", "POLL_INTERVAL_MS": " 300 "}
    cfg = load_config(
        overrides=[
            "poller.sensor_mapping={\"1\": 4, \"3\": 2}",
            "plc.response_timeout=2.5",
            "snapshot.enabled=off",
            "plc.sensor_block_address=R02200",
        ],
        env=env,
    )
    assert cfg.plc.host == "10.1.2.3"
    assert cfg.plc.demo is True
    assert cfg.poller.interval_ms == 300
    assert cfg.poller.sensor_mapping == {1: 4, 3: 2}
    assert cfg.plc.response_timeout == 2.5
    assert cfg.snapshot.enabled is False
    assert cfg.plc.sensor_block_address == "R02200"
