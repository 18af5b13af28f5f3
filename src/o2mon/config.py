from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from .models import CalibrationRequest, Chamber

MIN_POLL_INTERVAL_MS = 100


@dataclass
class PlcSettings:
    host: str = "192.168.1.3"
    port: int = 500
    connect_timeout: float = 0.25
    response_timeout: float = 1.0
    poll_step: float = 0.05
    write_settle: float = 0.1
    sensor_block_address: str = "R02100"
    read_count: int = 19
    demo: bool = False


@dataclass
class PollerSettings:
    interval_ms: int = 500
    read_count: int = 2
    sensor_mapping: Dict[int, int] = field(default_factory=lambda: {1: 0, 2: 1})
    stats_log_every: int = 100


@dataclass
class AlarmSettings:
    registers: Dict[int, str] = field(default_factory=lambda: {1: "M00407", 2: "M00408"})
    mute_minutes: float = 60.0


@dataclass
class SnapshotSettings:
    enabled: bool = True
    interval_ms: int = 500


@dataclass
class MonitorConfig:
    plc: PlcSettings = field(default_factory=PlcSettings)
    poller: PollerSettings = field(default_factory=PollerSettings)
    alarms: AlarmSettings = field(default_factory=AlarmSettings)
    snapshot: SnapshotSettings = field(default_factory=SnapshotSettings)
    chambers: List[Chamber] = field(
        default_factory=lambda: [Chamber(id=1, name="Main"), Chamber(id=2, name="Entry")]
    )
    calibrations: Dict[int, CalibrationRequest] = field(default_factory=dict)
    log_level: str = "INFO"


ENV_KEYS = {
    "PLC_IP": "plc.host",
    "PLC_PORT": "plc.port",
    "DEMO_MODE": "plc.demo",
    "POLL_INTERVAL_MS": "poller.interval_ms",
}


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _deep_merge(*layers: Mapping[str, Any]) -> Dict[str, Any]:
    """Fold config layers left to right; nested sections merge key by key."""
    merged: Dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                merged[key] = _deep_merge(current, value)
            else:
                merged[key] = value
    return merged


def _layer(pairs: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
    layer: Dict[str, Any] = {}
    for dotted_key, value in pairs:
        _set_dotted(layer, dotted_key, value)
    return layer


def load_config(
    path: Path | str | None = None,
    overrides: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> MonitorConfig:
    """
    Build a monitor configuration from an optional JSON file, the environment
    and CLI-style overrides, in that order of precedence (last wins).

    Overrides are dotted `key=value` pairs, e.g.:
        ["plc.host=10.0.0.5", "poller.interval_ms=250", "plc.demo=true"]
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path is not None else {}
    env_source = os.environ if env is None else env
    env_layer = _layer(
        (dotted, _coerce_value(env_source[name]))
        for name, dotted in ENV_KEYS.items()
        if (env_source.get(name) or "").strip()
    )
    override_layer = _layer(_split_assignment(item) for item in overrides or [])
    merged = _deep_merge(data, env_layer, override_layer)

    plc_data = merged.get("plc") or {}
    poller_data = merged.get("poller") or {}
    alarm_data = merged.get("alarms") or {}
    snapshot_data = merged.get("snapshot") or {}
    defaults = MonitorConfig()

    interval_ms = int(poller_data.get("interval_ms", defaults.poller.interval_ms))
    if interval_ms < MIN_POLL_INTERVAL_MS:
        raise ValueError(f"poller.interval_ms must be at least {MIN_POLL_INTERVAL_MS}")

    chambers_data = merged.get("chambers")
    chambers = (
        [_chamber_from_mapping(item) for item in chambers_data]
        if chambers_data
        else defaults.chambers
    )
    calibrations = {
        int(item["id"]): CalibrationRequest.from_mapping(item["calibration"])
        for item in chambers_data or []
        if item.get("calibration")
    }
    return MonitorConfig(
        plc=PlcSettings(
            host=str(plc_data.get("host", defaults.plc.host)),
            port=int(plc_data.get("port", defaults.plc.port)),
            connect_timeout=float(plc_data.get("connect_timeout", defaults.plc.connect_timeout)),
            response_timeout=float(plc_data.get("response_timeout", defaults.plc.response_timeout)),
            poll_step=float(plc_data.get("poll_step", defaults.plc.poll_step)),
            write_settle=float(plc_data.get("write_settle", defaults.plc.write_settle)),
            sensor_block_address=str(
                plc_data.get("sensor_block_address", defaults.plc.sensor_block_address)
            ),
            read_count=int(plc_data.get("read_count", defaults.plc.read_count)),
            demo=_as_bool(plc_data.get("demo", defaults.plc.demo)),
        ),
        poller=PollerSettings(
            interval_ms=interval_ms,
            read_count=int(poller_data.get("read_count", defaults.poller.read_count)),
            sensor_mapping=_int_keys(
                poller_data.get("sensor_mapping", defaults.poller.sensor_mapping), int
            ),
            stats_log_every=int(poller_data.get("stats_log_every", defaults.poller.stats_log_every)),
        ),
        alarms=AlarmSettings(
            registers=_int_keys(alarm_data.get("registers", defaults.alarms.registers), str),
            mute_minutes=float(alarm_data.get("mute_minutes", defaults.alarms.mute_minutes)),
        ),
        snapshot=SnapshotSettings(
            enabled=_as_bool(snapshot_data.get("enabled", defaults.snapshot.enabled)),
            interval_ms=int(snapshot_data.get("interval_ms", defaults.snapshot.interval_ms)),
        ),
        chambers=chambers,
        calibrations=calibrations,
        log_level=str(merged.get("log_level", defaults.log_level)).upper(),
    )


def _chamber_from_mapping(data: Dict[str, Any]) -> Chamber:
    if "id" not in data or "name" not in data:
        raise ValueError("chambers entries require fields 'id' and 'name'")
    return Chamber(
        id=int(data["id"]),
        name=str(data["name"]),
        description=data.get("description"),
        is_active=_as_bool(data.get("is_active", True)),
        alarm_level_high=float(data.get("alarm_level_high", 24.0)),
        alarm_level_low=float(data.get("alarm_level_low", 16.0)),
        is_calibration_required=_as_bool(data.get("is_calibration_required", False)),
    )


def _int_keys(mapping: Mapping[Any, Any], cast: Any) -> Dict[int, Any]:
    return {int(key): cast(value) for key, value in mapping.items()}


_BOOL_WORDS = {"true": True, "yes": True, "on": True, "false": False, "no": False, "off": False}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        text = value.strip().lower()
        return _BOOL_WORDS.get(text, text == "1")
    return bool(value)


def _coerce_value(raw: str) -> Any:
    """Interpret an environment or ``--set`` string: bool words, JSON, numbers, else text."""
    text = raw.strip()
    if text.lower() in _BOOL_WORDS:
        return _BOOL_WORDS[text.lower()]
    if text[:1] in ("[", "{"):
        return json.loads(text)
    for cast in (int, float):
        try:
            return cast(text)
        except ValueError:
            continue
    return text


def _split_assignment(item: str) -> Tuple[str, Any]:
    key, sep, value = item.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    return key, _coerce_value(value)


def _set_dotted(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    *parents, leaf = dotted_key.split(".")
    node = target
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[leaf] = value
