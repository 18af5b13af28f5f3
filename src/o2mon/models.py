"""Record types exchanged between the monitor core and the record store."""
from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import ValidationError

DEFAULT_MID_POINT_CALIBRATED = 21.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class AlarmKind(str, enum.Enum):
    HIGH_O2 = "high_o2"
    LOW_O2 = "low_o2"
    SENSOR_ERROR = "sensor_error"
    CALIBRATION_DUE = "calibration_due"


class SensorStatus(str, enum.Enum):
    NORMAL = "normal"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Chamber:
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool = True
    last_raw_value: Optional[int] = None
    last_value: Optional[float] = None
    alarm_level_high: float = 24.0
    alarm_level_low: float = 16.0
    is_calibration_required: bool = False
    last_calibration: Optional[datetime] = None
    sensor_model: Optional[str] = None
    sensor_serial_number: Optional[str] = None
    last_sensor_change: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class CalibrationPoints:
    chamber_id: int
    zero_point_raw: float
    mid_point_raw: float
    hundred_point_raw: float
    slope: float
    offset: float
    mid_point_calibrated: float = DEFAULT_MID_POINT_CALIBRATED
    zero_point_calibrated: float = 0.0
    hundred_point_calibrated: float = 100.0
    calibrated_by: str = "system"
    notes: str = ""
    is_active: bool = True
    calibrated_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None

    def points(self) -> Dict[str, Dict[str, float]]:
        return {
            "zero_point": {"raw": self.zero_point_raw, "calibrated": self.zero_point_calibrated},
            "mid_point": {"raw": self.mid_point_raw, "calibrated": self.mid_point_calibrated},
            "hundred_point": {"raw": self.hundred_point_raw, "calibrated": self.hundred_point_calibrated},
        }


@dataclass
class CalibrationHistory:
    chamber_id: int
    calibration_level: float
    calibrated_by: str
    notes: str
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None


@dataclass
class Alarm:
    chamber_id: int
    kind: AlarmKind
    is_active: bool = True
    is_muted: bool = False
    muted_until: Optional[datetime] = None
    triggered_at: datetime = field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    o2_level_when_triggered: Optional[float] = None
    id: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        for key in ("muted_until", "triggered_at", "resolved_at"):
            data[key] = isoformat(data[key])
        return data


@dataclass(frozen=True)
class CalibrationRequest:
    """Three-point calibration input, validated before it reaches the engine."""

    zero_point_raw: float
    mid_point_raw: float
    hundred_point_raw: Optional[float] = None
    mid_point_calibrated: float = DEFAULT_MID_POINT_CALIBRATED

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "CalibrationRequest":
        missing = [
            key for key in ("zero_point_raw", "mid_point_raw") if data.get(key) is None
        ]
        if missing:
            raise ValidationError(f"Calibration request missing fields {missing}")
        try:
            hundred = data.get("hundred_point_raw")
            mid_cal = data.get("mid_point_calibrated")
            return CalibrationRequest(
                zero_point_raw=float(data["zero_point_raw"]),
                mid_point_raw=float(data["mid_point_raw"]),
                hundred_point_raw=None if hundred is None else float(hundred),
                mid_point_calibrated=(
                    DEFAULT_MID_POINT_CALIBRATED if mid_cal is None else float(mid_cal)
                ),
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Calibration points must be numeric: {exc}") from exc

    def resolved_hundred_point(self) -> float:
        """Return the 100 % raw point, extrapolating the zero→mid line when omitted."""
        if self.hundred_point_raw is not None:
            return self.hundred_point_raw
        if self.mid_point_calibrated <= 0:
            raise ValidationError("mid_point_calibrated must be positive to derive the 100% point")
        span = self.mid_point_raw - self.zero_point_raw
        return self.zero_point_raw + span * 100.0 / self.mid_point_calibrated
