"""
Three-point oxygen calibration.

Coefficients are a single straight line: the slopes of the 0 %→mid and
mid→100 % segments are averaged and the line is anchored at the zero point.
Existing calibration records depend on this exact formula, so it must not be
replaced by true piecewise interpolation.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

import numpy as np
import pandas as pd

from .errors import NotFoundError, ValidationError
from .models import (
    DEFAULT_MID_POINT_CALIBRATED,
    CalibrationHistory,
    CalibrationPoints,
    CalibrationRequest,
    Chamber,
    isoformat,
    utc_now,
)
from .publish import EVENT_CALIBRATION_PERFORMED, Publisher, broadcast
from .store import RecordStore

logger = logging.getLogger(__name__)

O2_MIN = 0.0
O2_MAX = 100.0
COEFF_DECIMALS = 6
READING_DECIMALS = 2


@dataclass(frozen=True)
class Coefficients:
    slope: float
    offset: float

    def apply(self, raw_value: float) -> float:
        return apply(raw_value, self.slope, self.offset)


def compute_coefficients(
    zero_point_raw: float,
    mid_point_raw: float,
    hundred_point_raw: float,
    mid_point_calibrated: float = DEFAULT_MID_POINT_CALIBRATED,
) -> Coefficients:
    if not zero_point_raw < mid_point_raw < hundred_point_raw:
        raise ValidationError(
            "Calibration points must be in ascending order "
            f"(zero={zero_point_raw}, mid={mid_point_raw}, hundred={hundred_point_raw})"
        )
    raw = np.array([zero_point_raw, mid_point_raw, hundred_point_raw], dtype=float)
    calibrated = np.array([O2_MIN, mid_point_calibrated, O2_MAX], dtype=float)
    slopes = np.diff(calibrated) / np.diff(raw)
    slope = float(slopes.mean())
    offset = O2_MIN - slope * float(zero_point_raw)
    return Coefficients(
        slope=round(slope, COEFF_DECIMALS),
        offset=round(offset, COEFF_DECIMALS) + 0.0,
    )


def apply(raw_value: float, slope: float, offset: float) -> float:
    return float(np.clip(float(raw_value) * slope + offset, O2_MIN, O2_MAX))


class CalibrationEngine:
    def __init__(self, store: RecordStore, publisher: Optional[Publisher] = None) -> None:
        self.store = store
        self.publisher = publisher
        self._cache: Dict[int, Coefficients] = {}
        # bumped by invalidate(); a fill fetched under an older generation is dropped
        self._generation = 0
        self._warned_uncalibrated: Set[int] = set()
        self._lock = threading.Lock()

    def coefficients_for(self, chamber_id: int) -> Optional[Coefficients]:
        with self._lock:
            cached = self._cache.get(chamber_id)
            generation = self._generation
        if cached is not None:
            return cached
        points = self.store.active_calibration(chamber_id)
        if points is None:
            return None
        coeff = Coefficients(slope=points.slope, offset=points.offset)
        with self._lock:
            if self._generation == generation:
                self._cache[chamber_id] = coeff
        return coeff

    def invalidate(self, chamber_id: Optional[int] = None) -> None:
        with self._lock:
            self._generation += 1
            if chamber_id is None:
                self._cache.clear()
                self._warned_uncalibrated.clear()
            else:
                self._cache.pop(chamber_id, None)
                self._warned_uncalibrated.discard(chamber_id)

    def convert(self, chamber_id: int, raw_value: float) -> Tuple[float, bool]:
        """Return ``(value, calibrated)``; *value* is the raw value when uncalibrated."""
        coeff = self.coefficients_for(chamber_id)
        if coeff is None:
            with self._lock:
                first = chamber_id not in self._warned_uncalibrated
                self._warned_uncalibrated.add(chamber_id)
            logger.log(
                logging.WARNING if first else logging.DEBUG,
                "No active calibration found for chamber %s, using raw value",
                chamber_id,
            )
            return raw_value, False
        return round(coeff.apply(raw_value), READING_DECIMALS), True

    def calibrate_reading(self, chamber_id: int, raw_value: float) -> float:
        """Return the calibrated O2 %, or *raw_value* unchanged when uncalibrated."""
        return self.convert(chamber_id, raw_value)[0]

    def perform_three_point_calibration(
        self,
        chamber_id: int,
        request: CalibrationRequest | Dict[str, Any],
        calibrated_by: str = "system",
        notes: str = "",
    ) -> CalibrationPoints:
        if not isinstance(request, CalibrationRequest):
            request = CalibrationRequest.from_mapping(request)
        hundred = request.resolved_hundred_point()
        coeff = compute_coefficients(
            request.zero_point_raw,
            request.mid_point_raw,
            hundred,
            request.mid_point_calibrated,
        )
        self._require_chamber(chamber_id)
        now = utc_now()
        with self.store.transaction():
            self.store.deactivate_calibrations(chamber_id)
            points = self.store.create_calibration(
                CalibrationPoints(
                    chamber_id=chamber_id,
                    zero_point_raw=request.zero_point_raw,
                    mid_point_raw=request.mid_point_raw,
                    hundred_point_raw=hundred,
                    mid_point_calibrated=request.mid_point_calibrated,
                    slope=coeff.slope,
                    offset=coeff.offset,
                    calibrated_by=calibrated_by,
                    notes=notes,
                    calibrated_at=now,
                )
            )
            self.store.append_calibration_history(
                CalibrationHistory(
                    chamber_id=chamber_id,
                    calibration_level=request.mid_point_calibrated,
                    calibrated_by=calibrated_by,
                    notes=(
                        f"3-point calibration: 0%({request.zero_point_raw:g}) -> "
                        f"{request.mid_point_calibrated:g}%({request.mid_point_raw:g}) -> "
                        f"100%({hundred:g})"
                    ),
                    created_at=now,
                )
            )
            self.store.update_chamber(
                chamber_id, is_calibration_required=False, last_calibration=now
            )
        self.invalidate(chamber_id)
        logger.info(
            "3-point calibration completed for chamber %s (slope=%.6f offset=%.6f)",
            chamber_id,
            coeff.slope,
            coeff.offset,
        )
        broadcast(
            self.publisher,
            EVENT_CALIBRATION_PERFORMED,
            {
                "chamber_id": chamber_id,
                "slope": coeff.slope,
                "offset": coeff.offset,
                **points.points(),
                "calibrated_by": calibrated_by,
                "timestamp": isoformat(now),
            },
            chamber_id=chamber_id,
        )
        return points

    def active_calibration(self, chamber_id: int) -> Optional[CalibrationPoints]:
        return self.store.active_calibration(chamber_id)

    def calibration_status(self, chamber_id: int) -> Dict[str, Any]:
        points = self.store.active_calibration(chamber_id)
        chamber = self.store.get_chamber(chamber_id)
        return {
            "has_active_calibration": points is not None,
            "last_calibration": isoformat(points.calibrated_at) if points else None,
            "is_calibration_required": bool(chamber and chamber.is_calibration_required),
            "calibration_points": (
                {**points.points(), "coefficients": {"slope": points.slope, "offset": points.offset}}
                if points
                else None
            ),
        }

    def calibration_history(self, chamber_id: int, limit: int = 50) -> List[CalibrationPoints]:
        return self.store.list_calibrations(chamber_id, limit=int(limit))

    def calibration_stats(self, chamber_id: Optional[int] = None, days: int = 30) -> pd.DataFrame:
        """Count calibrations and the latest one per chamber over the last *days*."""
        columns = ["chamber_id", "total_calibrations", "last_calibration"]
        since = utc_now() - timedelta(days=days)
        rows = [
            {"chamber_id": points.chamber_id, "calibrated_at": points.calibrated_at}
            for points in self.store.list_calibrations(chamber_id)
            if points.calibrated_at >= since
        ]
        if not rows:
            return pd.DataFrame(columns=columns)
        df = pd.DataFrame(rows)
        stats = (
            df.groupby("chamber_id")["calibrated_at"]
            .agg(total_calibrations="count", last_calibration="max")
            .reset_index()
        )
        return stats[columns]

    def record_sensor_change(
        self, chamber_id: int, sensor_model: str, sensor_serial_number: str
    ) -> Chamber:
        self._require_chamber(chamber_id)
        chamber = self.store.update_chamber(
            chamber_id,
            sensor_model=sensor_model,
            sensor_serial_number=sensor_serial_number,
            is_calibration_required=True,
            last_calibration=None,
            last_sensor_change=utc_now(),
        )
        logger.info("Sensor change recorded for chamber %s", chamber_id)
        return chamber  # type: ignore[return-value]

    def mark_calibration_required(self, chamber_id: int, reason: str = "") -> Chamber:
        self._require_chamber(chamber_id)
        chamber = self.store.update_chamber(chamber_id, is_calibration_required=True)
        logger.info("Calibration marked as required for chamber %s: %s", chamber_id, reason)
        return chamber  # type: ignore[return-value]

    def _require_chamber(self, chamber_id: int) -> Chamber:
        chamber = self.store.get_chamber(chamber_id)
        if chamber is None:
            raise NotFoundError(f"Chamber {chamber_id} not found")
        return chamber
