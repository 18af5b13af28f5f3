from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .alarms import AlarmEvaluation, AlarmStateMachine
from .calibration import CalibrationEngine
from .models import Chamber, SensorStatus, utc_now
from .publish import EVENT_NEW_READING, Publisher, broadcast
from .store import RecordStore

logger = logging.getLogger(__name__)

# Slot value the PLC reports for a disconnected sensor.
DEAD_SENSOR_RAW = 0


@dataclass
class ReadingRecord:
    """One raw sample carried through calibration and alarm evaluation."""

    chamber_id: int
    raw_value: float
    o2_level: float
    sensor_status: SensorStatus
    calibrated: bool
    timestamp: str
    alarms: AlarmEvaluation


def sensor_status_for(raw_value: float) -> SensorStatus:
    return SensorStatus.ERROR if raw_value <= DEAD_SENSOR_RAW else SensorStatus.NORMAL


class ReadingPipeline:
    """
    Glue that turns raw chamber values into calibrated readings, keeps the
    chamber's ``last_value`` current and feeds the alarm state machine.
    """

    def __init__(
        self,
        store: RecordStore,
        engine: CalibrationEngine,
        alarms: AlarmStateMachine,
        publisher: Optional[Publisher] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.alarms = alarms
        self.publisher = publisher
        self._callbacks: List[Callable[[ReadingRecord], None]] = []

    def process(
        self,
        chamber_id: int,
        raw_value: float,
        sensor_status: SensorStatus | str | None = None,
    ) -> ReadingRecord:
        status = SensorStatus(sensor_status) if sensor_status else sensor_status_for(raw_value)
        o2_level, calibrated = self.engine.convert(chamber_id, raw_value)
        self.store.update_chamber(chamber_id, last_value=o2_level)
        timestamp = utc_now().isoformat()
        broadcast(
            self.publisher,
            EVENT_NEW_READING,
            {
                "chamber_id": chamber_id,
                "o2_level": o2_level,
                "raw_o2_level": raw_value,
                "sensor_status": status.value,
                "timestamp": timestamp,
            },
            chamber_id=chamber_id,
        )
        evaluation = self.alarms.evaluate(chamber_id, o2_level, status, levels_known=calibrated)
        record = ReadingRecord(
            chamber_id=chamber_id,
            raw_value=raw_value,
            o2_level=o2_level,
            sensor_status=status,
            calibrated=calibrated,
            timestamp=timestamp,
            alarms=evaluation,
        )
        for callback in self._callbacks:
            callback(record)
        return record

    def on_chamber_raw_value(self, chamber: Chamber, raw_value: int, sensor_index: int) -> None:
        """Poller callback signature."""
        self.process(chamber.id, raw_value)

    def register_callback(self, callback: Callable[[ReadingRecord], None]) -> None:
        self._callbacks.append(callback)
