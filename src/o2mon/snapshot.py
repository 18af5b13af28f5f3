from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .calibration import CalibrationEngine
from .models import Chamber, isoformat, utc_now
from .publish import EVENT_PERIODIC_CHAMBER_DATA, Publisher, broadcast, chamber_topic
from .scheduler import PeriodicWorker
from .store import RecordStore

logger = logging.getLogger(__name__)


class SnapshotBroadcaster(PeriodicWorker):
    """Publishes a calibrated view of every active chamber on a fixed period."""

    name = "periodic chamber data broadcast"

    def __init__(
        self,
        store: RecordStore,
        engine: CalibrationEngine,
        publisher: Publisher,
        interval_ms: float = 500,
    ) -> None:
        super().__init__(interval_ms)
        self.store = store
        self.engine = engine
        self.publisher = publisher

    def tick(self) -> None:
        snapshots = self.chamber_snapshots()
        if not snapshots:
            return
        timestamp = utc_now().isoformat()
        broadcast(
            self.publisher,
            EVENT_PERIODIC_CHAMBER_DATA,
            {"chambers": snapshots, "timestamp": timestamp},
        )
        for snapshot in snapshots:
            try:
                self.publisher.publish(
                    chamber_topic(snapshot["id"]),
                    EVENT_PERIODIC_CHAMBER_DATA,
                    {"chamber": snapshot, "timestamp": timestamp},
                )
            except Exception:
                logger.warning("Failed to publish snapshot for chamber %s", snapshot["id"], exc_info=True)

    def chamber_snapshots(self) -> List[Dict[str, Any]]:
        snapshots = [self._snapshot(chamber) for chamber in self.store.active_chambers()]
        logger.debug("Collected calibrated data for %d chambers", len(snapshots))
        return snapshots

    def chamber_snapshot(self, chamber_id: int) -> Optional[Dict[str, Any]]:
        chamber = self.store.get_chamber(chamber_id)
        return self._snapshot(chamber) if chamber else None

    def _snapshot(self, chamber: Chamber) -> Dict[str, Any]:
        base: Dict[str, Any] = {
            "id": chamber.id,
            "name": chamber.name,
            "description": chamber.description,
            "is_active": chamber.is_active,
            "alarm_settings": {
                "alarm_level_high": chamber.alarm_level_high,
                "alarm_level_low": chamber.alarm_level_low,
            },
        }
        try:
            current = None
            if chamber.last_raw_value is not None:
                current = self.engine.calibrate_reading(chamber.id, chamber.last_raw_value)
            active_alarms = self.store.query_alarms(chamber_id=chamber.id, active=True)
            return {
                **base,
                "current_calibrated_value": current,
                "last_raw_value": chamber.last_raw_value,
                "last_value": chamber.last_value,
                "calibration_info": self.engine.calibration_status(chamber.id),
                "active_alarms": [alarm.kind.value for alarm in active_alarms],
                "last_sensor_change": isoformat(chamber.last_sensor_change),
                "updated_at": isoformat(chamber.updated_at),
            }
        except Exception:
            logger.error("Error collecting data for chamber %s", chamber.id, exc_info=True)
            return {**base, "error": "Data collection failed", "current_calibrated_value": None}
