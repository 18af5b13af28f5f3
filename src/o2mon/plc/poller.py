from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from ..config import MIN_POLL_INTERVAL_MS, PollerSettings
from ..errors import O2MonitorError, ValidationError
from ..models import Chamber, isoformat, utc_now
from ..publish import EVENT_CHAMBER_RAW_VALUE, Publisher, broadcast
from ..scheduler import PeriodicWorker
from ..store import RecordStore

logger = logging.getLogger(__name__)

ChamberCallback = Callable[[Chamber, int, int], None]


class RawValueSource(Protocol):
    def read_raw_values(self, count: Optional[int] = None) -> List[int]: ...


class PollingScheduler(PeriodicWorker):
    """Keeps every mapped chamber's ``last_raw_value`` fresh from the PLC."""

    name = "periodic PLC reader"

    def __init__(
        self,
        registers: RawValueSource,
        store: RecordStore,
        publisher: Optional[Publisher] = None,
        settings: Optional[PollerSettings] = None,
        max_workers: int = 4,
    ) -> None:
        settings = settings or PollerSettings()
        if settings.interval_ms < MIN_POLL_INTERVAL_MS:
            raise ValidationError(f"Interval cannot be less than {MIN_POLL_INTERVAL_MS}ms")
        super().__init__(settings.interval_ms)
        self.registers = registers
        self.store = store
        self.publisher = publisher
        self.read_count = settings.read_count
        self.stats_log_every = max(int(settings.stats_log_every), 1)
        self._mapping: Dict[int, int] = dict(settings.sensor_mapping)
        self._max_workers = max(int(max_workers), 1)
        self._callbacks: List[ChamberCallback] = []
        self._counter_lock = threading.Lock()
        self.successful_reads = 0
        self.failed_reads = 0
        self.last_read_attempt: Optional[datetime] = None

    @property
    def sensor_mapping(self) -> Dict[int, int]:
        return dict(self._mapping)

    def register_callback(self, callback: ChamberCallback) -> None:
        self._callbacks.append(callback)

    def tick(self) -> None:
        self.run_cycle()

    def run_cycle(self) -> bool:
        """Poll once. Failures only move the counters; the next tick is the retry."""
        self.last_read_attempt = utc_now()
        try:
            raw_data = self.registers.read_raw_values(self.read_count)
        except (O2MonitorError, OSError) as exc:
            with self._counter_lock:
                self.failed_reads += 1
            logger.debug("Failed to read from PLC: %s", exc)
            return False
        with self._counter_lock:
            self.successful_reads += 1
            successes = self.successful_reads

        chambers = self.store.active_chambers()
        if chambers:
            with ThreadPoolExecutor(
                max_workers=min(self._max_workers, len(chambers)),
                thread_name_prefix="chamber-update",
            ) as pool:
                list(pool.map(lambda chamber: self._update_chamber(chamber, raw_data), chambers))

        if successes % self.stats_log_every == 0:
            logger.info(
                "Periodic PLC reader stats - success=%d failed=%d",
                self.successful_reads,
                self.failed_reads,
            )
        return True

    def _update_chamber(self, chamber: Chamber, raw_data: List[int]) -> None:
        sensor_index = self._mapping.get(chamber.id)
        if sensor_index is None or not 0 <= sensor_index < len(raw_data):
            logger.debug(
                "No sensor mapping found for chamber %s or sensor data unavailable", chamber.id
            )
            return
        raw_value = raw_data[sensor_index]
        try:
            updated = self.store.update_chamber(chamber.id, last_raw_value=raw_value) or chamber
            logger.debug(
                "Updated chamber %s (%s) last_raw_value: %s", chamber.id, chamber.name, raw_value
            )
            broadcast(
                self.publisher,
                EVENT_CHAMBER_RAW_VALUE,
                {
                    "chamber_id": chamber.id,
                    "chamber_name": chamber.name,
                    "last_raw_value": raw_value,
                    "sensor_index": sensor_index,
                    "timestamp": utc_now().isoformat(),
                },
                chamber_id=chamber.id,
            )
            for callback in self._callbacks:
                callback(updated, raw_value, sensor_index)
        except Exception:
            logger.error("Error updating chamber %s", chamber.id, exc_info=True)

    def stats(self) -> Dict[str, Any]:
        with self._counter_lock:
            successes = self.successful_reads
            failures = self.failed_reads
        total = successes + failures
        return {
            "is_running": self.is_running,
            "interval": int(self.interval_ms),
            "last_read_attempt": isoformat(self.last_read_attempt),
            "successful_reads": successes,
            "failed_reads": failures,
            "success_rate": f"{successes / total * 100:.2f}%" if total else "0%",
            "chamber_sensor_mapping": self.sensor_mapping,
        }

    def update_sensor_mapping(self, mapping: Mapping[int, int]) -> None:
        logger.info("Updating chamber sensor mapping: %s", dict(mapping))
        self._mapping = {**self._mapping, **{int(k): int(v) for k, v in mapping.items()}}

    def update_interval(self, interval_ms: int) -> None:
        if interval_ms < MIN_POLL_INTERVAL_MS:
            raise ValidationError(
                f"Interval cannot be less than {MIN_POLL_INTERVAL_MS}ms for safety"
            )
        logger.info(
            "Updating periodic PLC reader interval from %dms to %dms", self.interval_ms, interval_ms
        )
        self._set_interval(interval_ms)
