from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from typing import Optional

from .alarms import AlarmStateMachine
from .calibration import CalibrationEngine
from .config import MonitorConfig
from .plc.poller import PollingScheduler
from .plc.registers import RegisterService
from .processing import ReadingPipeline
from .publish import LoggingPublisher, Publisher
from .snapshot import SnapshotBroadcaster
from .store import InMemoryRecordStore, RecordStore

logger = logging.getLogger(__name__)


class MonitorHost:
    """Wires the PLC, calibration, alarm and broadcast services for one process."""

    def __init__(
        self,
        config: MonitorConfig,
        store: Optional[RecordStore] = None,
        publisher: Optional[Publisher] = None,
        registers: Optional[RegisterService] = None,
    ) -> None:
        self.config = config
        self.store = store if store is not None else InMemoryRecordStore(config.chambers)
        self.publisher = publisher if publisher is not None else LoggingPublisher(logging.DEBUG)
        self.registers = registers or RegisterService(config.plc)
        self.engine = CalibrationEngine(self.store, self.publisher)
        self.alarms = AlarmStateMachine(
            self.store,
            plc=self.registers,
            publisher=self.publisher,
            registers=config.alarms.registers,
            mute_duration=timedelta(minutes=config.alarms.mute_minutes),
        )
        self.pipeline = ReadingPipeline(self.store, self.engine, self.alarms, self.publisher)
        self.poller = PollingScheduler(
            self.registers, self.store, self.publisher, settings=config.poller
        )
        self.poller.register_callback(self.pipeline.on_chamber_raw_value)
        self.snapshot: Optional[SnapshotBroadcaster] = None
        if config.snapshot.enabled:
            self.snapshot = SnapshotBroadcaster(
                self.store, self.engine, self.publisher, interval_ms=config.snapshot.interval_ms
            )
        self._stop_event = threading.Event()

    def apply_seed_calibrations(self) -> None:
        for chamber_id, request in self.config.calibrations.items():
            self.engine.perform_three_point_calibration(
                chamber_id, request, calibrated_by="config", notes="seeded from configuration"
            )

    def start(self) -> None:
        self.apply_seed_calibrations()
        self.poller.start()
        if self.snapshot is not None:
            self.snapshot.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self.poller.is_running:
            self.poller.stop()
        if self.snapshot is not None and self.snapshot.is_running:
            self.snapshot.stop()
        self.poller.join(timeout=5)
        if self.snapshot is not None:
            self.snapshot.join(timeout=5)

    def run(self, stats_log_interval: float = 60.0, duration: Optional[float] = None) -> None:
        interval_sec = max(float(stats_log_interval), 1.0)
        deadline = None if duration is None else time.monotonic() + duration
        self.start()
        try:
            while not self._stop_event.is_set():
                wait = interval_sec
                if deadline is not None:
                    wait = min(wait, deadline - time.monotonic())
                    if wait <= 0:
                        break
                if self._stop_event.wait(wait):
                    break
                self.log_stats()
        except KeyboardInterrupt:
            logger.info("Stopping monitor (Ctrl+C)")
        finally:
            self.stop()
            self.log_stats(prefix="Final stats: ")

    def log_stats(self, prefix: str = "") -> None:
        stats = self.poller.stats()
        decoder = self.registers.decoder.stats()
        logger.info(
            "%ssuccess=%d failed=%d rate=%s frames=%d signature_errors=%d payload_errors=%d active_alarms=%d",
            prefix,
            stats["successful_reads"],
            stats["failed_reads"],
            stats["success_rate"],
            decoder.get("frames", 0),
            decoder.get("signature_errors", 0),
            decoder.get("payload_errors", 0),
            len(self.alarms.active_alarms()),
        )
