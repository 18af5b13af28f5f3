from __future__ import annotations

import logging
import threading
import time
from typing import Optional

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """
    Runs :meth:`tick` once immediately and then every ``interval_ms`` on a
    daemon thread. Ticks never overlap: an overrunning tick pushes the next one
    back, and a restart waits for the previous thread's tick to finish.
    """

    name = "periodic-worker"

    def __init__(self, interval_ms: float) -> None:
        self._interval_ms = float(interval_ms)
        self._state_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    @property
    def interval_ms(self) -> float:
        return self._interval_ms

    @property
    def is_running(self) -> bool:
        return self._stop_event is not None and not self._stop_event.is_set()

    def tick(self) -> None:  # pragma: no cover - overridden
        raise NotImplementedError

    def start(self) -> bool:
        with self._state_lock:
            if self.is_running:
                logger.warning("%s is already running", self.name)
                return False
            logger.info("Starting %s with %dms interval", self.name, self._interval_ms)
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run, args=(stop_event,), name=self.name, daemon=True
            )
            self._stop_event = stop_event
            self._thread = thread
        thread.start()
        return True

    def stop(self) -> bool:
        """Prevent further ticks. An in-flight tick is allowed to finish."""
        with self._state_lock:
            if not self.is_running:
                logger.warning("%s is not running", self.name)
                return False
            logger.info("Stopping %s", self.name)
            assert self._stop_event is not None
            self._stop_event.set()
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _set_interval(self, interval_ms: float) -> None:
        self._interval_ms = float(interval_ms)
        if self.is_running:
            self.stop()
            self.start()

    def _run(self, stop_event: threading.Event) -> None:
        next_tick = time.monotonic()
        while not stop_event.is_set():
            with self._tick_lock:
                if stop_event.is_set():
                    break
                try:
                    self.tick()
                except Exception:
                    logger.exception("Unexpected error in %s", self.name)
            next_tick += self._interval_ms / 1000.0
            now = time.monotonic()
            if next_tick < now:
                next_tick = now
            stop_event.wait(next_tick - now)
