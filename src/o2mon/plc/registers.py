from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional

import numpy as np

from ..config import PlcSettings
from ..errors import BusyError, O2MonitorError, ProtocolError, ValidationError
from ..models import utc_now
from .frames import ResponseDecoder, build_read_frame, build_write_frame
from .transport import ConnectionState, PlcTransport

logger = logging.getLogger(__name__)

DEMO_RAW_MIN = 2500
DEMO_RAW_MAX = 16383
DEMO_DEAD_SLOT = 10
WRITE_WAIT_STEP = 0.05


class RegisterService:
    """
    Sensor-block reads and single-register writes on top of :class:`PlcTransport`.

    At most one exchange is in flight. A read that finds another exchange running
    fails with :class:`BusyError` so the poller skips a cycle; a write waits for
    the running exchange to finish because alarm feedback must not be dropped.
    """

    def __init__(
        self,
        settings: PlcSettings,
        transport: Optional[PlcTransport] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport or PlcTransport(settings)
        self.decoder = ResponseDecoder()
        self._guard = threading.Lock()
        self._rng = rng or np.random.default_rng()

    @property
    def demo(self) -> bool:
        return bool(self.settings.demo)

    @property
    def is_working(self) -> bool:
        return self._guard.locked()

    @property
    def connection_state(self) -> ConnectionState:
        return self.transport.state

    def read_raw_values(self, count: Optional[int] = None) -> List[int]:
        count = self.settings.read_count if count is None else int(count)
        if count < 1:
            raise ValidationError("count must be at least 1")
        if self.demo:
            return self._demo_values(count)
        if not self._guard.acquire(blocking=False):
            raise BusyError("PLC operation already in progress")
        try:
            frame = build_read_frame(self.settings.sensor_block_address)
            response = self.transport.exchange(frame)
            samples = self.decoder.decode(response)
            if not samples:
                raise ProtocolError("PLC response carried no samples")
            return samples[:count]
        except O2MonitorError:
            self.transport.state = ConnectionState.DISCONNECTED
            raise
        finally:
            self._guard.release()

    def read_sensor_value(self, sensor_index: int) -> int:
        values = self.read_raw_values()
        if sensor_index < 0 or sensor_index >= len(values):
            raise ValidationError(
                f"Invalid sensor index {sensor_index}. Available range: 0-{len(values) - 1}"
            )
        return values[sensor_index]

    def write_register(self, address: str, value: int) -> bool:
        frame = build_write_frame(address, value)
        if self.demo:
            logger.info("Demo mode: would write %s to %s", int(value), address)
            return True
        while not self._guard.acquire(timeout=WRITE_WAIT_STEP):
            continue
        try:
            self.transport.send(frame)
        except O2MonitorError as exc:
            logger.error("Error writing to PLC register %s: %s", address, exc)
            return False
        finally:
            self._guard.release()
        logger.info("Wrote %s to PLC register %s", int(value), address)
        return True

    def connection_status(self) -> Dict[str, Any]:
        state = ConnectionState.CONNECTED if self.demo else self.connection_state
        return {
            "is_connected": state is ConnectionState.CONNECTED,
            "connection_state": int(state),
            "is_working": self.is_working,
            "host": self.settings.host,
            "port": self.settings.port,
            "demo_mode": self.demo,
            "decoder": self.decoder.stats(),
            "timestamp": utc_now().isoformat(),
        }

    def _demo_values(self, count: int) -> List[int]:
        values = self._rng.integers(DEMO_RAW_MIN, DEMO_RAW_MAX, size=count, endpoint=True)
        if count > DEMO_DEAD_SLOT:
            values[DEMO_DEAD_SLOT] = 0
        logger.debug("Returning demo PLC data")
        return [int(value) for value in values]
