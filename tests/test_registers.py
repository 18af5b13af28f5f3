from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from o2mon.config import PlcSettings
from o2mon.errors import BusyError, PlcTimeoutError, ProtocolError, ValidationError
from o2mon.plc.frames import build_write_frame, lrc
from o2mon.plc.registers import DEMO_RAW_MAX, DEMO_RAW_MIN, RegisterService
from o2mon.plc.transport import ConnectionState


def _response(values: list[int]) -> bytes:
    body = b"\x0201460" + b"".join(f"{v:04X}".encode("ascii") for v in values)
    return body + lrc(body).encode("ascii") + b"\x03"


class FakeTransport:
    def __init__(self, response: bytes = b"", error: Exception | None = None):
        self.response = response
        self.error = error
        self.state = ConnectionState.DISCONNECTED
        self.exchanged: list[bytes] = []
        self.sent: list[bytes] = []
        self.release = threading.Event()
        self.release.set()
        self.entered = threading.Event()
        self.events: list[str] = []

    def exchange(self, request: bytes, timeout=None) -> bytes:
        self.entered.set()
        self.release.wait(2.0)
        self.exchanged.append(request)
        self.events.append("read")
        if self.error is not None:
            self.state = ConnectionState.ERROR
            raise self.error
        self.state = ConnectionState.CONNECTED
        return self.response

    def send(self, request: bytes, settle=None):
        self.sent.append(request)
        self.events.append("write")
        if self.error is not None:
            raise self.error
        return None


def test_demo_read_values_in_range() -> None:
    service = RegisterService(PlcSettings(demo=True), transport=FakeTransport(), rng=np.random.default_rng(7))
    values = service.read_raw_values(19)
    assert len(values) == 19
    assert values[10] == 0
    others = values[:10] + values[11:]
    assert all(DEMO_RAW_MIN <= v <= DEMO_RAW_MAX for v in others)
    assert len(service.read_raw_values(2)) == 2
    assert service.connection_status()["is_connected"] is True


def test_read_raw_values_truncates_to_count() -> None:
    transport = FakeTransport(_response([5000, 4000, 3000]))
    service = RegisterService(PlcSettings(), transport=transport)
    assert service.read_raw_values(2) == [5000, 4000]
    assert transport.exchanged == [b"\x02014602R0210074\x03"]
    assert not service.is_working


def test_read_rejects_non_positive_count() -> None:
    service = RegisterService(PlcSettings(), transport=FakeTransport())
    with pytest.raises(ValidationError):
        service.read_raw_values(0)


def test_read_with_empty_payload_is_protocol_error() -> None:
    transport = FakeTransport(b"\x02015\x03")
    service = RegisterService(PlcSettings(), transport=transport)
    with pytest.raises(ProtocolError):
        service.read_raw_values(2)
    assert service.connection_state is ConnectionState.DISCONNECTED
    assert not service.is_working


def test_read_failure_releases_guard() -> None:
    transport = FakeTransport(error=PlcTimeoutError("no response"))
    service = RegisterService(PlcSettings(), transport=transport)
    with pytest.raises(PlcTimeoutError):
        service.read_raw_values(2)
    assert service.connection_state is ConnectionState.DISCONNECTED
    assert not service.is_working


def test_concurrent_read_fails_busy_and_write_waits() -> None:
    transport = FakeTransport(_response([5000, 4000]))
    transport.release.clear()
    service = RegisterService(PlcSettings(), transport=transport)
    results: list = []

    reader = threading.Thread(target=lambda: results.append(service.read_raw_values(2)))
    reader.start()
    assert transport.entered.wait(1.0)
    assert service.is_working

    with pytest.raises(BusyError):
        service.read_raw_values(2)

    write_result: list[bool] = []
    writer = threading.Thread(target=lambda: write_result.append(service.write_register("M00407", 1)))
    writer.start()
    time.sleep(0.1)
    assert transport.sent == []

    transport.release.set()
    reader.join(timeout=2.0)
    writer.join(timeout=2.0)

    assert results == [[5000, 4000]]
    assert write_result == [True]
    assert transport.events == ["read", "write"]
    assert transport.sent == [build_write_frame("M00407", 1)]


def test_write_failure_returns_false() -> None:
    transport = FakeTransport(error=PlcTimeoutError("refused"))
    service = RegisterService(PlcSettings(), transport=transport)
    assert service.write_register("M00408", 0) is False
    assert not service.is_working


def test_write_rejects_invalid_value_before_io() -> None:
    transport = FakeTransport()
    service = RegisterService(PlcSettings(), transport=transport)
    with pytest.raises(ValidationError):
        service.write_register("M00407", 70000)
    assert transport.sent == []


def test_demo_write_skips_transport() -> None:
    transport = FakeTransport()
    service = RegisterService(PlcSettings(demo=True), transport=transport)
    assert service.write_register("M00407", 1) is True
    assert transport.sent == []


def test_read_sensor_value_index_bounds() -> None:
    transport = FakeTransport(_response([5000, 4000]))
    service = RegisterService(PlcSettings(read_count=2), transport=transport)
    assert service.read_sensor_value(1) == 4000
    with pytest.raises(ValidationError):
        service.read_sensor_value(2)
