from __future__ import annotations

import threading
import time

import pytest

from o2mon.config import PollerSettings
from o2mon.errors import BusyError, PlcConnectionError, ValidationError
from o2mon.models import Chamber
from o2mon.plc.poller import PollingScheduler
from o2mon.publish import EVENT_CHAMBER_RAW_VALUE, CollectingPublisher
from o2mon.store import InMemoryRecordStore


class FakeRegisters:
    def __init__(self, values=None, error: Exception | None = None):
        self.values = values or [5000, 4000]
        self.error = error
        self.calls = 0
        self.called = threading.Event()

    def read_raw_values(self, count=None):
        self.calls += 1
        self.called.set()
        if self.error is not None:
            raise self.error
        return list(self.values[:count])


def _scheduler(registers, chambers=None, **settings):
    store = InMemoryRecordStore(chambers or [Chamber(id=1, name="Main"), Chamber(id=2, name="Entry")])
    publisher = CollectingPublisher()
    poller = PollingScheduler(registers, store, publisher, settings=PollerSettings(**settings))
    return poller, store, publisher


def test_failed_reads_are_counted() -> None:
    poller, store, publisher = _scheduler(FakeRegisters(error=PlcConnectionError("refused")))
    assert poller.run_cycle() is False
    assert poller.run_cycle() is False
    stats = poller.stats()
    assert stats["failed_reads"] == 2
    assert stats["successful_reads"] == 0
    assert stats["success_rate"] == "0.00%"
    assert store.get_chamber(1).last_raw_value is None
    assert publisher.events() == []


def test_busy_plc_skips_cycle() -> None:
    poller, _, _ = _scheduler(FakeRegisters(error=BusyError("busy")))
    assert poller.run_cycle() is False
    assert poller.failed_reads == 1


def test_cycle_updates_mapped_chambers() -> None:
    poller, store, publisher = _scheduler(FakeRegisters([5000, 4000]))
    seen: list[tuple[int, int, int]] = []
    poller.register_callback(lambda chamber, raw, idx: seen.append((chamber.id, raw, idx)))

    assert poller.run_cycle() is True
    assert store.get_chamber(1).last_raw_value == 5000
    assert store.get_chamber(2).last_raw_value == 4000
    assert sorted(seen) == [(1, 5000, 0), (2, 4000, 1)]

    events = publisher.events(event=EVENT_CHAMBER_RAW_VALUE, topic="chamber-1")
    assert len(events) == 1
    payload = events[0][2]
    assert payload["chamber_name"] == "Main"
    assert payload["last_raw_value"] == 5000
    assert payload["sensor_index"] == 0
    assert len(publisher.events(event=EVENT_CHAMBER_RAW_VALUE, topic="global")) == 2
    assert poller.stats()["success_rate"] == "100.00%"


def test_unmapped_and_out_of_range_chambers_are_skipped() -> None:
    chambers = [Chamber(id=1, name="Main"), Chamber(id=2, name="Entry"), Chamber(id=3, name="Lock")]
    poller, store, _ = _scheduler(
        FakeRegisters([5000]), chambers=chambers, sensor_mapping={1: 0, 2: 5}
    )
    assert poller.run_cycle() is True
    assert store.get_chamber(1).last_raw_value == 5000
    assert store.get_chamber(2).last_raw_value is None
    assert store.get_chamber(3).last_raw_value is None


def test_inactive_chambers_are_not_updated() -> None:
    chambers = [Chamber(id=1, name="Main"), Chamber(id=2, name="Entry", is_active=False)]
    poller, store, _ = _scheduler(FakeRegisters([5000, 4000]), chambers=chambers)
    poller.run_cycle()
    assert store.get_chamber(2).last_raw_value is None


def test_callback_failure_does_not_stop_other_chambers() -> None:
    poller, store, _ = _scheduler(FakeRegisters([5000, 4000]))

    def flaky(chamber, raw, idx):
        if chamber.id == 1:
            raise RuntimeError("boom")

    poller.register_callback(flaky)
    assert poller.run_cycle() is True
    assert store.get_chamber(2).last_raw_value == 4000


def test_success_rate_formatting() -> None:
    registers = FakeRegisters([5000, 4000])
    poller, _, _ = _scheduler(registers)
    poller.run_cycle()
    poller.run_cycle()
    registers.error = PlcConnectionError("down")
    poller.run_cycle()
    assert poller.stats()["success_rate"] == "66.67%"


def test_interval_validation() -> None:
    with pytest.raises(ValidationError):
        _scheduler(FakeRegisters(), interval_ms=50)
    poller, _, _ = _scheduler(FakeRegisters())
    with pytest.raises(ValidationError):
        poller.update_interval(99)
    poller.update_interval(250)
    assert poller.stats()["interval"] == 250
    assert not poller.is_running


def test_start_never_raises_and_stop_is_idempotent() -> None:
    registers = FakeRegisters(error=PlcConnectionError("refused"))
    poller, _, _ = _scheduler(registers, interval_ms=100)
    assert poller.start() is True
    assert poller.start() is False
    assert registers.called.wait(1.0)
    assert poller.stop() is True
    assert poller.stop() is False
    poller.join(timeout=1.0)
    assert poller.failed_reads >= 1
    assert not poller.is_running


def test_update_interval_restarts_running_scheduler() -> None:
    registers = FakeRegisters()
    poller, _, _ = _scheduler(registers, interval_ms=1000)
    poller.start()
    try:
        assert registers.called.wait(1.0)
        calls = registers.calls
        poller.update_interval(100)
        assert poller.is_running
        time.sleep(0.35)
        assert registers.calls > calls
    finally:
        poller.stop()
        poller.join(timeout=1.0)


def test_update_sensor_mapping_merges() -> None:
    poller, store, _ = _scheduler(FakeRegisters([5000, 4000, 3000]), chambers=[
        Chamber(id=1, name="Main"), Chamber(id=3, name="Lock"),
    ], read_count=3)
    poller.update_sensor_mapping({3: 2})
    assert poller.sensor_mapping == {1: 0, 2: 1, 3: 2}
    poller.run_cycle()
    assert store.get_chamber(3).last_raw_value == 3000
