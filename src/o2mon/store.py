"""
Record store seam.

The monitor core never talks to a database directly; it calls the named
operations of :class:`RecordStore`. Read paths return ``None`` or an empty list
for misses. :class:`InMemoryRecordStore` backs the CLI and the test-suite.
"""
from __future__ import annotations

import copy
import itertools
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

from .models import (
    Alarm,
    AlarmKind,
    CalibrationHistory,
    CalibrationPoints,
    Chamber,
    utc_now,
)


class RecordStore(Protocol):
    def get_chamber(self, chamber_id: int) -> Optional[Chamber]: ...

    def active_chambers(self) -> List[Chamber]: ...

    def update_chamber(self, chamber_id: int, **fields: Any) -> Optional[Chamber]: ...

    def create_alarm(self, alarm: Alarm) -> Alarm: ...

    def get_alarm(self, alarm_id: int) -> Optional[Alarm]: ...

    def update_alarm(self, alarm_id: int, **fields: Any) -> Optional[Alarm]: ...

    def find_active_alarm(self, chamber_id: int, kind: AlarmKind) -> Optional[Alarm]: ...

    def query_alarms(
        self,
        *,
        chamber_id: Optional[int] = None,
        kind: Optional[AlarmKind] = None,
        active: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Alarm]: ...

    def active_calibration(self, chamber_id: int) -> Optional[CalibrationPoints]: ...

    def deactivate_calibrations(self, chamber_id: int) -> int: ...

    def create_calibration(self, points: CalibrationPoints) -> CalibrationPoints: ...

    def list_calibrations(
        self, chamber_id: Optional[int] = None, limit: Optional[int] = None
    ) -> List[CalibrationPoints]: ...

    def append_calibration_history(self, entry: CalibrationHistory) -> CalibrationHistory: ...

    def list_calibration_history(self, chamber_id: Optional[int] = None) -> List[CalibrationHistory]: ...

    def transaction(self) -> Any: ...


class InMemoryRecordStore:
    """
    Process-local store. Rows are copied on the way in and out so callers never
    share mutable state with the store; ``transaction()`` snapshots everything and
    restores it if the block raises.
    """

    def __init__(self, chambers: Iterable[Chamber] = ()) -> None:
        self._lock = threading.RLock()
        self._chambers: Dict[int, Chamber] = {}
        self._alarms: Dict[int, Alarm] = {}
        self._calibrations: Dict[int, CalibrationPoints] = {}
        self._history: List[CalibrationHistory] = []
        self._ids = itertools.count(1)
        for chamber in chambers:
            self.add_chamber(chamber)

    def add_chamber(self, chamber: Chamber) -> Chamber:
        with self._lock:
            self._chambers[chamber.id] = copy.copy(chamber)
            return copy.copy(chamber)

    # chambers

    def get_chamber(self, chamber_id: int) -> Optional[Chamber]:
        with self._lock:
            chamber = self._chambers.get(chamber_id)
            return copy.copy(chamber) if chamber else None

    def active_chambers(self) -> List[Chamber]:
        with self._lock:
            return [
                copy.copy(chamber)
                for _, chamber in sorted(self._chambers.items())
                if chamber.is_active
            ]

    def update_chamber(self, chamber_id: int, **fields: Any) -> Optional[Chamber]:
        with self._lock:
            chamber = self._chambers.get(chamber_id)
            if chamber is None:
                return None
            updated = replace(chamber, updated_at=utc_now(), **fields)
            self._chambers[chamber_id] = updated
            return copy.copy(updated)

    # alarms

    def create_alarm(self, alarm: Alarm) -> Alarm:
        with self._lock:
            stored = replace(alarm, id=next(self._ids))
            self._alarms[stored.id] = stored
            return copy.copy(stored)

    def get_alarm(self, alarm_id: int) -> Optional[Alarm]:
        with self._lock:
            alarm = self._alarms.get(alarm_id)
            return copy.copy(alarm) if alarm else None

    def update_alarm(self, alarm_id: int, **fields: Any) -> Optional[Alarm]:
        with self._lock:
            alarm = self._alarms.get(alarm_id)
            if alarm is None:
                return None
            updated = replace(alarm, **fields)
            self._alarms[alarm_id] = updated
            return copy.copy(updated)

    def find_active_alarm(self, chamber_id: int, kind: AlarmKind) -> Optional[Alarm]:
        matches = self.query_alarms(chamber_id=chamber_id, kind=kind, active=True, limit=1)
        return matches[0] if matches else None

    def query_alarms(
        self,
        *,
        chamber_id: Optional[int] = None,
        kind: Optional[AlarmKind] = None,
        active: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Alarm]:
        with self._lock:
            rows = [
                alarm
                for alarm in self._alarms.values()
                if (chamber_id is None or alarm.chamber_id == chamber_id)
                and (kind is None or alarm.kind is kind)
                and (active is None or alarm.is_active == active)
                and (start is None or alarm.triggered_at >= start)
                and (end is None or alarm.triggered_at <= end)
            ]
            rows.sort(key=lambda alarm: (alarm.triggered_at, alarm.id or 0), reverse=True)
            stop = None if limit is None else offset + limit
            return [copy.copy(alarm) for alarm in rows[offset:stop]]

    # calibration

    def active_calibration(self, chamber_id: int) -> Optional[CalibrationPoints]:
        with self._lock:
            for points in self._calibrations.values():
                if points.chamber_id == chamber_id and points.is_active:
                    return copy.copy(points)
            return None

    def deactivate_calibrations(self, chamber_id: int) -> int:
        with self._lock:
            changed = 0
            for key, points in self._calibrations.items():
                if points.chamber_id == chamber_id and points.is_active:
                    self._calibrations[key] = replace(points, is_active=False)
                    changed += 1
            return changed

    def create_calibration(self, points: CalibrationPoints) -> CalibrationPoints:
        with self._lock:
            stored = replace(points, id=next(self._ids))
            self._calibrations[stored.id] = stored
            return copy.copy(stored)

    def list_calibrations(
        self, chamber_id: Optional[int] = None, limit: Optional[int] = None
    ) -> List[CalibrationPoints]:
        with self._lock:
            rows = [
                points
                for points in self._calibrations.values()
                if chamber_id is None or points.chamber_id == chamber_id
            ]
            rows.sort(key=lambda points: (points.calibrated_at, points.id or 0), reverse=True)
            return [copy.copy(points) for points in rows[:limit]]

    def append_calibration_history(self, entry: CalibrationHistory) -> CalibrationHistory:
        with self._lock:
            stored = replace(entry, id=next(self._ids))
            self._history.append(stored)
            return copy.copy(stored)

    def list_calibration_history(self, chamber_id: Optional[int] = None) -> List[CalibrationHistory]:
        with self._lock:
            return [
                copy.copy(entry)
                for entry in self._history
                if chamber_id is None or entry.chamber_id == chamber_id
            ]

    @contextmanager
    def transaction(self) -> Iterator["InMemoryRecordStore"]:
        with self._lock:
            snapshot = (
                copy.deepcopy(self._chambers),
                copy.deepcopy(self._alarms),
                copy.deepcopy(self._calibrations),
                copy.deepcopy(self._history),
            )
            try:
                yield self
            except BaseException:
                self._chambers, self._alarms, self._calibrations, self._history = snapshot
                raise
