from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Protocol

from .errors import NotFoundError
from .models import Alarm, AlarmKind, Chamber, SensorStatus, utc_now
from .publish import EVENT_ALARM_RESOLVED, EVENT_ALARM_TRIGGERED, Publisher, broadcast
from .store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_ALARM_REGISTERS: Dict[int, str] = {1: "M00407", 2: "M00408"}
DEFAULT_MUTE = timedelta(hours=1)

# Kinds mirrored on the chamber's PLC alarm bit.
PLC_FEEDBACK_KINDS = frozenset({AlarmKind.HIGH_O2, AlarmKind.LOW_O2})


class RegisterWriter(Protocol):
    def write_register(self, address: str, value: int) -> bool: ...


@dataclass
class AlarmEvaluation:
    triggered: List[Alarm] = field(default_factory=list)
    resolved: List[Alarm] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.triggered or self.resolved)


class AlarmStateMachine:
    """
    Drives alarm records from calibrated readings and mirrors O2 alarms onto the
    PLC. The record store is authoritative: PLC feedback is best-effort and a
    failed write never reverts or fails a record change.
    """

    def __init__(
        self,
        store: RecordStore,
        plc: Optional[RegisterWriter] = None,
        publisher: Optional[Publisher] = None,
        registers: Optional[Mapping[int, str]] = None,
        mute_duration: timedelta = DEFAULT_MUTE,
    ) -> None:
        self.store = store
        self.plc = plc
        self.publisher = publisher
        self.registers: Dict[int, str] = dict(
            DEFAULT_ALARM_REGISTERS if registers is None else registers
        )
        self.mute_duration = mute_duration
        self._chamber_locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def alarm_register(self, chamber_id: int) -> Optional[str]:
        return self.registers.get(chamber_id)

    def evaluate(
        self,
        chamber_id: int,
        o2_level: float,
        sensor_status: SensorStatus | str = SensorStatus.NORMAL,
        levels_known: bool = True,
    ) -> AlarmEvaluation:
        """
        Trigger or resolve each alarm kind for one reading.

        The O2 threshold kinds are left untouched when *levels_known* is false
        (no active calibration) or the sensor reports an error.
        """
        result = AlarmEvaluation()
        status = SensorStatus(sensor_status)
        with self._lock_for(chamber_id):
            chamber = self.store.get_chamber(chamber_id)
            if chamber is None:
                logger.warning("No settings found for chamber %s", chamber_id)
                return result
            conditions: Dict[AlarmKind, bool] = {}
            if levels_known and status is not SensorStatus.ERROR:
                conditions[AlarmKind.HIGH_O2] = o2_level > chamber.alarm_level_high
                conditions[AlarmKind.LOW_O2] = o2_level < chamber.alarm_level_low
            conditions[AlarmKind.SENSOR_ERROR] = status is SensorStatus.ERROR
            conditions[AlarmKind.CALIBRATION_DUE] = chamber.is_calibration_required
            for kind, breached in conditions.items():
                active = self.store.find_active_alarm(chamber_id, kind)
                if breached and active is None:
                    result.triggered.append(self._trigger(chamber, kind, o2_level))
                elif not breached and active is not None:
                    result.resolved.append(self._resolve(active))
        return result

    def mute_alarm(self, alarm_id: int, muted_until: Optional[datetime] = None) -> Alarm:
        chamber_id = self._require_alarm(alarm_id).chamber_id
        until = muted_until or utc_now() + self.mute_duration
        with self._lock_for(chamber_id):
            alarm = self.store.update_alarm(alarm_id, is_muted=True, muted_until=until)
            if alarm is None:
                raise NotFoundError(f"Alarm {alarm_id} not found")
            # Muting clears the hardware bit even though the record stays active.
            self._send_feedback(alarm.chamber_id, 0)
        logger.info("Alarm %s muted until %s", alarm_id, until.isoformat())
        return alarm

    def resolve_alarm(self, alarm_id: int) -> Alarm:
        chamber_id = self._require_alarm(alarm_id).chamber_id
        with self._lock_for(chamber_id):
            alarm = self.store.update_alarm(alarm_id, is_active=False, resolved_at=utc_now())
            if alarm is None:
                raise NotFoundError(f"Alarm {alarm_id} not found")
            self._send_feedback(alarm.chamber_id, 0)
        broadcast(self.publisher, EVENT_ALARM_RESOLVED, self._payload(alarm), alarm.chamber_id)
        logger.info("Alarm %s manually resolved", alarm_id)
        return alarm

    def active_alarms(self) -> List[Alarm]:
        return self.store.query_alarms(active=True)

    def chamber_alarms(self, chamber_id: int, include_resolved: bool = False) -> List[Alarm]:
        return self.store.query_alarms(
            chamber_id=chamber_id, active=None if include_resolved else True
        )

    def alarm_history(
        self,
        chamber_id: Optional[int] = None,
        kind: Optional[AlarmKind | str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Alarm]:
        return self.store.query_alarms(
            chamber_id=chamber_id,
            kind=AlarmKind(kind) if kind is not None else None,
            start=start if start and end else None,
            end=end if start and end else None,
            limit=limit,
            offset=offset,
        )

    def _trigger(self, chamber: Chamber, kind: AlarmKind, o2_level: float) -> Alarm:
        alarm = self.store.create_alarm(
            Alarm(
                chamber_id=chamber.id,
                kind=kind,
                o2_level_when_triggered=o2_level if kind in PLC_FEEDBACK_KINDS else None,
                triggered_at=utc_now(),
            )
        )
        if kind is AlarmKind.SENSOR_ERROR:
            logger.warning("Sensor error alarm triggered for chamber %s", chamber.id)
        else:
            logger.info("%s alarm triggered for chamber %s: %s%%", kind.value, chamber.id, o2_level)
        broadcast(self.publisher, EVENT_ALARM_TRIGGERED, self._payload(alarm), chamber.id)
        if kind in PLC_FEEDBACK_KINDS:
            self._send_feedback(chamber.id, 1)
        return alarm

    def _resolve(self, alarm: Alarm) -> Alarm:
        resolved = self.store.update_alarm(alarm.id, is_active=False, resolved_at=utc_now())  # type: ignore[arg-type]
        resolved = resolved or alarm
        logger.info("%s alarm resolved for chamber %s", alarm.kind.value, alarm.chamber_id)
        broadcast(self.publisher, EVENT_ALARM_RESOLVED, self._payload(resolved), alarm.chamber_id)
        if alarm.kind in PLC_FEEDBACK_KINDS:
            self._send_feedback(alarm.chamber_id, 0)
        return resolved

    def _send_feedback(self, chamber_id: int, value: int) -> None:
        register = self.alarm_register(chamber_id)
        if register is None or self.plc is None:
            return
        try:
            ok = self.plc.write_register(register, value)
        except Exception:
            logger.error("PLC alarm write failed: register=%s value=%s", register, value, exc_info=True)
            return
        if ok:
            logger.info("PLC alarm bit written: register=%s, value=%s", register, value)
        else:
            logger.error("PLC alarm write failed: register=%s value=%s", register, value)

    def _lock_for(self, chamber_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._chamber_locks.setdefault(chamber_id, threading.Lock())

    def _require_alarm(self, alarm_id: int) -> Alarm:
        alarm = self.store.get_alarm(alarm_id)
        if alarm is None:
            raise NotFoundError(f"Alarm {alarm_id} not found")
        return alarm

    @staticmethod
    def _payload(alarm: Alarm) -> Dict[str, object]:
        return {**alarm.as_dict(), "timestamp": utc_now().isoformat()}
