"""Fire-and-forget notification seam used by the scheduler, alarms and calibration."""
from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

GLOBAL_TOPIC = "global"

EVENT_CHAMBER_RAW_VALUE = "chamber-raw-value"
EVENT_NEW_READING = "new-reading"
EVENT_ALARM_TRIGGERED = "alarm-triggered"
EVENT_ALARM_RESOLVED = "alarm-resolved"
EVENT_CALIBRATION_PERFORMED = "calibration-performed"
EVENT_PERIODIC_CHAMBER_DATA = "periodic-chamber-data"


def chamber_topic(chamber_id: int) -> str:
    return f"chamber-{chamber_id}"


class Publisher(Protocol):
    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None: ...


def broadcast(
    publisher: Optional[Publisher],
    event: str,
    payload: Dict[str, Any],
    chamber_id: Optional[int] = None,
) -> None:
    """Deliver *payload* to the chamber topic (when given) and the global topic.

    Delivery is best-effort: a failing publisher is logged and never propagates.
    """
    if publisher is None:
        return
    topics = [GLOBAL_TOPIC] if chamber_id is None else [chamber_topic(chamber_id), GLOBAL_TOPIC]
    for topic in topics:
        try:
            publisher.publish(topic, event, payload)
        except Exception:
            logger.warning("Failed to publish %s to %s", event, topic, exc_info=True)


class LoggingPublisher:
    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        logger.log(self._level, "[%s] %s %s", topic, event, payload)


class CollectingPublisher:
    """Keeps the most recent events in memory (CLI tail and tests)."""

    def __init__(self, maxlen: int = 1000) -> None:
        self._events: Deque[Tuple[str, str, Dict[str, Any]]] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._events.append((topic, event, dict(payload)))

    def events(self, event: Optional[str] = None, topic: Optional[str] = None) -> List[Tuple[str, str, Dict[str, Any]]]:
        with self._lock:
            return [
                item
                for item in self._events
                if (event is None or item[1] == event) and (topic is None or item[0] == topic)
            ]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
