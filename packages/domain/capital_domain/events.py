"""Notification / audit sink.

The engine calls record_event() after a mutation has committed. Sinks are
fire-and-forget: a failing sink is logged and never rolls back or fails the
financial mutation that produced the event.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventSink(ABC):
    """Receives audit/notification events from the engine."""

    @abstractmethod
    def record_event(
        self,
        event_type: str,
        entity_ids: Dict[str, Optional[int]],
        payload: Dict[str, Any],
    ) -> None:
        """Record one event.

        Args:
            event_type: e.g. "payment_processed"
            entity_ids: IDs of the records involved, keyed by entity name
            payload: Event-specific data (amounts, statuses, ...)
        """
        pass


class NullEventSink(EventSink):
    """Discards every event."""

    def record_event(self, event_type, entity_ids, payload) -> None:
        return None


class LoggingEventSink(EventSink):
    """Writes events to a logger at INFO."""

    def __init__(self, logger_name: str = "capital_domain.audit"):
        self._logger = logging.getLogger(logger_name)

    def record_event(self, event_type, entity_ids, payload) -> None:
        self._logger.info("%s %s %s", event_type, entity_ids, payload)


@dataclass
class RecordedEvent:
    event_type: str
    entity_ids: Dict[str, Optional[int]]
    payload: Dict[str, Any]
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryEventSink(EventSink):
    """Keeps events in arrival order."""

    def __init__(self):
        self._events: List[RecordedEvent] = []
        self._lock = threading.Lock()

    def record_event(self, event_type, entity_ids, payload) -> None:
        with self._lock:
            self._events.append(RecordedEvent(event_type, dict(entity_ids), dict(payload)))

    @property
    def events(self) -> List[RecordedEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: str) -> List[RecordedEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def emit_event(
    sink: EventSink,
    event_type: str,
    entity_ids: Dict[str, Optional[int]],
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """Deliver an event, isolating the caller from sink failures."""
    try:
        sink.record_event(event_type, entity_ids, payload or {})
    except Exception:
        logger.warning("Event sink failed for %s %s", event_type, entity_ids, exc_info=True)
