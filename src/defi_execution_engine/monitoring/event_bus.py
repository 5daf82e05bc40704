"""Background event bus for execution, routing and position lifecycle events.

Publishing never blocks the trading path: events are queued and a daemon
thread records history, derives metrics, writes the event log and then calls
subscribers. A failing subscriber or ledger write is logged and skipped.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from ..datalake.schemas import EventLogRecord
from .logger import current_correlation_id
from .metrics import MetricsRegistry

if TYPE_CHECKING:
    from ..datalake.storage import SQLiteStorage


class EventType(str, Enum):
    EXECUTION = "execution"
    REJECT = "reject"
    DEFERRAL = "deferral"
    ROUTER = "router"
    POSITION = "position"
    REBALANCE = "rebalance"
    HEALTH = "health"


class EventSeverity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Payload key whose value is counted per event type, e.g. reject_reason.InsufficientLiquidity.
_REASON_COUNTERS: Dict[EventType, Tuple[str, str]] = {
    EventType.REJECT: ("reason", "reject_reason"),
    EventType.DEFERRAL: ("reason", "deferral_reason"),
    EventType.REBALANCE: ("reason", "rebalance_reason"),
    EventType.POSITION: ("action", "position_action"),
}

# Numeric payload key observed into a histogram.
_OBSERVED_FIELDS: Dict[EventType, Tuple[str, str]] = {
    EventType.EXECUTION: ("latency_seconds", "execution_latency_seconds"),
    EventType.ROUTER: ("efficiency", "route_efficiency"),
}


@dataclass(slots=True)
class Event:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: EventSeverity = EventSeverity.INFO
    correlation_id: Optional[str] = None

    def to_record(self) -> EventLogRecord:
        return EventLogRecord(
            timestamp=self.timestamp,
            event_type=self.type.value,
            severity=self.severity.value,
            payload=self.payload,
            correlation_id=self.correlation_id,
        )


Subscriber = Callable[[Event], None]


class EventBus:
    def __init__(self, history_size: int = 500) -> None:
        self._queue: "queue.Queue[Event]" = queue.Queue()
        self._subscribers: Dict[Optional[EventType], List[Subscriber]] = {}
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._lock = threading.RLock()
        self._logger = logging.getLogger(__name__)
        self._metrics: Optional[MetricsRegistry] = None
        self._storage: Optional["SQLiteStorage"] = None
        self._worker = threading.Thread(target=self._drain, name="engine-events", daemon=True)
        self._worker.start()

    def attach_metrics(self, registry: Optional[MetricsRegistry]) -> None:
        self._metrics = registry

    def attach_storage(self, storage: Optional["SQLiteStorage"]) -> None:
        self._storage = storage

    def subscribe(self, event_type: Optional[EventType], handler: Subscriber) -> None:
        """Register ``handler`` for one event type, or for every type when ``event_type`` is None."""

        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)

    def publish(
        self,
        event_type: Union[EventType, str],
        payload: Optional[Dict[str, Any]] = None,
        *,
        severity: EventSeverity = EventSeverity.INFO,
        correlation_id: Optional[str] = None,
    ) -> Event:
        """Queue an event; the correlation id defaults to the caller's ``correlation_scope``."""

        if not isinstance(event_type, EventType):
            try:
                event_type = EventType(event_type)
            except ValueError as exc:
                raise ValueError(f"Unsupported event type: {event_type}") from exc
        event = Event(
            type=event_type,
            payload=dict(payload or {}),
            severity=severity,
            correlation_id=correlation_id or current_correlation_id(),
        )
        self._queue.put(event)
        return event

    def history(self, limit: int = 100, event_type: Optional[EventType] = None) -> List[Event]:
        with self._lock:
            events = [event for event in self._history if event_type is None or event.type == event_type]
        return events[-limit:]

    def flush(self, timeout: float = 1.0) -> bool:
        """Wait up to ``timeout`` seconds for queued events to be dispatched."""

        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.005)
        return True

    def reset(self) -> None:
        """Drain, then drop subscribers, history and attachments. Used between tests."""

        self.flush()
        with self._lock:
            self._subscribers.clear()
            self._history.clear()
        self._metrics = None
        self._storage = None

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            try:
                self._dispatch(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("Failed to dispatch %s event", event.type.value)
            finally:
                self._queue.task_done()

    def _dispatch(self, event: Event) -> None:
        with self._lock:
            self._history.append(event)
            handlers = self._subscribers.get(event.type, []) + self._subscribers.get(None, [])
        if event.severity in (EventSeverity.ERROR, EventSeverity.CRITICAL):
            self._logger.warning("%s event: %s", event.type.value, event.payload)
        self._count(event)
        self._persist(event)
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("Subscriber %r failed on %s event", handler, event.type.value)

    def _count(self, event: Event) -> None:
        metrics = self._metrics
        if metrics is None:
            return
        metrics.increment(f"events.{event.type.value}")
        if event.type in _REASON_COUNTERS:
            key, prefix = _REASON_COUNTERS[event.type]
            value = event.payload.get(key)
            if isinstance(value, str):
                metrics.increment(f"{prefix}.{value}")
        if event.type in _OBSERVED_FIELDS:
            key, name = _OBSERVED_FIELDS[event.type]
            value = event.payload.get(key)
            if isinstance(value, (int, float)):
                metrics.observe(name, float(value))

    def _persist(self, event: Event) -> None:
        storage = self._storage
        if storage is None:
            return
        try:
            storage.record_event_log(event.to_record())
        except Exception:  # noqa: BLE001
            self._logger.exception("Failed to persist %s event", event.type.value)


EVENT_BUS = EventBus()


__all__ = [
    "EVENT_BUS",
    "Event",
    "EventBus",
    "EventSeverity",
    "EventType",
]
