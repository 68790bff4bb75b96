"""Sync event emission and fan-out.

The coordinator emits typed SyncEvents for every cycle transition and every
entity it touches. Sinks subscribe to the bus: logging, metrics and UI
progress all consume the same stream instead of the coordinator writing to
each of them directly.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from core.models.records import EntityKind
from core.models.refs import EventSeverity, SyncDirection, SyncEvent
from core.observability.logging import get_logger
from core.observability.metrics import MetricsCollector, get_metrics


logger = get_logger(__name__)


class SyncEventType(str, Enum):
    """Standard sync event types."""
    # Cycle events
    CYCLE_STARTED = "CYCLE_STARTED"
    CYCLE_COMPLETED = "CYCLE_COMPLETED"
    CYCLE_ABORTED = "CYCLE_ABORTED"
    CYCLE_CANCELLED = "CYCLE_CANCELLED"
    CYCLE_COALESCED = "CYCLE_COALESCED"
    PHASE_CHANGED = "PHASE_CHANGED"
    PROGRESS = "PROGRESS"

    # Entity events
    ENTITY_SYNCED = "ENTITY_SYNCED"
    ENTITY_SKIPPED = "ENTITY_SKIPPED"
    ENTITY_FAILED = "ENTITY_FAILED"
    IDENTITY_MISMATCH = "IDENTITY_MISMATCH"

    # Single-entity writes
    LOCAL_WRITE = "LOCAL_WRITE"
    REMOTE_WRITE_FAILED = "REMOTE_WRITE_FAILED"

    # Session / connectivity
    SESSION_LOGIN = "SESSION_LOGIN"
    SESSION_LOGOUT = "SESSION_LOGOUT"
    CONNECTIVITY_CHANGED = "CONNECTIVITY_CHANGED"


def create_sync_event(
    event_type: SyncEventType,
    message: str,
    severity: EventSeverity = EventSeverity.INFO,
    owner_id: Optional[str] = None,
    cycle_id: Optional[str] = None,
    direction: Optional[SyncDirection] = None,
    phase: Optional[str] = None,
    entity_kind: Optional[EntityKind] = None,
    entity_key: Optional[str] = None,
    progress_percent: Optional[float] = None,
    details: Optional[Dict[str, Any]] = None,
) -> SyncEvent:
    """Create a new sync event with auto-generated ID and timestamp.

    Args:
        event_type: Type of event
        message: Human-readable message
        severity: Event severity level
        owner_id: Owner partition
        cycle_id: Cycle that emitted the event
        direction: Pull or push
        phase: SyncPhase value at emission time
        entity_kind: Kind of the entity concerned
        entity_key: Key of the entity concerned
        progress_percent: Progress value for PROGRESS events
        details: Additional structured details

    Returns:
        Configured SyncEvent ready for emission
    """
    return SyncEvent(
        event_id=str(uuid.uuid4()),
        timestamp=datetime.utcnow(),
        event_type=event_type.value,
        severity=severity,
        owner_id=owner_id,
        cycle_id=cycle_id,
        direction=direction,
        phase=phase,
        entity_kind=entity_kind,
        entity_key=entity_key,
        progress_percent=progress_percent,
        message=message,
        details=details or {},
    )


class EventSink(ABC):
    """Abstract base class for sync event consumers."""

    @abstractmethod
    def handle(self, event: SyncEvent) -> None:
        """Consume one event."""
        pass


class InMemoryEventSink(EventSink):
    """In-memory sink for testing and for recent-activity views."""

    def __init__(self, max_events: int = 10000):
        self._events: List[SyncEvent] = []
        self.max_events = max_events

    def handle(self, event: SyncEvent) -> None:
        self._events.append(event)
        if len(self._events) > self.max_events:
            self._events = self._events[-self.max_events:]

    @property
    def events(self) -> List[SyncEvent]:
        return list(self._events)

    def query(
        self,
        event_type: Optional[str] = None,
        owner_id: Optional[str] = None,
        cycle_id: Optional[str] = None,
        entity_key: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncEvent]:
        results = []
        for event in self._events:
            if event_type and event.event_type != event_type:
                continue
            if owner_id and event.owner_id != owner_id:
                continue
            if cycle_id and event.cycle_id != cycle_id:
                continue
            if entity_key and event.entity_key != entity_key:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def clear(self) -> None:
        """Clear all events (for testing)."""
        self._events.clear()


_SEVERITY_LEVELS = {
    EventSeverity.DEBUG: logging.DEBUG,
    EventSeverity.INFO: logging.INFO,
    EventSeverity.WARN: logging.WARNING,
    EventSeverity.ERROR: logging.ERROR,
}


class LoggingEventSink(EventSink):
    """Writes every event to the correlated logger."""

    def __init__(self, name: str = "sync_engine.events"):
        self._logger = get_logger(name)

    def handle(self, event: SyncEvent) -> None:
        extra = {
            "event_type": event.event_type,
            "cycle_id": event.cycle_id,
            "owner_id": event.owner_id,
        }
        if event.entity_key:
            extra["entity_kind"] = event.entity_kind.value if event.entity_kind else None
            extra["entity_key"] = event.entity_key
        if event.progress_percent is not None:
            extra["progress_percent"] = event.progress_percent
        extra.update(event.details)

        self._logger.log(_SEVERITY_LEVELS[event.severity], event.message, extra_fields=extra)


class MetricsEventSink(EventSink):
    """Feeds cycle and entity events into the MetricsCollector."""

    def __init__(self, collector: Optional[MetricsCollector] = None):
        self._metrics = collector or get_metrics()

    def handle(self, event: SyncEvent) -> None:
        direction = event.direction.value if event.direction else "unknown"
        event_type = event.event_type

        if event_type == SyncEventType.CYCLE_STARTED.value:
            self._metrics.record_cycle_started(direction)
        elif event_type in (
            SyncEventType.CYCLE_COMPLETED.value,
            SyncEventType.CYCLE_ABORTED.value,
            SyncEventType.CYCLE_CANCELLED.value,
            SyncEventType.CYCLE_COALESCED.value,
        ):
            self._metrics.record_cycle_finished(
                direction,
                event.details.get("result", "ABORTED"),
                event.details.get("duration_ms"),
            )
        elif event_type in (
            SyncEventType.ENTITY_SYNCED.value,
            SyncEventType.ENTITY_SKIPPED.value,
            SyncEventType.ENTITY_FAILED.value,
        ):
            kind = event.entity_kind.value if event.entity_kind else "unknown"
            self._metrics.record_entity_outcome(kind, event.details.get("status", "UNKNOWN"))
            if event.details.get("failure") == "TIMEOUT":
                self._metrics.record_remote_timeout()
            elif event.details.get("failure") == "REMOTE_ERROR":
                self._metrics.record_remote_error()
        elif event_type == SyncEventType.REMOTE_WRITE_FAILED.value:
            self._metrics.record_replication_failure()
        elif event_type == SyncEventType.CONNECTIVITY_CHANGED.value:
            self._metrics.record_connectivity(bool(event.details.get("online")))
        elif event_type == SyncEventType.PHASE_CHANGED.value and event.details.get("duration_ms"):
            self._metrics.record_processing_time(
                f"phase.{event.details.get('previous_phase')}",
                event.details["duration_ms"],
            )


class CallbackEventSink(EventSink):
    """Forwards events to a plain callable (UI progress subscribers)."""

    def __init__(self, callback: Callable[[SyncEvent], None], event_types: Optional[List[SyncEventType]] = None):
        self._callback = callback
        self._event_types = {t.value for t in event_types} if event_types else None

    def handle(self, event: SyncEvent) -> None:
        if self._event_types is not None and event.event_type not in self._event_types:
            return
        self._callback(event)


class SyncEventBus:
    """Fan-out bus that delivers each event to every registered sink.

    Usage:
        bus = SyncEventBus()
        bus.add_sink(LoggingEventSink())
        bus.add_sink(MetricsEventSink())

        bus.emit(create_sync_event(
            SyncEventType.CYCLE_STARTED,
            "Pull started",
            owner_id="user-1",
        ))
    """

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self._sinks: List[EventSink] = list(sinks or [])

    @classmethod
    def default(cls) -> "SyncEventBus":
        """Bus wired to logging and metrics."""
        return cls([LoggingEventSink(), MetricsEventSink()])

    def add_sink(self, sink: EventSink) -> None:
        """Register a sink."""
        self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def emit(self, event: SyncEvent) -> None:
        """Deliver event to all sinks."""
        for sink in list(self._sinks):
            try:
                sink.handle(event)
            except Exception as e:
                # A failing subscriber must not break a sync cycle
                logger.warning(
                    f"Event sink {type(sink).__name__} failed: {e}",
                    extra_fields={"event_type": event.event_type},
                )

    def emit_info(self, event_type: SyncEventType, message: str, **kwargs) -> SyncEvent:
        """Emit an INFO level event."""
        event = create_sync_event(event_type, message, EventSeverity.INFO, **kwargs)
        self.emit(event)
        return event

    def emit_warning(self, event_type: SyncEventType, message: str, **kwargs) -> SyncEvent:
        """Emit a WARN level event."""
        event = create_sync_event(event_type, message, EventSeverity.WARN, **kwargs)
        self.emit(event)
        return event

    def emit_error(self, event_type: SyncEventType, message: str, **kwargs) -> SyncEvent:
        """Emit an ERROR level event."""
        event = create_sync_event(event_type, message, EventSeverity.ERROR, **kwargs)
        self.emit(event)
        return event
