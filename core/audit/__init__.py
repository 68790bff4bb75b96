"""Core audit module - sync event emission and sinks."""

from core.audit.events import (
    SyncEventBus,
    SyncEventType,
    EventSink,
    InMemoryEventSink,
    LoggingEventSink,
    MetricsEventSink,
    CallbackEventSink,
    create_sync_event,
)

__all__ = [
    "SyncEventBus",
    "SyncEventType",
    "EventSink",
    "InMemoryEventSink",
    "LoggingEventSink",
    "MetricsEventSink",
    "CallbackEventSink",
    "create_sync_event",
]
