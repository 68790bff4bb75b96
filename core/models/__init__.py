"""Core data models shared by the local and remote stores."""

from core.models.records import (
    EntityKind,
    MASTER_DATA_KINDS,
    SyncRecord,
    Shipment,
    Box,
    Product,
    MasterDataRecord,
    AnyRecord,
    model_for_kind,
    now_ms,
)

from core.models.refs import (
    SyncDirection,
    OutcomeStatus,
    FailureKind,
    EntityOutcome,
    EventSeverity,
    SyncEvent,
    SyncStatus,
    DataSourceInfo,
    SyncSummary,
)

__all__ = [
    # Records
    "EntityKind",
    "MASTER_DATA_KINDS",
    "SyncRecord",
    "Shipment",
    "Box",
    "Product",
    "MasterDataRecord",
    "AnyRecord",
    "model_for_kind",
    "now_ms",
    # Outcomes / events
    "SyncDirection",
    "OutcomeStatus",
    "FailureKind",
    "EntityOutcome",
    "EventSeverity",
    "SyncEvent",
    # Status
    "SyncStatus",
    "DataSourceInfo",
    "SyncSummary",
]
