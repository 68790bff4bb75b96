"""Sync outcome, event and status models.

Every cycle returns a list of EntityOutcome records, one per entity it touched,
so callers and tests can assert on failures directly instead of reading logs.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from core.models.records import EntityKind


class SyncDirection(str, Enum):
    """Replication direction."""
    PULL = "pull"  # remote -> local
    PUSH = "push"  # local -> remote


class OutcomeStatus(str, Enum):
    """What happened to one entity during a cycle."""
    INSERTED = "INSERTED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"
    SKIPPED_DUPLICATE = "SKIPPED_DUPLICATE"  # child id already present locally
    SKIPPED_NOT_NEWER = "SKIPPED_NOT_NEWER"  # local copy is as new or newer
    SKIPPED_INVALID = "SKIPPED_INVALID"      # placeholder / unusable remote record
    SKIPPED_DELETED = "SKIPPED_DELETED"      # deleted locally, deletion not pushed yet
    FAILED = "FAILED"


class FailureKind(str, Enum):
    """Category of a per-entity failure."""
    CONNECTIVITY = "CONNECTIVITY"
    TIMEOUT = "TIMEOUT"
    IDENTITY_MISMATCH = "IDENTITY_MISMATCH"
    REMOTE_ERROR = "REMOTE_ERROR"
    DURABILITY = "DURABILITY"
    PARENT_FAILED = "PARENT_FAILED"
    CANCELLED = "CANCELLED"


class EntityOutcome(BaseModel):
    """Result of syncing a single entity.

    Attributes:
        kind: Entity kind
        key: Entity key (invoice number, box id, ...)
        status: What happened
        parent_key: Shipment key for boxes, box id for products
        failure: Failure category when status is FAILED (or a warning)
        message: Human-readable detail
    """
    kind: EntityKind
    key: str
    status: OutcomeStatus
    parent_key: Optional[str] = None
    failure: Optional[FailureKind] = None
    message: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED

    @property
    def changed(self) -> bool:
        return self.status in (OutcomeStatus.INSERTED, OutcomeStatus.UPDATED, OutcomeStatus.DELETED)


# =============================================================================
# Sync Event Models
# =============================================================================

class EventSeverity(str, Enum):
    """Severity levels for sync events."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class SyncEvent(BaseModel):
    """A typed event emitted by the coordinator.

    Logging, metrics and UI progress all subscribe to these instead of the
    coordinator writing to each of them directly.
    """
    event_id: str = Field(..., description="Unique event identifier")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Event timestamp")
    event_type: str = Field(..., description="SyncEventType value")
    severity: EventSeverity = Field(default=EventSeverity.INFO)

    # Context
    owner_id: Optional[str] = Field(None, description="Owner partition")
    cycle_id: Optional[str] = Field(None, description="Cycle that emitted the event")
    direction: Optional[SyncDirection] = None
    phase: Optional[str] = None

    # Entity
    entity_kind: Optional[EntityKind] = None
    entity_key: Optional[str] = None

    # Progress
    progress_percent: Optional[float] = None

    message: str = Field(..., description="Human-readable message")
    details: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# UI-facing Status Models
# =============================================================================

class SyncStatus(BaseModel):
    """Current sync state for one owner."""
    is_syncing: bool = False
    progress_percent: float = 0.0
    status_message: str = "Idle"
    phase: str = "IDLE"
    direction: Optional[SyncDirection] = None


class DataSourceInfo(BaseModel):
    """Where reads and writes are currently going."""
    is_online: bool
    force_offline: bool
    owner_id: Optional[str] = None


class SyncSummary(BaseModel):
    """Record counts on both sides plus last sync time.

    remote_count is None when the remote store could not be reached.
    """
    local_count: int = 0
    remote_count: Optional[int] = None
    pending_count: int = 0
    last_sync_timestamp: Optional[int] = None
