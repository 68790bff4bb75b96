"""Sync cycle state types.

A cycle walks through the phases below and always ends back in IDLE with a
CycleResult:

    IDLE -> CHECKING_CONNECTIVITY -> PULLING_MASTER_DATA -> PULLING_SHIPMENTS
         -> PULLING_CHILDREN -> IDLE (SUCCESS | PARTIAL_FAILURE)

Push cycles mirror this with the PUSHING_* phases.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from core.errors import PartialSyncFailure
from core.models.records import EntityKind
from core.models.refs import EntityOutcome, FailureKind, OutcomeStatus, SyncDirection


class SyncPhase(str, Enum):
    """Sync cycle phases."""
    IDLE = "IDLE"
    CHECKING_CONNECTIVITY = "CHECKING_CONNECTIVITY"
    PULLING_MASTER_DATA = "PULLING_MASTER_DATA"
    PULLING_SHIPMENTS = "PULLING_SHIPMENTS"
    PULLING_CHILDREN = "PULLING_CHILDREN"
    PUSHING_DELETIONS = "PUSHING_DELETIONS"
    PUSHING_MASTER_DATA = "PUSHING_MASTER_DATA"
    PUSHING_SHIPMENTS = "PUSHING_SHIPMENTS"


class CycleResult(str, Enum):
    """How a cycle ended."""
    SUCCESS = "SUCCESS"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    ABORTED = "ABORTED"
    CANCELLED = "CANCELLED"
    COALESCED = "COALESCED"  # another cycle was already running for the owner


@dataclass
class SyncCycleReport:
    """Standard cycle result structure."""
    cycle_id: str
    owner_id: str
    direction: SyncDirection
    started_at: datetime
    result: CycleResult = CycleResult.SUCCESS
    completed_at: Optional[datetime] = None
    phase: SyncPhase = SyncPhase.IDLE

    outcomes: List[EntityOutcome] = field(default_factory=list)

    error_message: Optional[str] = None
    error_details: Dict[str, Any] = field(default_factory=dict)

    def record(
        self,
        kind: EntityKind,
        key: str,
        status: OutcomeStatus,
        parent_key: Optional[str] = None,
        failure: Optional[FailureKind] = None,
        message: Optional[str] = None,
    ) -> EntityOutcome:
        """Append an outcome and return it."""
        outcome = EntityOutcome(
            kind=kind,
            key=key,
            status=status,
            parent_key=parent_key,
            failure=failure,
            message=message,
        )
        self.outcomes.append(outcome)
        return outcome

    @property
    def failures(self) -> List[EntityOutcome]:
        return [o for o in self.outcomes if o.failed]

    @property
    def warnings(self) -> List[EntityOutcome]:
        return [o for o in self.outcomes if o.failure == FailureKind.IDENTITY_MISMATCH]

    def outcomes_for(self, kind: EntityKind, status: Optional[OutcomeStatus] = None) -> List[EntityOutcome]:
        return [
            o for o in self.outcomes
            if o.kind == kind and (status is None or o.status == status)
        ]

    def count(self, status: OutcomeStatus, kind: Optional[EntityKind] = None) -> int:
        return sum(
            1 for o in self.outcomes
            if o.status == status and (kind is None or o.kind == kind)
        )

    def finish(self) -> None:
        """Close the report, deciding SUCCESS vs PARTIAL_FAILURE from outcomes."""
        self.completed_at = datetime.utcnow()
        self.phase = SyncPhase.IDLE
        if self.result == CycleResult.SUCCESS and self.failures:
            self.result = CycleResult.PARTIAL_FAILURE

    def raise_for_failures(self) -> "SyncCycleReport":
        """Return the report, or raise if any entity failed.

        Raises:
            PartialSyncFailure: Carries the failed outcomes
        """
        failures = self.failures
        if failures:
            raise PartialSyncFailure(
                f"{self.direction.value} cycle {self.cycle_id}: {len(failures)} of "
                f"{len(self.outcomes)} entities failed",
                outcomes=failures,
            )
        return self

    @property
    def duration_ms(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "cycle_id": self.cycle_id,
            "owner_id": self.owner_id,
            "direction": self.direction.value,
            "result": self.result.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "counts": {
                status.value: self.count(status)
                for status in OutcomeStatus
                if self.count(status)
            },
            "failures": [o.model_dump(mode="json") for o in self.failures],
            "error": {
                "message": self.error_message,
                "details": self.error_details,
            } if self.error_message else None,
        }
