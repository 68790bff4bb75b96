"""Core workflow module - sync cycle phases and reports."""

from core.workflow.base import (
    SyncPhase,
    CycleResult,
    SyncCycleReport,
)

__all__ = [
    "SyncPhase",
    "CycleResult",
    "SyncCycleReport",
]
