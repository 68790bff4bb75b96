"""Sync engine - push/pull cycles between the local store and the remote store."""

from sync_engine.coordinator import SyncCoordinator, classify_failure
from sync_engine.progress import ProgressCallback, ProgressTracker
from sync_engine.session import SyncSession, build_session

__all__ = [
    "SyncCoordinator",
    "classify_failure",
    "ProgressCallback",
    "ProgressTracker",
    "SyncSession",
    "build_session",
]
