"""Sync engine error taxonomy.

Only DurabilityFailure is meant to reach the caller of a write. The other
classes are raised inside sync cycles, caught by the coordinator and recorded
as per-entity outcomes (or, for ConnectivityError, raised when a manually
triggered cycle cannot start).
"""

from typing import List, Optional, Sequence


class SyncError(Exception):
    """Base exception for sync engine errors."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class ConnectivityError(SyncError):
    """Remote store unreachable or forced offline. No remote I/O was attempted."""

    def __init__(self, message: str = "Remote store is not reachable", forced_offline: bool = False):
        super().__init__(message)
        self.forced_offline = forced_offline


class RemoteTimeoutError(SyncError):
    """A remote call exceeded its time bound (transient)."""

    def __init__(self, message: str, timeout_seconds: float = 0.0):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class IdentityMismatch(SyncError):
    """The same logical entity resolves to divergent data under two identifiers."""
    pass


class RepairNeeded(IdentityMismatch):
    """Divergent child sets found under two identifiers of one shipment.

    ``reference_key`` is the key compared against ``legacy_key``: the primary
    key, or the first populated legacy key when the primary key is empty.
    Carries both keys and both id sets so the records can be repaired manually.
    """

    def __init__(
        self,
        primary_key: str,
        legacy_key: str,
        primary_ids: Sequence[str],
        legacy_ids: Sequence[str],
        reference_key: Optional[str] = None,
    ):
        reference_key = reference_key or primary_key
        super().__init__(
            f"Shipment {primary_key} has divergent boxes under {reference_key} and {legacy_key}: "
            f"{sorted(primary_ids)} vs {sorted(legacy_ids)}",
            key=primary_key,
        )
        self.primary_key = primary_key
        self.reference_key = reference_key
        self.legacy_key = legacy_key
        self.primary_ids = sorted(primary_ids)
        self.legacy_ids = sorted(legacy_ids)


class PartialSyncFailure(SyncError):
    """Some entities failed to sync while their siblings succeeded."""

    def __init__(self, message: str, outcomes: Optional[List] = None):
        super().__init__(message)
        self.outcomes = outcomes or []


class DurabilityFailure(SyncError):
    """The LocalStore write itself failed. Always propagated to the caller."""
    pass


class OwnerScopeError(SyncError, ValueError):
    """A store call was made without a valid owner scope (programming error)."""
    pass


class SyncCancelled(SyncError):
    """A cycle was cancelled by a login/logout event."""
    pass
