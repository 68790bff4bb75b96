"""Abstract Record Store Interface.

This module defines the uniform contract shared by the LocalStore and every
remote store. It is intentionally transport-agnostic: no SQL and no HTTP here.

Stores implement this interface to:
1. Fetch a single record or list records of one kind (optionally by parent)
2. Upsert records keyed by their natural key
3. Delete records, cascading Shipment -> Box -> Product
4. Count records for summaries

Key Design Principles:
- Every call is explicitly owner-scoped; an empty owner or a record belonging to
  another owner is a programming error (OwnerScopeError)
- All methods return the pydantic record models from core.models
- The IdentityResolver and SyncCoordinator depend ONLY on this interface
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Type

from core.errors import OwnerScopeError
from core.models.records import AnyRecord, EntityKind, SyncRecord


# =============================================================================
# Owner scoping
# =============================================================================

def require_owner(owner_id: Optional[str]) -> str:
    """Validate an owner scope.

    Raises:
        OwnerScopeError: If owner_id is empty
    """
    if not owner_id or not str(owner_id).strip():
        raise OwnerScopeError("Store call without an owner scope")
    return owner_id


def scope_record(owner_id: str, record: SyncRecord) -> SyncRecord:
    """Return ``record`` stamped with ``owner_id``.

    A record with no owner is adopted; a record that already belongs to a
    different owner is rejected.
    """
    require_owner(owner_id)
    if record.owner_id and record.owner_id != owner_id:
        raise OwnerScopeError(
            f"Record {record.kind.value}:{record.key} belongs to another owner",
            key=record.key,
        )
    if record.owner_id == owner_id:
        return record
    return record.model_copy(update={"owner_id": owner_id})


# =============================================================================
# Store Interface
# =============================================================================

class RecordStore(ABC):
    """Abstract base class for record stores.

    Implementations:
    - storage/local_store.py (SQLite, durable, offline)
    - connectors/memory.py (in-process, for tests and demos)
    - connectors/cloud/cloud_store.py (REST over aiohttp)
    """

    name: str = "store"

    @abstractmethod
    async def get(self, owner_id: str, kind: EntityKind, key: str) -> Optional[AnyRecord]:
        """Fetch one record by key, or None."""
        pass

    @abstractmethod
    async def list(
        self,
        owner_id: str,
        kind: EntityKind,
        parent_key: Optional[str] = None,
    ) -> List[AnyRecord]:
        """List records of ``kind``.

        Args:
            owner_id: Owner partition
            kind: Entity kind
            parent_key: Shipment key for boxes, box id for products

        Returns:
            Records ordered by key
        """
        pass

    @abstractmethod
    async def upsert(self, owner_id: str, record: SyncRecord) -> str:
        """Insert or replace a record. Returns its key."""
        pass

    @abstractmethod
    async def delete(self, owner_id: str, kind: EntityKind, key: str) -> bool:
        """Delete a record and its children. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def count(self, owner_id: str, kind: EntityKind) -> int:
        """Number of records of ``kind`` for the owner."""
        pass

    async def test_connection(self) -> bool:
        """Check the store is usable. Local stores are always available."""
        return True

    async def close(self) -> None:
        """Release resources held by the store."""
        pass

    async def total_count(self, owner_id: str) -> int:
        """Count of shipments, boxes and products for the owner."""
        total = 0
        for kind in (EntityKind.SHIPMENT, EntityKind.BOX, EntityKind.PRODUCT):
            total += await self.count(owner_id, kind)
        return total


# =============================================================================
# Store Registry
# =============================================================================

_store_registry: Dict[str, Callable[..., RecordStore]] = {}


def register_store(store_type: str):
    """Decorator to register a remote store implementation."""
    def decorator(cls: Type[RecordStore]):
        _store_registry[store_type] = cls
        return cls
    return decorator


def create_store(store_type: str, **kwargs) -> RecordStore:
    """Create a store instance by registered type.

    Args:
        store_type: Registered name ("memory", "cloud")
        **kwargs: Passed to the store constructor

    Returns:
        Configured store instance

    Raises:
        ValueError: If store_type is not registered
    """
    store_type = store_type.lower()

    if store_type not in _store_registry:
        available = list(_store_registry.keys())
        raise ValueError(
            f"Unknown store type: {store_type}. Available: {available}"
        )

    return _store_registry[store_type](**kwargs)


def list_available_stores() -> List[str]:
    """List all registered store types."""
    return list(_store_registry.keys())
