"""Record store connectors.

This package contains the abstract RecordStore interface and the remote
implementations (in-memory, cloud REST API). The SQLite LocalStore implements
the same interface from /storage/.

Key Design Principle:
- The IdentityResolver and SyncCoordinator depend ONLY on RecordStore
- All methods return the shared pydantic record models
- No HTTP-specific types leak through the interface

To add a new remote store:
1. Create a new folder (e.g., s3/)
2. Implement RecordStore
3. Register using @register_store decorator
"""

from connectors.base import (
    RecordStore,
    require_owner,
    scope_record,
    create_store,
    register_store,
    list_available_stores,
)
from connectors.memory import InMemoryRecordStore, InjectedFailure
from connectors.cloud import CloudRecordStore

__all__ = [
    "RecordStore",
    "require_owner",
    "scope_record",
    "create_store",
    "register_store",
    "list_available_stores",
    "InMemoryRecordStore",
    "InjectedFailure",
    "CloudRecordStore",
]
