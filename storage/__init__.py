"""Local durable storage - SQLite LocalStore."""

from storage.local_store import (
    LocalStore,
    Tombstone,
    init_local_db,
)

__all__ = [
    "LocalStore",
    "Tombstone",
    "init_local_db",
]
