"""In-memory record store.

Implements the RecordStore contract over plain dicts. Used as the remote store
in tests and local demos, and supports failure injection so partial-failure,
timeout and ordering behaviour can be exercised without a network.

Usage:
    remote = InMemoryRecordStore()
    remote.fail_list.add((EntityKind.PRODUCT, "B2"))   # listing B2's products raises
    remote.hang_on.add((EntityKind.SHIPMENT, "INV-9"))  # upsert of INV-9 never returns
"""

import asyncio
from typing import Dict, List, Optional, Set, Tuple

from connectors.base import RecordStore, register_store, require_owner, scope_record
from core.models.records import AnyRecord, Box, EntityKind, Product, SyncRecord


class InjectedFailure(Exception):
    """Raised by InMemoryRecordStore for keys registered in its failure sets."""
    pass


@register_store("memory")
class InMemoryRecordStore(RecordStore):
    """Dict-backed store with an operation log.

    ``operations`` records every call as ``(op, kind, key_or_parent)`` in call
    order, so tests can assert write ordering and that no I/O happened.
    """

    name = "memory"

    def __init__(self):
        self._data: Dict[Tuple[str, EntityKind], Dict[str, SyncRecord]] = {}
        self.operations: List[Tuple[str, str, Optional[str]]] = []

        # Failure injection
        self.fail_list: Set[Tuple[EntityKind, Optional[str]]] = set()
        self.fail_get: Set[Tuple[EntityKind, str]] = set()
        self.fail_upsert: Set[Tuple[EntityKind, str]] = set()
        self.fail_delete: Set[Tuple[EntityKind, str]] = set()
        self.hang_on: Set[Tuple[EntityKind, str]] = set()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _bucket(self, owner_id: str, kind: EntityKind) -> Dict[str, SyncRecord]:
        return self._data.setdefault((owner_id, kind), {})

    def _log(self, op: str, kind: EntityKind, key: Optional[str]) -> None:
        self.operations.append((op, kind.value, key))

    async def _maybe_hang(self, kind: EntityKind, key: Optional[str]) -> None:
        if (kind, key) in self.hang_on:
            await asyncio.Event().wait()

    def writes(self) -> List[Tuple[str, str, Optional[str]]]:
        """Upserts and deletes in call order."""
        return [op for op in self.operations if op[0] in ("upsert", "delete")]

    def clear_operations(self) -> None:
        self.operations.clear()

    def seed(self, owner_id: str, *records: SyncRecord) -> None:
        """Insert records directly, bypassing the operation log."""
        for record in records:
            record = scope_record(owner_id, record)
            self._bucket(owner_id, record.kind)[record.key] = record.model_copy()

    # =========================================================================
    # RecordStore
    # =========================================================================

    async def get(self, owner_id: str, kind: EntityKind, key: str) -> Optional[AnyRecord]:
        require_owner(owner_id)
        self._log("get", kind, key)
        await self._maybe_hang(kind, key)
        if (kind, key) in self.fail_get:
            raise InjectedFailure(f"get {kind.value}:{key} failed")
        record = self._bucket(owner_id, kind).get(key)
        return record.model_copy() if record is not None else None

    async def list(
        self,
        owner_id: str,
        kind: EntityKind,
        parent_key: Optional[str] = None,
    ) -> List[AnyRecord]:
        require_owner(owner_id)
        self._log("list", kind, parent_key)
        await self._maybe_hang(kind, parent_key)
        if (kind, parent_key) in self.fail_list:
            raise InjectedFailure(f"list {kind.value} under {parent_key} failed")

        records = list(self._bucket(owner_id, kind).values())
        if parent_key is not None:
            records = [r for r in records if r.parent_key == parent_key]
        return [r.model_copy() for r in sorted(records, key=lambda r: r.key)]

    async def upsert(self, owner_id: str, record: SyncRecord) -> str:
        record = scope_record(owner_id, record)
        self._log("upsert", record.kind, record.key)
        await self._maybe_hang(record.kind, record.key)
        if (record.kind, record.key) in self.fail_upsert:
            raise InjectedFailure(f"upsert {record.kind.value}:{record.key} failed")
        self._bucket(owner_id, record.kind)[record.key] = record.model_copy()
        return record.key

    async def delete(self, owner_id: str, kind: EntityKind, key: str) -> bool:
        require_owner(owner_id)
        self._log("delete", kind, key)
        await self._maybe_hang(kind, key)
        if (kind, key) in self.fail_delete:
            raise InjectedFailure(f"delete {kind.value}:{key} failed")

        existed = self._bucket(owner_id, kind).pop(key, None) is not None

        if kind == EntityKind.SHIPMENT:
            boxes = self._bucket(owner_id, EntityKind.BOX)
            for box_id in [b.key for b in boxes.values() if isinstance(b, Box) and b.shipment_key == key]:
                self._delete_box(owner_id, box_id)
        elif kind == EntityKind.BOX:
            self._delete_products(owner_id, key)

        return existed

    def _delete_box(self, owner_id: str, box_id: str) -> None:
        self._bucket(owner_id, EntityKind.BOX).pop(box_id, None)
        self._delete_products(owner_id, box_id)

    def _delete_products(self, owner_id: str, box_id: str) -> None:
        products = self._bucket(owner_id, EntityKind.PRODUCT)
        for product_id in [p.key for p in products.values() if isinstance(p, Product) and p.box_id == box_id]:
            products.pop(product_id, None)

    async def count(self, owner_id: str, kind: EntityKind) -> int:
        require_owner(owner_id)
        self._log("count", kind, None)
        return len(self._bucket(owner_id, kind))
