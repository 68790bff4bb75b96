"""LocalStore - durable SQLite store for offline-first operation.

This module handles all local database operations:
- Schema initialization (shipments, boxes, products, master records,
  tombstones, sync state)
- Owner-scoped CRUD implementing the RecordStore contract
- Sync bookkeeping (synced_at, pending rows, tombstones, last sync time)
- Invoice / AWB number sequences

Every table is partitioned by owner_id. Foreign keys are enforced and cascade
Shipment -> Box -> Product deletes. A row is pending (not yet confirmed remote)
while ``synced_at IS NULL OR synced_at < updated_at``.

Write methods never await inside a transaction; a failed write raises
DurabilityFailure.
"""

import json
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from connectors.base import RecordStore, require_owner, scope_record
from core.config import DEFAULT_LOCAL_DB_PATH
from core.errors import DurabilityFailure
from core.models.records import (
    AnyRecord,
    Box,
    EntityKind,
    MasterDataRecord,
    Product,
    Shipment,
    SyncRecord,
    now_ms,
)
from core.observability.logging import get_logger

logger = get_logger(__name__)


INVOICE_PREFIX = "KS"
INVOICE_WIDTH = 4
AWB_PREFIX = "awb"
AWB_WIDTH = 3


def init_local_db(db_path: Path = DEFAULT_LOCAL_DB_PATH) -> None:
    """Initialize local store tables.

    Creates:
    - shipments: root aggregates keyed by (owner_id, invoice_number)
    - boxes: FK (owner_id, shipment_key) -> shipments, cascading
    - products: FK (owner_id, box_id) -> boxes, cascading
    - master_records: flat reference data keyed by (owner_id, kind, id)
    - tombstones: local deletions awaiting replay on the remote store
    - sync_state: last completed sync per owner and direction

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS shipments (
                owner_id TEXT NOT NULL,
                invoice_number TEXT NOT NULL,
                awb TEXT NOT NULL DEFAULT '',
                master_awb TEXT NOT NULL DEFAULT '',
                house_awb TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'pending',
                shipper TEXT NOT NULL DEFAULT '',
                shipper_address TEXT NOT NULL DEFAULT '',
                consignee TEXT NOT NULL DEFAULT '',
                consignee_address TEXT NOT NULL DEFAULT '',
                client_ref TEXT NOT NULL DEFAULT '',
                flight_no TEXT NOT NULL DEFAULT '',
                discharge_airport TEXT NOT NULL DEFAULT '',
                origin TEXT NOT NULL DEFAULT '',
                destination TEXT NOT NULL DEFAULT '',
                eta INTEGER,
                invoice_date INTEGER,
                gross_weight REAL NOT NULL DEFAULT 0,
                total_amount TEXT NOT NULL DEFAULT '0',
                invoice_title TEXT NOT NULL DEFAULT '',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                synced_at INTEGER,
                PRIMARY KEY (owner_id, invoice_number)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS boxes (
                owner_id TEXT NOT NULL,
                id TEXT NOT NULL,
                shipment_key TEXT NOT NULL,
                box_number TEXT NOT NULL DEFAULT '',
                length REAL NOT NULL DEFAULT 0,
                width REAL NOT NULL DEFAULT 0,
                height REAL NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                synced_at INTEGER,
                PRIMARY KEY (owner_id, id),
                FOREIGN KEY (owner_id, shipment_key)
                    REFERENCES shipments (owner_id, invoice_number) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS products (
                owner_id TEXT NOT NULL,
                id TEXT NOT NULL,
                box_id TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                weight REAL NOT NULL DEFAULT 0,
                rate TEXT NOT NULL DEFAULT '0',
                flower_type TEXT NOT NULL DEFAULT 'LOOSE FLOWERS',
                has_stems INTEGER NOT NULL DEFAULT 0,
                approx_quantity INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                synced_at INTEGER,
                PRIMARY KEY (owner_id, id),
                FOREIGN KEY (owner_id, box_id)
                    REFERENCES boxes (owner_id, id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS master_records (
                owner_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                id TEXT NOT NULL,
                fields TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                synced_at INTEGER,
                PRIMARY KEY (owner_id, kind, id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tombstones (
                owner_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                key TEXT NOT NULL,
                deleted_at INTEGER NOT NULL,
                PRIMARY KEY (owner_id, kind, key)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sync_state (
                owner_id TEXT NOT NULL,
                direction TEXT NOT NULL,
                last_sync_at INTEGER NOT NULL,
                PRIMARY KEY (owner_id, direction)
            )
        """)

        # Indexes for child lookups by parent
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_boxes_shipment
            ON boxes(owner_id, shipment_key)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_products_box
            ON products(owner_id, box_id)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_shipments_awb
            ON shipments(owner_id, awb)
        """)

        conn.commit()
        logger.debug("Local store tables initialized", extra_fields={"db_path": str(db_path)})

    finally:
        conn.close()


# =============================================================================
# Table mapping
# =============================================================================

@dataclass(frozen=True)
class TableSpec:
    """How one entity kind maps onto a table."""
    table: str
    key_column: str
    parent_column: Optional[str] = None
    master: bool = False


SHIPMENTS = TableSpec("shipments", "invoice_number")
BOXES = TableSpec("boxes", "id", parent_column="shipment_key")
PRODUCTS = TableSpec("products", "id", parent_column="box_id")
MASTER = TableSpec("master_records", "id", master=True)


def table_for(kind: EntityKind) -> TableSpec:
    if kind == EntityKind.SHIPMENT:
        return SHIPMENTS
    if kind == EntityKind.BOX:
        return BOXES
    if kind == EntityKind.PRODUCT:
        return PRODUCTS
    return MASTER


def _record_columns(record: SyncRecord) -> Dict[str, Any]:
    """Column values for a record (JSON-safe, snake_case)."""
    data = record.model_dump(mode="json")
    if isinstance(record, MasterDataRecord):
        return {
            "owner_id": data["owner_id"],
            "kind": record.kind.value,
            "id": data["id"],
            "fields": json.dumps(data["fields"], sort_keys=True),
            "created_at": data["created_at"],
            "updated_at": data["updated_at"],
        }
    return data


def _row_to_record(kind: EntityKind, row: sqlite3.Row) -> AnyRecord:
    data = dict(row)
    data.pop("synced_at", None)
    if kind == EntityKind.SHIPMENT:
        return Shipment.model_validate(data)
    if kind == EntityKind.BOX:
        return Box.model_validate(data)
    if kind == EntityKind.PRODUCT:
        return Product.model_validate(data)
    data["fields"] = json.loads(data.get("fields") or "{}")
    data["record_kind"] = EntityKind(data.pop("kind"))
    return MasterDataRecord.model_validate(data)


@dataclass
class Tombstone:
    """A local deletion not yet replayed on the remote store."""
    owner_id: str
    kind: EntityKind
    key: str
    deleted_at: int


def _next_in_sequence(existing: Iterable[str], prefix: str, width: int) -> str:
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$", re.IGNORECASE)
    highest = 0
    for value in existing:
        match = pattern.match(value or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}{highest + 1:0{width}d}"


# =============================================================================
# LocalStore
# =============================================================================

class LocalStore(RecordStore):
    """SQLite implementation of RecordStore.

    Usage:
        store = LocalStore(Path("invoice_sync.db"))
        await store.upsert("user-1", Shipment(invoice_number="KS0001"))
        boxes = await store.list("user-1", EntityKind.BOX, parent_key="KS0001")
    """

    name = "local"

    def __init__(self, db_path: Path = DEFAULT_LOCAL_DB_PATH, initialize: bool = True):
        self.db_path = Path(db_path)
        if initialize:
            init_local_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    # =========================================================================
    # Low-level helpers (caller owns the connection)
    # =========================================================================

    def _where(self, spec: TableSpec, kind: EntityKind) -> Tuple[str, List[Any]]:
        if spec.master:
            return "owner_id = ? AND kind = ?", [kind.value]
        return "owner_id = ?", []

    def _select_one(self, conn: sqlite3.Connection, owner_id: str, kind: EntityKind, key: str) -> Optional[sqlite3.Row]:
        spec = table_for(kind)
        where, extra = self._where(spec, kind)
        cursor = conn.execute(
            f"SELECT * FROM {spec.table} WHERE {where} AND {spec.key_column} = ?",
            [owner_id] + extra + [key],
        )
        return cursor.fetchone()

    def _write(self, conn: sqlite3.Connection, owner_id: str, record: SyncRecord, mark_synced: bool) -> str:
        record = scope_record(owner_id, record)
        spec = table_for(record.kind)
        columns = _record_columns(record)

        conflict_columns = ["owner_id", "kind", "id"] if spec.master else ["owner_id", spec.key_column]
        names = list(columns.keys())
        values = [columns[n] for n in names]

        updates = [f"{n} = excluded.{n}" for n in names if n not in conflict_columns]
        if mark_synced:
            names.append("synced_at")
            values.append(record.updated_at)
            updates.append("synced_at = excluded.synced_at")

        conn.execute(
            f"INSERT INTO {spec.table} ({', '.join(names)}) "
            f"VALUES ({', '.join('?' for _ in names)}) "
            f"ON CONFLICT ({', '.join(conflict_columns)}) DO UPDATE SET {', '.join(updates)}",
            values,
        )

        # Re-creating a deleted key cancels its pending deletion
        conn.execute(
            "DELETE FROM tombstones WHERE owner_id = ? AND kind = ? AND key = ?",
            (owner_id, record.kind.value, record.key),
        )
        return record.key

    # =========================================================================
    # RecordStore
    # =========================================================================

    async def get(self, owner_id: str, kind: EntityKind, key: str) -> Optional[AnyRecord]:
        require_owner(owner_id)
        conn = self._connect()
        try:
            row = self._select_one(conn, owner_id, kind, key)
            return _row_to_record(kind, row) if row else None
        finally:
            conn.close()

    async def list(
        self,
        owner_id: str,
        kind: EntityKind,
        parent_key: Optional[str] = None,
    ) -> List[AnyRecord]:
        require_owner(owner_id)
        return self._list(owner_id, kind, parent_key, pending_only=False)

    def _list(
        self,
        owner_id: str,
        kind: EntityKind,
        parent_key: Optional[str],
        pending_only: bool,
    ) -> List[AnyRecord]:
        spec = table_for(kind)
        where, params = self._where(spec, kind)
        params = [owner_id] + params

        if parent_key is not None and spec.parent_column:
            where += f" AND {spec.parent_column} = ?"
            params.append(parent_key)
        if pending_only:
            where += " AND (synced_at IS NULL OR synced_at < updated_at)"

        conn = self._connect()
        try:
            cursor = conn.execute(
                f"SELECT * FROM {spec.table} WHERE {where} ORDER BY {spec.key_column}",
                params,
            )
            return [_row_to_record(kind, row) for row in cursor.fetchall()]
        finally:
            conn.close()

    async def upsert(self, owner_id: str, record: SyncRecord, mark_synced: bool = False) -> str:
        """Insert or update a record.

        Args:
            owner_id: Owner partition
            record: Record to store
            mark_synced: Record that this exact version is already on the remote

        Raises:
            DurabilityFailure: The write did not commit
        """
        require_owner(owner_id)
        conn = self._connect()
        try:
            with conn:
                return self._write(conn, owner_id, record, mark_synced)
        except sqlite3.Error as e:
            raise DurabilityFailure(
                f"Local write of {record.kind.value} {record.key} failed: {e}",
                key=record.key,
            ) from e
        finally:
            conn.close()

    async def save_tree(
        self,
        owner_id: str,
        shipment: Shipment,
        boxes: Sequence[Box] = (),
        products: Sequence[Product] = (),
    ) -> str:
        """Write a shipment with its boxes and products in one transaction.

        Either every row commits or none does.
        """
        require_owner(owner_id)
        conn = self._connect()
        try:
            with conn:
                key = self._write(conn, owner_id, shipment, mark_synced=False)
                for box in boxes:
                    self._write(conn, owner_id, box, mark_synced=False)
                for product in products:
                    self._write(conn, owner_id, product, mark_synced=False)
            return key
        except sqlite3.Error as e:
            raise DurabilityFailure(
                f"Local write of shipment {shipment.key} with children failed: {e}",
                key=shipment.key,
            ) from e
        finally:
            conn.close()

    async def delete(self, owner_id: str, kind: EntityKind, key: str, record_tombstone: bool = True) -> bool:
        """Delete a record (children cascade) and remember it for push.

        Raises:
            DurabilityFailure: The delete did not commit
        """
        require_owner(owner_id)
        spec = table_for(kind)
        where, extra = self._where(spec, kind)

        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute(
                    f"DELETE FROM {spec.table} WHERE {where} AND {spec.key_column} = ?",
                    [owner_id] + extra + [key],
                )
                existed = cursor.rowcount > 0
                if existed and record_tombstone:
                    conn.execute(
                        "INSERT INTO tombstones (owner_id, kind, key, deleted_at) VALUES (?, ?, ?, ?) "
                        "ON CONFLICT (owner_id, kind, key) DO UPDATE SET deleted_at = excluded.deleted_at",
                        (owner_id, kind.value, key, now_ms()),
                    )
            return existed
        except sqlite3.Error as e:
            raise DurabilityFailure(f"Local delete of {kind.value} {key} failed: {e}", key=key) from e
        finally:
            conn.close()

    async def test_connection(self) -> bool:
        """Check the database file opens and answers a query."""
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            logger.warning(f"Local store unavailable: {e}")
            return False
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning(f"Local store unavailable: {e}")
            return False
        finally:
            conn.close()

    async def count(self, owner_id: str, kind: EntityKind) -> int:
        require_owner(owner_id)
        spec = table_for(kind)
        where, extra = self._where(spec, kind)
        conn = self._connect()
        try:
            cursor = conn.execute(f"SELECT COUNT(*) FROM {spec.table} WHERE {where}", [owner_id] + extra)
            return cursor.fetchone()[0]
        finally:
            conn.close()

    # =========================================================================
    # Sync bookkeeping
    # =========================================================================

    async def list_pending(
        self,
        owner_id: str,
        kind: EntityKind,
        parent_key: Optional[str] = None,
    ) -> List[AnyRecord]:
        """Records not yet confirmed on the remote store."""
        require_owner(owner_id)
        return self._list(owner_id, kind, parent_key, pending_only=True)

    async def is_pending(self, owner_id: str, kind: EntityKind, key: str) -> bool:
        require_owner(owner_id)
        conn = self._connect()
        try:
            row = self._select_one(conn, owner_id, kind, key)
            if row is None:
                return False
            return row["synced_at"] is None or row["synced_at"] < row["updated_at"]
        finally:
            conn.close()

    async def mark_synced(self, owner_id: str, kind: EntityKind, key: str, updated_at: int) -> None:
        """Record that version ``updated_at`` of a row reached the remote store.

        A row edited after that version stays pending.
        """
        require_owner(owner_id)
        spec = table_for(kind)
        where, extra = self._where(spec, kind)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"UPDATE {spec.table} SET synced_at = ? WHERE {where} AND {spec.key_column} = ?",
                    [updated_at] + [owner_id] + extra + [key],
                )
        finally:
            conn.close()

    async def mark_pending(self, owner_id: str, kind: EntityKind, key: str) -> None:
        """Queue an unchanged row for the next push."""
        require_owner(owner_id)
        spec = table_for(kind)
        where, extra = self._where(spec, kind)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"UPDATE {spec.table} SET synced_at = NULL WHERE {where} AND {spec.key_column} = ?",
                    [owner_id] + extra + [key],
                )
        finally:
            conn.close()

    async def pending_count(self, owner_id: str) -> int:
        """Pending rows across all tables plus unreplayed deletions."""
        require_owner(owner_id)
        conn = self._connect()
        try:
            total = 0
            for table in ("shipments", "boxes", "products", "master_records"):
                cursor = conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE owner_id = ? "
                    "AND (synced_at IS NULL OR synced_at < updated_at)",
                    (owner_id,),
                )
                total += cursor.fetchone()[0]
            cursor = conn.execute("SELECT COUNT(*) FROM tombstones WHERE owner_id = ?", (owner_id,))
            total += cursor.fetchone()[0]
            return total
        finally:
            conn.close()

    async def list_tombstones(self, owner_id: str) -> List[Tombstone]:
        """Pending deletions, oldest first."""
        require_owner(owner_id)
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM tombstones WHERE owner_id = ? ORDER BY deleted_at, kind, key",
                (owner_id,),
            )
            return [
                Tombstone(
                    owner_id=row["owner_id"],
                    kind=EntityKind(row["kind"]),
                    key=row["key"],
                    deleted_at=row["deleted_at"],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    async def has_tombstone(self, owner_id: str, kind: EntityKind, key: str) -> bool:
        require_owner(owner_id)
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT 1 FROM tombstones WHERE owner_id = ? AND kind = ? AND key = ?",
                (owner_id, kind.value, key),
            )
            return cursor.fetchone() is not None
        finally:
            conn.close()

    async def clear_tombstone(self, owner_id: str, kind: EntityKind, key: str) -> None:
        require_owner(owner_id)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM tombstones WHERE owner_id = ? AND kind = ? AND key = ?",
                    (owner_id, kind.value, key),
                )
        finally:
            conn.close()

    async def set_last_sync(self, owner_id: str, direction: str, at: Optional[int] = None) -> int:
        require_owner(owner_id)
        at = at if at is not None else now_ms()
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO sync_state (owner_id, direction, last_sync_at) VALUES (?, ?, ?) "
                    "ON CONFLICT (owner_id, direction) DO UPDATE SET last_sync_at = excluded.last_sync_at",
                    (owner_id, direction, at),
                )
            return at
        finally:
            conn.close()

    async def get_last_sync(self, owner_id: str, direction: Optional[str] = None) -> Optional[int]:
        """Last completed sync time (any direction unless one is given)."""
        require_owner(owner_id)
        conn = self._connect()
        try:
            if direction:
                cursor = conn.execute(
                    "SELECT MAX(last_sync_at) FROM sync_state WHERE owner_id = ? AND direction = ?",
                    (owner_id, direction),
                )
            else:
                cursor = conn.execute(
                    "SELECT MAX(last_sync_at) FROM sync_state WHERE owner_id = ?",
                    (owner_id,),
                )
            return cursor.fetchone()[0]
        finally:
            conn.close()

    # =========================================================================
    # Sequences
    # =========================================================================

    async def next_invoice_number(self, owner_id: str) -> str:
        """Next free invoice number for the owner (KS0001, KS0002, ...)."""
        require_owner(owner_id)
        return _next_in_sequence(
            self._column_values(owner_id, "invoice_number"), INVOICE_PREFIX, INVOICE_WIDTH
        )

    async def next_awb_number(self, owner_id: str) -> str:
        """Next free AWB for the owner (awb001, awb002, ...)."""
        require_owner(owner_id)
        return _next_in_sequence(self._column_values(owner_id, "awb"), AWB_PREFIX, AWB_WIDTH)

    def _column_values(self, owner_id: str, column: str) -> List[str]:
        if column not in ("invoice_number", "awb"):
            raise ValueError(f"Unsupported sequence column: {column}")
        conn = self._connect()
        try:
            cursor = conn.execute(f"SELECT {column} FROM shipments WHERE owner_id = ?", (owner_id,))
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()
