"""
LocalStore tests: owner partitioning, foreign keys, pending tracking,
tombstones and sequence numbers.
"""

import asyncio
import sqlite3

import pytest

from conftest import OWNER, make_box, make_master, make_product, make_shipment
from core.errors import DurabilityFailure, OwnerScopeError
from core.models.records import EntityKind
from storage.local_store import LocalStore


class TestRecords:
    """Basic CRUD."""

    def test_shipment_round_trip(self, local_store):
        shipment = make_shipment("INV-1", awb="AWB-1", total_amount="12.50", eta=1700000000000)

        async def scenario():
            await local_store.upsert(OWNER, shipment)
            return await local_store.get(OWNER, EntityKind.SHIPMENT, "INV-1")

        stored = asyncio.run(scenario())
        assert stored.owner_id == OWNER
        assert stored.awb == "AWB-1"
        assert str(stored.total_amount) == "12.50"
        assert stored.eta == 1700000000000

    def test_upsert_updates_in_place(self, local_store):
        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1", status="pending"))
            await local_store.upsert(OWNER, make_shipment("INV-1", updated_at=200, status="invoiced"))
            return await local_store.list(OWNER, EntityKind.SHIPMENT)

        shipments = asyncio.run(scenario())
        assert [(s.key, s.status) for s in shipments] == [("INV-1", "invoiced")]

    def test_update_keeps_children(self, local_store):
        async def scenario():
            await local_store.save_tree(OWNER, make_shipment("INV-1"), [make_box("B1", "INV-1")])
            await local_store.upsert(OWNER, make_shipment("INV-1", updated_at=200))
            return await local_store.count(OWNER, EntityKind.BOX)

        assert asyncio.run(scenario()) == 1

    def test_master_record_round_trip(self, local_store):
        async def scenario():
            await local_store.upsert(OWNER, make_master("PT1", EntityKind.PRODUCT_TYPE, name="Roses", rate="1.2"))
            return (
                await local_store.get(OWNER, EntityKind.PRODUCT_TYPE, "PT1"),
                await local_store.get(OWNER, EntityKind.SHIPPER, "PT1"),
            )

        product_type, shipper = asyncio.run(scenario())
        assert product_type.kind == EntityKind.PRODUCT_TYPE
        assert product_type.fields == {"name": "Roses", "rate": "1.2"}
        assert shipper is None

    def test_children_listed_by_parent(self, local_store):
        async def scenario():
            await local_store.save_tree(
                OWNER,
                make_shipment("INV-1"),
                [make_box("B1", "INV-1"), make_box("B2", "INV-1")],
                [make_product("P1", "B1"), make_product("P2", "B2")],
            )
            return (
                [b.key for b in await local_store.list(OWNER, EntityKind.BOX, parent_key="INV-1")],
                [p.key for p in await local_store.list(OWNER, EntityKind.PRODUCT, parent_key="B2")],
            )

        boxes, products = asyncio.run(scenario())
        assert boxes == ["B1", "B2"]
        assert products == ["P2"]


class TestOwnerScope:
    """Every call is partitioned by owner."""

    def test_empty_owner_rejected(self, local_store):
        with pytest.raises(OwnerScopeError):
            asyncio.run(local_store.list("", EntityKind.SHIPMENT))

    def test_foreign_record_rejected(self, local_store):
        with pytest.raises(OwnerScopeError):
            asyncio.run(local_store.upsert(OWNER, make_shipment("INV-1", owner_id="other")))

    def test_owners_do_not_see_each_other(self, local_store):
        async def scenario():
            await local_store.upsert("alice", make_shipment("INV-1"))
            return (
                await local_store.get("bob", EntityKind.SHIPMENT, "INV-1"),
                await local_store.count("alice", EntityKind.SHIPMENT),
            )

        bob_copy, alice_count = asyncio.run(scenario())
        assert bob_copy is None
        assert alice_count == 1


class TestIntegrity:
    """Foreign keys and atomic writes."""

    def test_orphan_box_rejected(self, local_store):
        with pytest.raises(DurabilityFailure):
            asyncio.run(local_store.upsert(OWNER, make_box("B1", "NO-SHIPMENT")))

    def test_box_cannot_reference_other_owners_shipment(self, local_store):
        async def scenario():
            await local_store.upsert("alice", make_shipment("INV-1"))
            await local_store.upsert("bob", make_box("B1", "INV-1"))

        with pytest.raises(DurabilityFailure):
            asyncio.run(scenario())

    def test_save_tree_is_atomic(self, local_store):
        async def scenario():
            await local_store.save_tree(
                OWNER,
                make_shipment("INV-1"),
                [make_box("B1", "INV-1")],
                [make_product("P1", "B1"), make_product("P2", "MISSING")],
            )

        with pytest.raises(DurabilityFailure) as exc_info:
            asyncio.run(scenario())

        assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)
        assert asyncio.run(local_store.count(OWNER, EntityKind.SHIPMENT)) == 0
        assert asyncio.run(local_store.count(OWNER, EntityKind.PRODUCT)) == 0

    def test_delete_cascades_and_records_tombstone(self, local_store):
        async def scenario():
            await local_store.save_tree(
                OWNER, make_shipment("INV-1"), [make_box("B1", "INV-1")], [make_product("P1", "B1")]
            )
            existed = await local_store.delete(OWNER, EntityKind.SHIPMENT, "INV-1")
            return (
                existed,
                await local_store.count(OWNER, EntityKind.BOX),
                await local_store.count(OWNER, EntityKind.PRODUCT),
                await local_store.list_tombstones(OWNER),
            )

        existed, boxes, products, tombstones = asyncio.run(scenario())
        assert existed is True
        assert boxes == 0
        assert products == 0
        assert [(t.kind, t.key) for t in tombstones] == [(EntityKind.SHIPMENT, "INV-1")]

    def test_recreating_clears_tombstone(self, local_store):
        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1"))
            await local_store.delete(OWNER, EntityKind.SHIPMENT, "INV-1")
            await local_store.upsert(OWNER, make_shipment("INV-1"))
            return await local_store.has_tombstone(OWNER, EntityKind.SHIPMENT, "INV-1")

        assert asyncio.run(scenario()) is False

    def test_unwritable_database_raises_durability_failure(self, db_path):
        store = LocalStore(db_path)
        conn = sqlite3.connect(str(db_path))
        try:
            conn.execute("DROP TABLE shipments")
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(DurabilityFailure):
            asyncio.run(store.upsert(OWNER, make_shipment("INV-1")))


class TestPendingTracking:
    """synced_at vs updated_at bookkeeping."""

    def test_new_record_is_pending(self, local_store):
        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1"))
            return await local_store.is_pending(OWNER, EntityKind.SHIPMENT, "INV-1")

        assert asyncio.run(scenario()) is True

    def test_mark_synced_clears_pending(self, local_store):
        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1", updated_at=100))
            await local_store.mark_synced(OWNER, EntityKind.SHIPMENT, "INV-1", 100)
            return await local_store.is_pending(OWNER, EntityKind.SHIPMENT, "INV-1")

        assert asyncio.run(scenario()) is False

    def test_edit_after_sync_is_pending_again(self, local_store):
        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1", updated_at=100))
            await local_store.mark_synced(OWNER, EntityKind.SHIPMENT, "INV-1", 100)
            await local_store.upsert(OWNER, make_shipment("INV-1", updated_at=150))
            return [s.key for s in await local_store.list_pending(OWNER, EntityKind.SHIPMENT)]

        assert asyncio.run(scenario()) == ["INV-1"]

    def test_stale_mark_synced_keeps_newer_edit_pending(self, local_store):
        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1", updated_at=150))
            await local_store.mark_synced(OWNER, EntityKind.SHIPMENT, "INV-1", 100)
            return await local_store.is_pending(OWNER, EntityKind.SHIPMENT, "INV-1")

        assert asyncio.run(scenario()) is True

    def test_mark_pending_requeues_synced_row(self, local_store):
        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1"), mark_synced=True)
            await local_store.upsert(OWNER, make_box("B1", "INV-1", updated_at=100), mark_synced=True)
            await local_store.mark_pending(OWNER, EntityKind.BOX, "B1")
            return (
                [b.key for b in await local_store.list_pending(OWNER, EntityKind.BOX, parent_key="INV-1")],
                await local_store.is_pending(OWNER, EntityKind.SHIPMENT, "INV-1"),
            )

        assert asyncio.run(scenario()) == (["B1"], False)

    def test_pending_count_includes_tombstones(self, local_store):
        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1"), mark_synced=True)
            await local_store.upsert(OWNER, make_shipment("INV-2"))
            await local_store.delete(OWNER, EntityKind.SHIPMENT, "INV-1")
            return await local_store.pending_count(OWNER)

        assert asyncio.run(scenario()) == 2


class TestBookkeeping:
    """Last sync times and sequence numbers."""

    def test_last_sync_per_direction(self, local_store):
        async def scenario():
            await local_store.set_last_sync(OWNER, "pull", at=100)
            await local_store.set_last_sync(OWNER, "push", at=200)
            return (
                await local_store.get_last_sync(OWNER, "pull"),
                await local_store.get_last_sync(OWNER),
                await local_store.get_last_sync("other"),
            )

        assert asyncio.run(scenario()) == (100, 200, None)

    def test_invoice_sequence(self, local_store):
        async def scenario():
            first = await local_store.next_invoice_number(OWNER)
            await local_store.upsert(OWNER, make_shipment(first))
            await local_store.upsert(OWNER, make_shipment("KS0009"))
            await local_store.upsert(OWNER, make_shipment("MANUAL-1"))
            return first, await local_store.next_invoice_number(OWNER)

        assert asyncio.run(scenario()) == ("KS0001", "KS0010")

    def test_awb_sequence(self, local_store):
        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1", awb="awb004"))
            return await local_store.next_awb_number(OWNER), await local_store.next_awb_number("other")

        assert asyncio.run(scenario()) == ("awb005", "awb001")

    def test_health_check(self, local_store):
        assert asyncio.run(local_store.test_connection()) is True
