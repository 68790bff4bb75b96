"""
Pull cycle tests (remote -> local).

Covers:
1. Fresh pull inserts master data, shipments, boxes and products
2. Idempotence: a second pull changes nothing
3. Recency conflicts in both directions
4. Children stored under a legacy AWB key
5. Partial failure of one box does not stop other shipments
6. Owner isolation
"""

import asyncio

import pytest

from conftest import OWNER, make_box, make_master, make_product, make_shipment
from core.audit.events import SyncEventType
from core.errors import ConnectivityError, OwnerScopeError
from core.models.records import PLACEHOLDER_PREFIX, EntityKind
from core.models.refs import FailureKind, OutcomeStatus
from core.workflow.base import CycleResult
from sync_engine.coordinator import SyncCoordinator


def seed_two_shipments(remote_store, owner_id=OWNER):
    remote_store.seed(
        owner_id,
        make_shipment("INV-1", shipper="Acme"),
        make_box("B1", "INV-1"),
        make_box("B2", "INV-1"),
        make_product("P1", "B1"),
        make_product("P2", "B2"),
        make_shipment("INV-2"),
        make_box("B3", "INV-2"),
        make_product("P3", "B3"),
    )


async def local_ids(local_store, kind, owner_id=OWNER, parent_key=None):
    return [r.key for r in await local_store.list(owner_id, kind, parent_key=parent_key)]


class TestPullInsert:
    """Pulling into an empty local store."""

    def test_fresh_pull_inserts_everything(self, coordinator, local_store, remote_store):
        seed_two_shipments(remote_store)
        remote_store.seed(OWNER, make_master("SH1", EntityKind.SHIPPER, name="Acme Farms"))

        async def scenario():
            report = await coordinator.pull(OWNER)
            return report, {
                kind: await local_ids(local_store, kind)
                for kind in (EntityKind.SHIPMENT, EntityKind.BOX, EntityKind.PRODUCT, EntityKind.SHIPPER)
            }

        report, ids = asyncio.run(scenario())

        assert report.result == CycleResult.SUCCESS
        assert ids[EntityKind.SHIPMENT] == ["INV-1", "INV-2"]
        assert ids[EntityKind.BOX] == ["B1", "B2", "B3"]
        assert ids[EntityKind.PRODUCT] == ["P1", "P2", "P3"]
        assert ids[EntityKind.SHIPPER] == ["SH1"]
        assert report.count(OutcomeStatus.INSERTED) == 9
        assert report.failures == []

    def test_pulled_records_are_not_pending(self, coordinator, local_store, remote_store):
        seed_two_shipments(remote_store)

        async def scenario():
            await coordinator.pull(OWNER)
            return await local_store.pending_count(OWNER)

        assert asyncio.run(scenario()) == 0

    def test_master_data_fields_survive(self, coordinator, local_store, remote_store):
        remote_store.seed(OWNER, make_master("FT1", EntityKind.FLOWER_TYPE, flower_name="Rose"))

        async def scenario():
            await coordinator.pull(OWNER)
            return await local_store.get(OWNER, EntityKind.FLOWER_TYPE, "FT1")

        record = asyncio.run(scenario())
        assert record.fields == {"flower_name": "Rose"}
        assert record.name == "Rose"

    def test_placeholder_shipment_is_skipped(self, coordinator, local_store, remote_store):
        remote_store.seed(OWNER, make_shipment(f"{PLACEHOLDER_PREFIX}1"), make_shipment("INV-1"))

        async def scenario():
            report = await coordinator.pull(OWNER)
            return report, await local_ids(local_store, EntityKind.SHIPMENT)

        report, ids = asyncio.run(scenario())
        assert ids == ["INV-1"]
        assert report.count(OutcomeStatus.SKIPPED_INVALID, EntityKind.SHIPMENT) == 1

    def test_last_sync_recorded(self, coordinator, local_store, remote_store):
        seed_two_shipments(remote_store)

        async def scenario():
            before = await local_store.get_last_sync(OWNER)
            await coordinator.pull(OWNER)
            return before, await local_store.get_last_sync(OWNER, "pull")

        before, after = asyncio.run(scenario())
        assert before is None
        assert after is not None


class TestPullIdempotence:
    """Pulling the same remote state twice."""

    def test_second_pull_changes_nothing(self, coordinator, local_store, remote_store):
        seed_two_shipments(remote_store)

        async def snapshot():
            return {
                kind: [r.content() for r in await local_store.list(OWNER, kind)]
                for kind in (EntityKind.SHIPMENT, EntityKind.BOX, EntityKind.PRODUCT)
            }

        async def scenario():
            await coordinator.pull(OWNER)
            first = await snapshot()
            report = await coordinator.pull(OWNER)
            return first, await snapshot(), report

        first, second, report = asyncio.run(scenario())

        assert first == second
        assert report.result == CycleResult.SUCCESS
        assert report.count(OutcomeStatus.INSERTED) == 0
        assert report.count(OutcomeStatus.UPDATED) == 0
        assert report.count(OutcomeStatus.SKIPPED_NOT_NEWER, EntityKind.SHIPMENT) == 2
        assert report.count(OutcomeStatus.SKIPPED_DUPLICATE, EntityKind.BOX) == 3
        assert report.count(OutcomeStatus.SKIPPED_DUPLICATE, EntityKind.PRODUCT) == 3


class TestPullConflicts:
    """Remote wins only when strictly newer."""

    def test_newer_local_is_kept(self, coordinator, local_store, remote_store):
        remote_store.seed(OWNER, make_shipment("INV-1", updated_at=90, status="remote"))

        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1", updated_at=100, status="local"))
            report = await coordinator.pull(OWNER)
            return report, await local_store.get(OWNER, EntityKind.SHIPMENT, "INV-1")

        report, shipment = asyncio.run(scenario())
        assert shipment.status == "local"
        assert shipment.updated_at == 100
        assert report.count(OutcomeStatus.SKIPPED_NOT_NEWER) == 1

    def test_newer_remote_wins(self, coordinator, local_store, remote_store):
        remote_store.seed(OWNER, make_shipment("INV-1", updated_at=100, status="remote"))

        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1", updated_at=90, status="local"))
            report = await coordinator.pull(OWNER)
            return report, await local_store.get(OWNER, EntityKind.SHIPMENT, "INV-1")

        report, shipment = asyncio.run(scenario())
        assert shipment.status == "remote"
        assert shipment.updated_at == 100
        assert report.count(OutcomeStatus.UPDATED) == 1

    def test_equal_timestamps_keep_local(self, coordinator, local_store, remote_store):
        remote_store.seed(OWNER, make_shipment("INV-1", updated_at=100, status="remote"))

        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1", updated_at=100, status="local"))
            await coordinator.pull(OWNER)
            return await local_store.get(OWNER, EntityKind.SHIPMENT, "INV-1")

        assert asyncio.run(scenario()).status == "local"

    def test_newer_remote_child_keeps_identity(self, coordinator, local_store, remote_store):
        remote_store.seed(
            OWNER,
            make_shipment("INV-1"),
            make_box("B1", "INV-1", updated_at=200, box_number="remote-7"),
        )

        async def scenario():
            await local_store.save_tree(
                OWNER, make_shipment("INV-1"), [make_box("B1", "INV-1", updated_at=100, box_number="1")]
            )
            report = await coordinator.pull(OWNER)
            return report, await local_store.list(OWNER, EntityKind.BOX)

        report, boxes = asyncio.run(scenario())
        assert [(b.id, b.shipment_key, b.box_number) for b in boxes] == [("B1", "INV-1", "remote-7")]
        assert report.count(OutcomeStatus.UPDATED, EntityKind.BOX) == 1

    def test_locally_deleted_record_is_not_resurrected(self, coordinator, local_store, remote_store):
        seed_two_shipments(remote_store)

        async def scenario():
            await coordinator.pull(OWNER)
            await local_store.delete(OWNER, EntityKind.SHIPMENT, "INV-2")
            report = await coordinator.pull(OWNER)
            return report, await local_ids(local_store, EntityKind.SHIPMENT)

        report, ids = asyncio.run(scenario())
        assert ids == ["INV-1"]
        assert report.count(OutcomeStatus.SKIPPED_DELETED, EntityKind.SHIPMENT) == 1


class TestPullIdentityResolution:
    """Children stored remotely under legacy identifiers."""

    def test_boxes_found_under_awb(self, coordinator, local_store, remote_store):
        remote_store.seed(
            OWNER,
            make_shipment("INV-1", awb="AWB-1"),
            make_box("BX1", "AWB-1"),
            make_box("BX2", "AWB-1"),
        )

        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1", awb="AWB-1"))
            report = await coordinator.pull(OWNER)
            return report, await local_ids(local_store, EntityKind.BOX, parent_key="INV-1")

        report, box_ids = asyncio.run(scenario())

        assert box_ids == ["BX1", "BX2"]
        assert report.count(OutcomeStatus.INSERTED, EntityKind.BOX) == 2
        lists = [op for op in remote_store.operations if op[:2] == ("list", "box")]
        assert lists.index(("list", "box", "INV-1")) < lists.index(("list", "box", "AWB-1"))

    def test_legacy_boxes_not_duplicated_on_repeat(self, coordinator, local_store, remote_store):
        remote_store.seed(
            OWNER,
            make_shipment("INV-1", awb="AWB-1"),
            make_box("BX1", "AWB-1"),
            make_box("BX2", "AWB-1"),
        )

        async def scenario():
            await coordinator.pull(OWNER)
            report = await coordinator.pull(OWNER)
            return report, await local_store.count(OWNER, EntityKind.BOX)

        report, box_count = asyncio.run(scenario())
        assert box_count == 2
        assert report.count(OutcomeStatus.SKIPPED_DUPLICATE, EntityKind.BOX) == 2
        assert report.count(OutcomeStatus.INSERTED) == 0

    def test_legacy_boxes_stay_pending_until_rehomed(self, coordinator, local_store, remote_store):
        remote_store.seed(
            OWNER,
            make_shipment("INV-1", awb="AWB-1"),
            make_box("BX1", "AWB-1"),
            make_shipment("INV-2"),
            make_box("B2", "INV-2"),
        )

        async def scenario():
            await coordinator.pull(OWNER)
            return [b.key for b in await local_store.list_pending(OWNER, EntityKind.BOX)]

        assert asyncio.run(scenario()) == ["BX1"]

    def test_new_box_after_legacy_pull_converges(self, coordinator, local_store, remote_store):
        remote_store.seed(
            OWNER,
            make_shipment("INV-1", awb="AWB-1"),
            make_box("BX1", "AWB-1"),
            make_box("BX2", "AWB-1"),
        )

        async def remote_ids(parent_key):
            return [b.key for b in await remote_store.list(OWNER, EntityKind.BOX, parent_key=parent_key)]

        async def scenario():
            await coordinator.pull(OWNER)
            shipment = await local_store.get(OWNER, EntityKind.SHIPMENT, "INV-1")
            await coordinator.save_shipment(OWNER, shipment, boxes=[make_box("BX3", "AWB-1")])
            await coordinator.wait_for_background()
            push = await coordinator.push(OWNER)
            pull = await coordinator.pull(OWNER)
            return push, pull, await remote_ids("INV-1"), await remote_ids("AWB-1")

        push, pull, under_invoice, under_awb = asyncio.run(scenario())

        assert push.result == CycleResult.SUCCESS
        assert pull.result == CycleResult.SUCCESS
        assert pull.warnings == []
        assert pull.count(OutcomeStatus.SKIPPED_INVALID) == 0
        assert pull.count(OutcomeStatus.SKIPPED_DUPLICATE, EntityKind.BOX) == 3
        assert under_invoice == ["BX1", "BX2", "BX3"]
        assert under_awb == []

    def test_divergent_keys_are_a_warning(self, coordinator, local_store, remote_store, event_sink):
        remote_store.seed(
            OWNER,
            make_shipment("INV-1", awb="AWB-1"),
            make_box("B1", "INV-1"),
            make_box("B9", "AWB-1"),
            make_shipment("INV-2"),
            make_box("B3", "INV-2"),
        )

        async def scenario():
            report = await coordinator.pull(OWNER)
            return report, await local_ids(local_store, EntityKind.BOX)

        report, box_ids = asyncio.run(scenario())

        assert report.result == CycleResult.SUCCESS
        assert box_ids == ["B3"]
        assert [(w.key, w.failure) for w in report.warnings] == [("INV-1", FailureKind.IDENTITY_MISMATCH)]
        assert event_sink.query(event_type=SyncEventType.IDENTITY_MISMATCH.value, entity_key="INV-1")


class TestPullPartialFailure:
    """One failing child does not stop the rest of the cycle."""

    def test_failing_box_isolated(self, coordinator, local_store, remote_store):
        seed_two_shipments(remote_store)
        remote_store.fail_list.add((EntityKind.PRODUCT, "B2"))

        async def scenario():
            report = await coordinator.pull(OWNER)
            return report, await local_ids(local_store, EntityKind.PRODUCT)

        report, product_ids = asyncio.run(scenario())

        assert report.result == CycleResult.PARTIAL_FAILURE
        assert [(f.kind, f.key, f.failure) for f in report.failures] == [
            (EntityKind.BOX, "B2", FailureKind.REMOTE_ERROR)
        ]
        assert product_ids == ["P1", "P3"]

    def test_shipment_list_failure_keeps_children_sync(self, coordinator, local_store, remote_store):
        seed_two_shipments(remote_store)
        remote_store.fail_list.add((EntityKind.SHIPMENT, None))

        async def scenario():
            await local_store.upsert(OWNER, make_shipment("INV-1"))
            report = await coordinator.pull(OWNER)
            return report, await local_ids(local_store, EntityKind.BOX)

        report, box_ids = asyncio.run(scenario())
        assert report.result == CycleResult.PARTIAL_FAILURE
        assert report.failures[0].key == "*"
        assert box_ids == ["B1", "B2"]

    def test_hanging_call_becomes_timeout(self, local_store, remote_store, gate, events):
        seed_two_shipments(remote_store)
        remote_store.hang_on.add((EntityKind.BOX, "INV-1"))
        coordinator = SyncCoordinator(local_store, remote_store, gate, events=events, remote_timeout=0.05)

        async def scenario():
            report = await coordinator.pull(OWNER)
            return report, await local_ids(local_store, EntityKind.BOX)

        report, box_ids = asyncio.run(scenario())
        assert report.result == CycleResult.PARTIAL_FAILURE
        assert [(f.key, f.failure) for f in report.failures] == [("INV-1", FailureKind.TIMEOUT)]
        assert box_ids == ["B3"]


class TestPullOwnerIsolation:
    """Each owner only ever sees their own records."""

    def test_pull_only_touches_owner(self, coordinator, local_store, remote_store):
        seed_two_shipments(remote_store, owner_id="alice")
        remote_store.seed("bob", make_shipment("INV-BOB"))

        async def scenario():
            await coordinator.pull("alice")
            return (
                await local_ids(local_store, EntityKind.SHIPMENT, owner_id="alice"),
                await local_ids(local_store, EntityKind.SHIPMENT, owner_id="bob"),
            )

        alice, bob = asyncio.run(scenario())
        assert alice == ["INV-1", "INV-2"]
        assert bob == []

    def test_same_invoice_number_for_two_owners(self, coordinator, local_store, remote_store):
        remote_store.seed("alice", make_shipment("INV-1", status="alice"))
        remote_store.seed("bob", make_shipment("INV-1", status="bob"))

        async def scenario():
            await coordinator.pull("alice")
            await coordinator.pull("bob")
            return (
                await local_store.get("alice", EntityKind.SHIPMENT, "INV-1"),
                await local_store.get("bob", EntityKind.SHIPMENT, "INV-1"),
            )

        alice, bob = asyncio.run(scenario())
        assert alice.status == "alice"
        assert bob.status == "bob"

    def test_pull_without_owner_rejected(self, coordinator):
        with pytest.raises(OwnerScopeError):
            asyncio.run(coordinator.pull(""))


class TestPullConnectivity:
    """Cycles never start without connectivity."""

    def test_forced_offline_raises(self, coordinator, local_store, remote_store, gate, event_sink):
        seed_two_shipments(remote_store)
        gate.set_force_offline(True)

        with pytest.raises(ConnectivityError) as exc_info:
            asyncio.run(coordinator.pull(OWNER))

        assert exc_info.value.forced_offline is True
        assert remote_store.operations == []
        assert event_sink.query(event_type=SyncEventType.CYCLE_ABORTED.value)
        assert asyncio.run(local_store.count(OWNER, EntityKind.SHIPMENT)) == 0

    def test_probe_offline_raises(self, coordinator, remote_store, probe):
        probe.online = False

        with pytest.raises(ConnectivityError) as exc_info:
            asyncio.run(coordinator.pull(OWNER))

        assert exc_info.value.forced_offline is False
        assert remote_store.operations == []


class TestPullProgress:
    """Progress callbacks."""

    def test_progress_is_monotonic_and_finishes(self, coordinator, remote_store):
        seed_two_shipments(remote_store)
        seen = []

        asyncio.run(coordinator.pull(OWNER, on_progress=lambda percent, message: seen.append(percent)))

        assert seen
        assert seen == sorted(seen)
        assert seen[-1] == 100.0

    def test_status_idle_after_cycle(self, coordinator, remote_store):
        seed_two_shipments(remote_store)
        asyncio.run(coordinator.pull(OWNER))

        status = coordinator.sync_status(OWNER)
        assert status.is_syncing is False
        assert status.progress_percent == 100.0
        assert status.phase == "IDLE"
