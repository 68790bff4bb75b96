"""Sync coordinator - push and pull cycles between LocalStore and a remote store.

Pull (remote -> local):
    1. master data (shippers, consignees, product types, flower types)
    2. shipments; remote wins only when strictly newer, ties keep local
    3. for each local shipment: boxes via the IdentityResolver
    4. for each local box: products
    Children already present locally are never re-inserted and never change
    identity; a strictly newer remote copy refreshes their other fields.

Push (local -> remote):
    1. replay local deletions (tombstones)
    2. pending master data
    3. per shipment: shipment, then its pending boxes, then their pending
       products. Children of a parent that failed this cycle are not attempted.

Single-entity writes commit locally first and replicate in the background.

At most one cycle runs per owner. A request in the same direction joins the
running cycle; a request in the other direction returns a COALESCED report.
Login/logout bumps the owner's generation, and the next remote call of a
running cycle raises SyncCancelled.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, TypeVar

from connectors.base import RecordStore, require_owner, scope_record
from connectivity.gate import ConnectivityGate
from core.audit.events import SyncEventBus, SyncEventType, create_sync_event
from core.errors import (
    ConnectivityError,
    DurabilityFailure,
    IdentityMismatch,
    RemoteTimeoutError,
    SyncCancelled,
)
from core.models.records import (
    MASTER_DATA_KINDS,
    Box,
    EntityKind,
    MasterDataRecord,
    Product,
    Shipment,
    SyncRecord,
    now_ms,
)
from core.models.refs import EntityOutcome, EventSeverity, FailureKind, OutcomeStatus, SyncDirection, SyncStatus
from core.observability.logging import (
    get_logger,
    log_cycle_complete,
    log_cycle_error,
    log_cycle_start,
    with_correlation,
)
from core.workflow.base import CycleResult, SyncCycleReport, SyncPhase
from identity_resolver.resolver import IdentityResolver
from storage.local_store import LocalStore
from sync_engine.progress import ProgressCallback, ProgressTracker

logger = get_logger(__name__)

T = TypeVar("T")


def classify_failure(error: BaseException) -> FailureKind:
    """Map an exception to the per-entity failure category."""
    if isinstance(error, RemoteTimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(error, ConnectivityError):
        return FailureKind.CONNECTIVITY
    if isinstance(error, IdentityMismatch):
        return FailureKind.IDENTITY_MISMATCH
    if isinstance(error, DurabilityFailure):
        return FailureKind.DURABILITY
    return FailureKind.REMOTE_ERROR


@dataclass
class CycleContext:
    """State of one running cycle."""
    owner_id: str
    direction: SyncDirection
    generation: int
    report: SyncCycleReport
    tracker: ProgressTracker
    phase_started: float = field(default_factory=time.monotonic)


@dataclass
class InFlightCycle:
    direction: SyncDirection
    task: "asyncio.Task[SyncCycleReport]"
    context: CycleContext


class SyncCoordinator:
    """Runs push/pull cycles and single-entity replication for any owner.

    Usage:
        coordinator = SyncCoordinator(local, remote, gate)
        report = await coordinator.pull("user-1", on_progress=print)
        await coordinator.save_shipment("user-1", shipment, boxes=[...], products=[...])
        report = await coordinator.push("user-1")
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RecordStore,
        gate: ConnectivityGate,
        events: Optional[SyncEventBus] = None,
        remote_timeout: Optional[float] = None,
    ):
        self.local = local
        self.remote = remote
        self.gate = gate
        self.events = events or SyncEventBus.default()
        self.remote_timeout = remote_timeout
        self.resolver = IdentityResolver()

        self._locks: Dict[str, asyncio.Lock] = {}
        self._generations: Dict[str, int] = {}
        self._inflight: Dict[str, InFlightCycle] = {}
        self._status: Dict[str, SyncStatus] = {}
        self._background: Set[asyncio.Future] = set()

        self.gate.add_listener(self._on_connectivity_change)

    # =========================================================================
    # Owner state
    # =========================================================================

    def _lock_for(self, owner_id: str) -> asyncio.Lock:
        if owner_id not in self._locks:
            self._locks[owner_id] = asyncio.Lock()
        return self._locks[owner_id]

    def generation(self, owner_id: str) -> int:
        return self._generations.get(owner_id, 0)

    def cancel_owner(self, owner_id: str) -> None:
        """Cancel running cycles and pending replication for one owner."""
        self._generations[owner_id] = self.generation(owner_id) + 1
        if owner_id in self._inflight:
            logger.info(f"Cancelling in-flight {self._inflight[owner_id].direction.value} cycle for {owner_id}")

    def cancel_all(self) -> None:
        """Cancel running cycles for every owner (login/logout)."""
        for owner_id in set(self._generations) | set(self._inflight) | set(self._locks):
            self.cancel_owner(owner_id)

    def is_syncing(self, owner_id: str) -> bool:
        return owner_id in self._inflight

    def sync_status(self, owner_id: str) -> SyncStatus:
        """Current status for the owner (idle if no cycle ever ran)."""
        return self._status.get(owner_id, SyncStatus()).model_copy()

    def _on_connectivity_change(self, online: bool) -> None:
        self.events.emit_info(
            SyncEventType.CONNECTIVITY_CHANGED,
            f"Remote store {'reachable' if online else 'unreachable'}",
            details={"online": online, "force_offline": self.gate.force_offline},
        )

    # =========================================================================
    # Remote calls
    # =========================================================================

    def _check_cancelled(self, ctx: CycleContext) -> None:
        if ctx.generation != self.generation(ctx.owner_id):
            raise SyncCancelled(f"{ctx.direction.value} cycle {ctx.report.cycle_id} cancelled")

    async def _remote(self, ctx: CycleContext, op_factory: Callable[[], Awaitable[T]], operation: str) -> T:
        """Every remote call of a cycle goes through here: cancellation, gate, timeout."""
        self._check_cancelled(ctx)
        return await self.gate.with_timeout(op_factory, timeout=self.remote_timeout, operation=operation)

    # =========================================================================
    # Cycle bookkeeping
    # =========================================================================

    def _new_context(self, owner_id: str, direction: SyncDirection, on_progress: Optional[ProgressCallback]) -> CycleContext:
        cycle_id = f"{direction.value}-{uuid.uuid4().hex[:8]}"
        report = SyncCycleReport(
            cycle_id=cycle_id,
            owner_id=owner_id,
            direction=direction,
            started_at=datetime.utcnow(),
        )
        tracker = ProgressTracker(operation_name=f"{direction.value.title()} sync", cycle_id=cycle_id)
        ctx = CycleContext(
            owner_id=owner_id,
            direction=direction,
            generation=self.generation(owner_id),
            report=report,
            tracker=tracker,
        )
        tracker.add_listener(lambda percent, message: self._on_progress(ctx, percent, message))
        tracker.add_listener(on_progress)
        return ctx

    def _on_progress(self, ctx: CycleContext, percent: float, message: str) -> None:
        self._status[ctx.owner_id] = SyncStatus(
            is_syncing=True,
            progress_percent=percent,
            status_message=message,
            phase=ctx.report.phase.value,
            direction=ctx.direction,
        )
        self.events.emit_info(
            SyncEventType.PROGRESS,
            message,
            owner_id=ctx.owner_id,
            cycle_id=ctx.report.cycle_id,
            direction=ctx.direction,
            phase=ctx.report.phase.value,
            progress_percent=percent,
        )

    def _set_phase(self, ctx: CycleContext, phase: SyncPhase) -> None:
        previous = ctx.report.phase
        now = time.monotonic()
        duration_ms = (now - ctx.phase_started) * 1000
        ctx.report.phase = phase
        ctx.phase_started = now
        self.events.emit_info(
            SyncEventType.PHASE_CHANGED,
            f"{ctx.direction.value} phase {phase.value}",
            owner_id=ctx.owner_id,
            cycle_id=ctx.report.cycle_id,
            direction=ctx.direction,
            phase=phase.value,
            details={"previous_phase": previous.value, "duration_ms": duration_ms},
        )

    def _record(
        self,
        ctx: CycleContext,
        kind: EntityKind,
        key: str,
        status: OutcomeStatus,
        parent_key: Optional[str] = None,
        error: Optional[BaseException] = None,
        failure: Optional[FailureKind] = None,
        message: Optional[str] = None,
    ) -> EntityOutcome:
        if error is not None and failure is None:
            failure = classify_failure(error)
        if error is not None and message is None:
            message = str(error)

        outcome = ctx.report.record(kind, key, status, parent_key=parent_key, failure=failure, message=message)

        details = {"status": status.value}
        if failure:
            details["failure"] = failure.value
        if parent_key:
            details["parent_key"] = parent_key

        event_kwargs = dict(
            owner_id=ctx.owner_id,
            cycle_id=ctx.report.cycle_id,
            direction=ctx.direction,
            phase=ctx.report.phase.value,
            entity_kind=kind,
            entity_key=key,
            details=details,
        )
        if outcome.failed:
            self.events.emit_error(
                SyncEventType.ENTITY_FAILED, f"{kind.value} {key} failed: {message}", **event_kwargs
            )
        elif outcome.changed:
            self.events.emit_info(
                SyncEventType.ENTITY_SYNCED, f"{kind.value} {key} {status.value.lower()}", **event_kwargs
            )
        else:
            self.events.emit(self._skip_event(kind, key, status, failure, message, event_kwargs))
        return outcome

    @staticmethod
    def _skip_event(kind, key, status, failure, message, event_kwargs):

        if failure == FailureKind.IDENTITY_MISMATCH:
            return create_sync_event(
                SyncEventType.IDENTITY_MISMATCH,
                f"{kind.value} {key} needs repair: {message}",
                EventSeverity.WARN,
                **event_kwargs,
            )
        return create_sync_event(
            SyncEventType.ENTITY_SKIPPED,
            f"{kind.value} {key} {status.value.lower()}",
            EventSeverity.DEBUG,
            **event_kwargs,
        )

    async def _finish(self, ctx: CycleContext, result: Optional[CycleResult] = None, error: Optional[BaseException] = None) -> SyncCycleReport:
        report = ctx.report
        if result is not None:
            report.result = result
        if error is not None:
            report.error_message = str(error)
            report.error_details = {"type": type(error).__name__}
        report.finish()

        if report.result in (CycleResult.SUCCESS, CycleResult.PARTIAL_FAILURE):
            await self.local.set_last_sync(ctx.owner_id, ctx.direction.value)
            ctx.tracker.report(100.0, f"{ctx.direction.value.title()} complete")
            event_type = SyncEventType.CYCLE_COMPLETED
        elif report.result == CycleResult.CANCELLED:
            event_type = SyncEventType.CYCLE_CANCELLED
        else:
            event_type = SyncEventType.CYCLE_ABORTED

        self._status[ctx.owner_id] = SyncStatus(
            is_syncing=False,
            progress_percent=ctx.tracker.percent,
            status_message=self._final_message(report),
            phase=SyncPhase.IDLE.value,
            direction=ctx.direction,
        )

        emit = self.events.emit_info if report.result == CycleResult.SUCCESS else self.events.emit_warning
        emit(
            event_type,
            self._final_message(report),
            owner_id=ctx.owner_id,
            cycle_id=report.cycle_id,
            direction=ctx.direction,
            phase=SyncPhase.IDLE.value,
            details={
                "result": report.result.value,
                "duration_ms": report.duration_ms,
                "failures": len(report.failures),
            },
        )
        if report.result == CycleResult.ABORTED:
            log_cycle_error(ctx.direction.value, report.error_message or "aborted", cycle_id=report.cycle_id)
        else:
            log_cycle_complete(
                ctx.direction.value,
                duration_ms=report.duration_ms,
                result=report.result.value,
                failures=len(report.failures),
            )
        ctx.tracker.log_progress()
        return report

    @staticmethod
    def _final_message(report: SyncCycleReport) -> str:
        direction = report.direction.value.title()
        if report.result == CycleResult.SUCCESS:
            return f"{direction} complete"
        if report.result == CycleResult.PARTIAL_FAILURE:
            return f"{direction} complete with {len(report.failures)} failure(s)"
        if report.result == CycleResult.CANCELLED:
            return f"{direction} cancelled"
        return f"{direction} aborted: {report.error_message}"

    # =========================================================================
    # Single-flight
    # =========================================================================

    async def pull(self, owner_id: str, on_progress: Optional[ProgressCallback] = None) -> SyncCycleReport:
        """Run (or join) a pull cycle for the owner.

        Raises:
            OwnerScopeError: owner_id is empty
            ConnectivityError: Remote store unreachable at cycle start
        """
        require_owner(owner_id)
        return await self._single_flight(owner_id, SyncDirection.PULL, self._pull_cycle, on_progress)

    async def push(self, owner_id: str, on_progress: Optional[ProgressCallback] = None) -> SyncCycleReport:
        """Run (or join) a push cycle: the single idempotent "sync to cloud".

        Raises:
            OwnerScopeError: owner_id is empty
            ConnectivityError: Remote store unreachable at cycle start
        """
        require_owner(owner_id)
        return await self._single_flight(owner_id, SyncDirection.PUSH, self._push_cycle, on_progress)

    async def _single_flight(
        self,
        owner_id: str,
        direction: SyncDirection,
        runner: Callable[[CycleContext], Awaitable[SyncCycleReport]],
        on_progress: Optional[ProgressCallback],
    ) -> SyncCycleReport:
        running = self._inflight.get(owner_id)
        # A cycle cancelled by a generation bump is never joined or coalesced into
        while running is not None and running.context.generation != self.generation(owner_id):
            logger.debug(f"Waiting out cancelled cycle {running.context.report.cycle_id}")
            await asyncio.wait({running.task})
            running = self._inflight.get(owner_id)
        if running is not None:
            if running.direction == direction:
                logger.debug(f"Joining in-flight {direction.value} cycle {running.context.report.cycle_id}")
                running.context.tracker.add_listener(on_progress)
                return await asyncio.shield(running.task)
            return self._coalesced(owner_id, direction, running)

        ctx = self._new_context(owner_id, direction, on_progress)
        task = asyncio.ensure_future(runner(ctx))
        self._inflight[owner_id] = InFlightCycle(direction=direction, task=task, context=ctx)

        def _clear(_task, owner_id=owner_id):
            current = self._inflight.get(owner_id)
            if current is not None and current.task is _task:
                del self._inflight[owner_id]

        task.add_done_callback(_clear)
        return await asyncio.shield(task)

    def _coalesced(self, owner_id: str, direction: SyncDirection, running: InFlightCycle) -> SyncCycleReport:
        now = datetime.utcnow()
        report = SyncCycleReport(
            cycle_id=f"{direction.value}-{uuid.uuid4().hex[:8]}",
            owner_id=owner_id,
            direction=direction,
            started_at=now,
            completed_at=now,
            result=CycleResult.COALESCED,
            error_message=f"{running.direction.value} cycle {running.context.report.cycle_id} already running",
        )
        self.events.emit_info(
            SyncEventType.CYCLE_COALESCED,
            f"{direction.value} request coalesced into running {running.direction.value} cycle",
            owner_id=owner_id,
            cycle_id=report.cycle_id,
            direction=direction,
            details={"result": CycleResult.COALESCED.value, "running_cycle_id": running.context.report.cycle_id},
        )
        return report

    async def _begin(self, ctx: CycleContext) -> None:
        """Start-of-cycle checks shared by pull and push."""
        self.events.emit_info(
            SyncEventType.CYCLE_STARTED,
            f"{ctx.direction.value.title()} started",
            owner_id=ctx.owner_id,
            cycle_id=ctx.report.cycle_id,
            direction=ctx.direction,
        )
        log_cycle_start(ctx.direction.value, cycle_id=ctx.report.cycle_id)
        self._check_cancelled(ctx)

        self._set_phase(ctx, SyncPhase.CHECKING_CONNECTIVITY)
        ctx.tracker.report(0.0, "Checking connectivity")
        if not await self.gate.reachable():
            raise ConnectivityError(
                "Remote store is forced offline" if self.gate.force_offline else "Remote store is not reachable",
                forced_offline=self.gate.force_offline,
            )

    async def _run_cycle(self, ctx: CycleContext, body: Callable[[CycleContext], Awaitable[None]]) -> SyncCycleReport:
        async with self._lock_for(ctx.owner_id):
            with with_correlation(
                owner_id=ctx.owner_id,
                cycle_id=ctx.report.cycle_id,
                direction=ctx.direction.value,
            ):
                try:
                    await self._begin(ctx)
                    await body(ctx)
                except ConnectivityError as e:
                    await self._finish(ctx, CycleResult.ABORTED, e)
                    raise
                except SyncCancelled as e:
                    return await self._finish(ctx, CycleResult.CANCELLED, e)
                except Exception as e:
                    logger.exception(f"{ctx.direction.value} cycle failed unexpectedly")
                    await self._finish(ctx, CycleResult.ABORTED, e)
                    raise
                return await self._finish(ctx)

    # =========================================================================
    # Pull
    # =========================================================================

    async def _pull_cycle(self, ctx: CycleContext) -> SyncCycleReport:
        return await self._run_cycle(ctx, self._pull_body)

    async def _pull_body(self, ctx: CycleContext) -> None:
        await self._pull_master_data(ctx)
        await self._pull_shipments(ctx)
        await self._pull_children(ctx)

    async def _pull_master_data(self, ctx: CycleContext) -> None:
        self._set_phase(ctx, SyncPhase.PULLING_MASTER_DATA)
        ctx.tracker.begin_band(5, 15, len(MASTER_DATA_KINDS), "Syncing master data")

        for kind in MASTER_DATA_KINDS:
            try:
                records = await self._remote(
                    ctx, lambda kind=kind: self.remote.list(ctx.owner_id, kind), f"list {kind.value}"
                )
            except SyncCancelled:
                raise
            except Exception as e:
                self._record(ctx, kind, "*", OutcomeStatus.FAILED, error=e)
                ctx.tracker.advance(f"Failed to fetch {kind.value} records", errors=1)
                continue

            for record in records:
                self._check_cancelled(ctx)
                await self._merge_root(ctx, record)
            ctx.tracker.advance(f"Synced {len(records)} {kind.value} records")

    async def _pull_shipments(self, ctx: CycleContext) -> None:
        self._set_phase(ctx, SyncPhase.PULLING_SHIPMENTS)
        ctx.tracker.report(15, "Fetching shipments")

        try:
            shipments = await self._remote(
                ctx, lambda: self.remote.list(ctx.owner_id, EntityKind.SHIPMENT), "list shipments"
            )
        except SyncCancelled:
            raise
        except Exception as e:
            # Children of already-local shipments can still be pulled
            self._record(ctx, EntityKind.SHIPMENT, "*", OutcomeStatus.FAILED, error=e)
            ctx.tracker.report(40, "Failed to fetch shipments")
            return

        ctx.tracker.begin_band(15, 40, len(shipments), f"Syncing {len(shipments)} shipments")
        for shipment in shipments:
            self._check_cancelled(ctx)
            if shipment.is_placeholder:
                self._record(
                    ctx, EntityKind.SHIPMENT, shipment.key, OutcomeStatus.SKIPPED_INVALID,
                    message="placeholder shipment",
                )
                ctx.tracker.advance(f"Skipped placeholder {shipment.key}", skipped=1)
                continue
            outcome = await self._merge_root(ctx, shipment)
            ctx.tracker.advance(
                f"Synced shipment {shipment.key}",
                changed=int(outcome.changed),
                skipped=int(not outcome.changed and not outcome.failed),
                errors=int(outcome.failed),
            )

    async def _merge_root(self, ctx: CycleContext, remote_record: SyncRecord) -> EntityOutcome:
        """Recency merge for shipments and master data."""
        owner_id = ctx.owner_id
        kind = remote_record.kind
        key = remote_record.key
        try:
            if await self.local.has_tombstone(owner_id, kind, key):
                return self._record(ctx, kind, key, OutcomeStatus.SKIPPED_DELETED, message="deleted locally")

            local_record = await self.local.get(owner_id, kind, key)
            if local_record is None:
                await self.local.upsert(owner_id, remote_record, mark_synced=True)
                return self._record(ctx, kind, key, OutcomeStatus.INSERTED)

            if remote_record.updated_at > local_record.updated_at:
                await self.local.upsert(owner_id, remote_record, mark_synced=True)
                return self._record(ctx, kind, key, OutcomeStatus.UPDATED)

            return self._record(ctx, kind, key, OutcomeStatus.SKIPPED_NOT_NEWER)
        except Exception as e:
            return self._record(ctx, kind, key, OutcomeStatus.FAILED, error=e)

    async def _merge_child(self, ctx: CycleContext, remote_record: SyncRecord, parent_key: str) -> EntityOutcome:
        """Dedup merge for boxes and products.

        New children are stored under the local parent key. Existing children
        keep their id and parent; a strictly newer remote copy refreshes the
        remaining fields.

        A child whose remote copy sits under a different parent key (boxes
        under a legacy AWB) stays pending, so the next push moves the remote
        copy under the local parent.
        """
        owner_id = ctx.owner_id
        kind = remote_record.kind
        key = remote_record.key
        parent_field = "shipment_key" if kind == EntityKind.BOX else "box_id"
        remote_parent = getattr(remote_record, parent_field)
        try:
            if await self.local.has_tombstone(owner_id, kind, key):
                return self._record(
                    ctx, kind, key, OutcomeStatus.SKIPPED_DELETED, parent_key=parent_key, message="deleted locally"
                )

            local_record = await self.local.get(owner_id, kind, key)
            if local_record is None:
                record = remote_record.model_copy(update={parent_field: parent_key})
                await self.local.upsert(owner_id, record, mark_synced=remote_parent == parent_key)
                return self._record(ctx, kind, key, OutcomeStatus.INSERTED, parent_key=parent_key)

            local_parent = getattr(local_record, parent_field)
            if remote_record.updated_at > local_record.updated_at:
                record = remote_record.model_copy(update={"id": local_record.id, parent_field: local_parent})
                await self.local.upsert(owner_id, record, mark_synced=remote_parent == local_parent)
                return self._record(ctx, kind, key, OutcomeStatus.UPDATED, parent_key=local_parent)

            if remote_parent != local_parent:
                await self.local.mark_pending(owner_id, kind, key)
            return self._record(ctx, kind, key, OutcomeStatus.SKIPPED_DUPLICATE, parent_key=local_parent)
        except Exception as e:
            return self._record(ctx, kind, key, OutcomeStatus.FAILED, parent_key=parent_key, error=e)

    async def _pull_children(self, ctx: CycleContext) -> None:
        self._set_phase(ctx, SyncPhase.PULLING_CHILDREN)
        shipments = await self.local.list(ctx.owner_id, EntityKind.SHIPMENT)
        ctx.tracker.begin_band(40, 100, len(shipments), f"Syncing boxes for {len(shipments)} shipments")

        remote_resolver = IdentityResolver(
            call=lambda op: self._remote(ctx, op, "list boxes"),
        )

        for shipment in shipments:
            self._check_cancelled(ctx)
            with with_correlation(shipment_key=shipment.key):
                try:
                    await self._pull_shipment_children(ctx, shipment, remote_resolver)
                    errors = 0
                except SyncCancelled:
                    raise
                except IdentityMismatch as e:
                    self._record(
                        ctx, EntityKind.SHIPMENT, shipment.key, OutcomeStatus.SKIPPED_INVALID,
                        failure=FailureKind.IDENTITY_MISMATCH, message=str(e),
                    )
                    errors = 0
                except Exception as e:
                    logger.warning(f"Failed to sync children of {shipment.key}: {e}")
                    self._record(ctx, EntityKind.SHIPMENT, shipment.key, OutcomeStatus.FAILED, error=e)
                    errors = 1
            ctx.tracker.advance(f"Synced boxes for {shipment.key}", errors=errors)

    async def _pull_shipment_children(
        self,
        ctx: CycleContext,
        shipment: Shipment,
        remote_resolver: IdentityResolver,
    ) -> None:
        owner_id = ctx.owner_id
        resolution = await remote_resolver.resolve_children(self.remote, owner_id, shipment)
        local_key = await self.resolver.resolve_storage_key(self.local, owner_id, shipment)

        if resolution.is_legacy:
            logger.info(
                f"Boxes of {shipment.key} found under legacy key {resolution.key}",
                extra_fields={"tried_keys": resolution.tried_keys},
            )

        for box in resolution.boxes:
            self._check_cancelled(ctx)
            await self._merge_child(ctx, box, parent_key=local_key)

        for local_box in await self.local.list(owner_id, EntityKind.BOX, parent_key=local_key):
            try:
                products = await self._remote(
                    ctx,
                    lambda box_id=local_box.id: self.remote.list(owner_id, EntityKind.PRODUCT, parent_key=box_id),
                    f"list products of {local_box.id}",
                )
            except SyncCancelled:
                raise
            except Exception as e:
                logger.warning(f"Failed to fetch products of box {local_box.id}: {e}")
                self._record(ctx, EntityKind.BOX, local_box.id, OutcomeStatus.FAILED, parent_key=local_key, error=e)
                continue

            for product in products:
                self._check_cancelled(ctx)
                await self._merge_child(ctx, product, parent_key=local_box.id)

    # =========================================================================
    # Push
    # =========================================================================

    async def _push_cycle(self, ctx: CycleContext) -> SyncCycleReport:
        return await self._run_cycle(ctx, self._push_body)

    async def _push_body(self, ctx: CycleContext) -> None:
        await self._push_deletions(ctx)
        await self._push_master_data(ctx)
        await self._push_shipments(ctx)

    async def _push_record(self, ctx: CycleContext, record: SyncRecord) -> EntityOutcome:
        try:
            await self._remote(
                ctx,
                lambda: self.remote.upsert(ctx.owner_id, record),
                f"upsert {record.kind.value} {record.key}",
            )
            await self.local.mark_synced(ctx.owner_id, record.kind, record.key, record.updated_at)
        except SyncCancelled:
            raise
        except Exception as e:
            logger.warning(f"Failed to push {record.kind.value} {record.key}: {e}")
            return self._record(
                ctx, record.kind, record.key, OutcomeStatus.FAILED, parent_key=record.parent_key, error=e
            )
        return self._record(ctx, record.kind, record.key, OutcomeStatus.UPDATED, parent_key=record.parent_key)

    async def _push_deletions(self, ctx: CycleContext) -> None:
        self._set_phase(ctx, SyncPhase.PUSHING_DELETIONS)
        tombstones = await self.local.list_tombstones(ctx.owner_id)
        ctx.tracker.begin_band(5, 10, len(tombstones), f"Replaying {len(tombstones)} deletions")

        for tombstone in tombstones:
            try:
                await self._remote(
                    ctx,
                    lambda t=tombstone: self.remote.delete(ctx.owner_id, t.kind, t.key),
                    f"delete {tombstone.kind.value} {tombstone.key}",
                )
                await self.local.clear_tombstone(ctx.owner_id, tombstone.kind, tombstone.key)
            except SyncCancelled:
                raise
            except Exception as e:
                self._record(ctx, tombstone.kind, tombstone.key, OutcomeStatus.FAILED, error=e)
                ctx.tracker.advance(f"Failed to delete {tombstone.key}", errors=1)
                continue
            self._record(ctx, tombstone.kind, tombstone.key, OutcomeStatus.DELETED)
            ctx.tracker.advance(f"Deleted {tombstone.kind.value} {tombstone.key}", changed=1)

    async def _push_master_data(self, ctx: CycleContext) -> None:
        self._set_phase(ctx, SyncPhase.PUSHING_MASTER_DATA)
        ctx.tracker.begin_band(10, 20, len(MASTER_DATA_KINDS), "Pushing master data")
        for kind in MASTER_DATA_KINDS:
            for record in await self.local.list_pending(ctx.owner_id, kind):
                await self._push_record(ctx, record)
            ctx.tracker.advance(f"Pushed {kind.value} records")

    async def _push_shipments(self, ctx: CycleContext) -> None:
        self._set_phase(ctx, SyncPhase.PUSHING_SHIPMENTS)
        owner_id = ctx.owner_id
        shipments = await self.local.list(owner_id, EntityKind.SHIPMENT)
        pending_shipments = {s.key for s in await self.local.list_pending(owner_id, EntityKind.SHIPMENT)}
        ctx.tracker.begin_band(20, 100, len(shipments), f"Pushing {len(shipments)} shipments")

        for shipment in shipments:
            with with_correlation(shipment_key=shipment.key):
                parent_ok = True
                if shipment.key in pending_shipments:
                    parent_ok = not (await self._push_record(ctx, shipment)).failed
                await self._push_boxes(ctx, shipment, parent_ok)
            ctx.tracker.advance(f"Pushed shipment {shipment.key}")

    async def _push_boxes(self, ctx: CycleContext, shipment: Shipment, shipment_ok: bool) -> None:
        owner_id = ctx.owner_id
        boxes = await self.local.list(owner_id, EntityKind.BOX, parent_key=shipment.key)
        pending_boxes = {
            b.key for b in await self.local.list_pending(owner_id, EntityKind.BOX, parent_key=shipment.key)
        }

        for box in boxes:
            box_ok = shipment_ok
            if box.key in pending_boxes:
                if shipment_ok:
                    box_ok = not (await self._push_record(ctx, box)).failed
                else:
                    self._record(
                        ctx, EntityKind.BOX, box.key, OutcomeStatus.FAILED, parent_key=shipment.key,
                        failure=FailureKind.PARENT_FAILED, message=f"shipment {shipment.key} failed",
                    )

            for product in await self.local.list_pending(owner_id, EntityKind.PRODUCT, parent_key=box.key):
                if box_ok:
                    await self._push_record(ctx, product)
                else:
                    self._record(
                        ctx, EntityKind.PRODUCT, product.key, OutcomeStatus.FAILED, parent_key=box.key,
                        failure=FailureKind.PARENT_FAILED, message=f"box {box.key} not pushed",
                    )

    # =========================================================================
    # Single-entity writes
    # =========================================================================

    async def save_shipment(
        self,
        owner_id: str,
        shipment: Shipment,
        boxes: Sequence[Box] = (),
        products: Sequence[Product] = (),
        touch: bool = True,
    ) -> Shipment:
        """Persist a shipment (optionally with children) locally, then replicate.

        Boxes are re-keyed to the shipment's resolved storage key. All rows
        commit in one local transaction.

        Raises:
            DurabilityFailure: The local write failed
            OwnerScopeError: owner_id is empty or the records belong to another owner
        """
        require_owner(owner_id)
        stamp = now_ms()

        def prepare(record: SyncRecord, **update) -> SyncRecord:
            if touch:
                update["updated_at"] = stamp
            return scope_record(owner_id, record.model_copy(update=update))

        shipment = prepare(shipment)
        storage_key = await self.resolver.resolve_storage_key(self.local, owner_id, shipment)
        boxes = [prepare(box, shipment_key=storage_key) for box in boxes]
        products = [prepare(product) for product in products]

        await self.local.save_tree(owner_id, shipment, boxes, products)
        self._local_write_event(owner_id, shipment, children=len(boxes) + len(products))
        self._schedule_replication(owner_id, [shipment, *boxes, *products])
        return shipment

    async def save_box(self, owner_id: str, box: Box, touch: bool = True) -> Box:
        return await self._save_single(owner_id, box, touch)

    async def save_product(self, owner_id: str, product: Product, touch: bool = True) -> Product:
        return await self._save_single(owner_id, product, touch)

    async def save_master_record(self, owner_id: str, record: MasterDataRecord, touch: bool = True) -> MasterDataRecord:
        return await self._save_single(owner_id, record, touch)

    async def _save_single(self, owner_id: str, record: SyncRecord, touch: bool):
        require_owner(owner_id)
        record = scope_record(owner_id, record.touched() if touch else record)
        await self.local.upsert(owner_id, record)
        self._local_write_event(owner_id, record)
        self._schedule_replication(owner_id, [record])
        return record

    async def delete(self, owner_id: str, kind: EntityKind, key: str) -> bool:
        """Delete locally (children cascade), then replay the deletion remotely.

        Raises:
            DurabilityFailure: The local delete failed
        """
        require_owner(owner_id)
        existed = await self.local.delete(owner_id, kind, key)
        if existed:
            self.events.emit_info(
                SyncEventType.LOCAL_WRITE,
                f"Deleted {kind.value} {key} locally",
                owner_id=owner_id,
                entity_kind=kind,
                entity_key=key,
                details={"operation": "delete"},
            )
            self._schedule(self._replicate_delete(owner_id, self.generation(owner_id), kind, key))
        return existed

    def _local_write_event(self, owner_id: str, record: SyncRecord, children: int = 0) -> None:
        self.events.emit_info(
            SyncEventType.LOCAL_WRITE,
            f"Saved {record.kind.value} {record.key} locally",
            owner_id=owner_id,
            entity_kind=record.kind,
            entity_key=record.key,
            details={"operation": "upsert", "children": children},
        )

    # =========================================================================
    # Background replication
    # =========================================================================

    def _schedule(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _schedule_replication(self, owner_id: str, records: List[SyncRecord]) -> None:
        self._schedule(self._replicate(owner_id, self.generation(owner_id), records))

    async def wait_for_background(self) -> None:
        """Wait until every scheduled background write has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _replication_failed(self, owner_id: str, record_kind: EntityKind, key: str, error: BaseException) -> None:
        logger.warning(f"Background replication of {record_kind.value} {key} failed: {error}")
        self.events.emit_warning(
            SyncEventType.REMOTE_WRITE_FAILED,
            f"Remote write of {record_kind.value} {key} failed; it stays pending",
            owner_id=owner_id,
            entity_kind=record_kind,
            entity_key=key,
            details={"failure": classify_failure(error).value, "error": str(error)},
        )

    async def _replicate(self, owner_id: str, generation: int, records: List[SyncRecord]) -> None:
        """Write records to the remote store in order; stop at the first failure.

        Failures are logged and emitted, never raised. Unwritten records stay
        pending for the next push.
        """
        async with self._lock_for(owner_id):
            for record in records:
                if generation != self.generation(owner_id):
                    logger.debug(f"Replication for {owner_id} cancelled by session change")
                    return
                try:
                    await self.gate.with_timeout(
                        lambda record=record: self.remote.upsert(owner_id, record),
                        timeout=self.remote_timeout,
                        operation=f"replicate {record.kind.value} {record.key}",
                    )
                    await self.local.mark_synced(owner_id, record.kind, record.key, record.updated_at)
                except ConnectivityError:
                    logger.debug(f"Offline; {record.kind.value} {record.key} left pending")
                    return
                except Exception as e:
                    self._replication_failed(owner_id, record.kind, record.key, e)
                    return

    async def _replicate_delete(self, owner_id: str, generation: int, kind: EntityKind, key: str) -> None:
        async with self._lock_for(owner_id):
            if generation != self.generation(owner_id):
                return
            try:
                await self.gate.with_timeout(
                    lambda: self.remote.delete(owner_id, kind, key),
                    timeout=self.remote_timeout,
                    operation=f"replicate delete {kind.value} {key}",
                )
                await self.local.clear_tombstone(owner_id, kind, key)
            except ConnectivityError:
                logger.debug(f"Offline; deletion of {kind.value} {key} left pending")
            except Exception as e:
                self._replication_failed(owner_id, kind, key, e)
