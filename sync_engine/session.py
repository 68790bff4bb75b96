"""User session binding for the sync engine.

The session tracks which owner is logged in, turns login/logout into
coordinator cancellation, and exposes the UI-facing status queries.

Usage:
    session = build_session(load_settings())
    await session.on_login("user-1")          # background pull starts
    report = await session.sync_to_cloud()
    summary = await session.get_sync_summary()
"""

import asyncio
from typing import Callable, List, Optional

from connectors import create_store
from connectors.base import RecordStore
from connectors.cloud import RemoteApiConfig, RetryConfig
from connectivity.gate import ConnectivityGate, ConnectivityProbe, HttpHealthProbe, TcpProbe
from core.audit.events import CallbackEventSink, SyncEventBus, SyncEventType
from core.config import SyncSettings, load_settings
from core.errors import ConnectivityError, OwnerScopeError
from core.models.records import Box, EntityKind, MasterDataRecord, Product, Shipment
from core.models.refs import DataSourceInfo, SyncEvent, SyncStatus, SyncSummary
from core.observability.logging import configure_logging, get_logger
from core.workflow.base import SyncCycleReport
from storage.local_store import LocalStore
from sync_engine.coordinator import SyncCoordinator
from sync_engine.progress import ProgressCallback

logger = get_logger(__name__)

# Events forwarded to progress subscribers
PROGRESS_EVENT_TYPES = [
    SyncEventType.CYCLE_STARTED,
    SyncEventType.PHASE_CHANGED,
    SyncEventType.PROGRESS,
    SyncEventType.CYCLE_COMPLETED,
    SyncEventType.CYCLE_ABORTED,
    SyncEventType.CYCLE_CANCELLED,
]


class SyncSession:
    """Login-scoped facade over a SyncCoordinator."""

    def __init__(self, coordinator: SyncCoordinator, pull_on_login: bool = True):
        self.coordinator = coordinator
        self.pull_on_login = pull_on_login
        self._owner_id: Optional[str] = None
        self._login_pull: Optional[asyncio.Task] = None

    @property
    def owner_id(self) -> Optional[str]:
        return self._owner_id

    @property
    def local(self) -> LocalStore:
        return self.coordinator.local

    @property
    def remote(self) -> RecordStore:
        return self.coordinator.remote

    @property
    def gate(self) -> ConnectivityGate:
        return self.coordinator.gate

    @property
    def events(self) -> SyncEventBus:
        return self.coordinator.events

    def _require_owner(self) -> str:
        if not self._owner_id:
            raise OwnerScopeError("No user is logged in")
        return self._owner_id

    # =========================================================================
    # Login / logout
    # =========================================================================

    async def on_login(self, owner_id: str) -> Optional[asyncio.Task]:
        """Switch to ``owner_id``; cancels running cycles of any previous owner.

        Returns:
            The background pull task when pull-on-login is enabled
        """
        if not owner_id or not owner_id.strip():
            raise OwnerScopeError("Login without an owner id")

        self.coordinator.cancel_all()
        self._owner_id = owner_id
        self.events.emit_info(SyncEventType.SESSION_LOGIN, f"Logged in as {owner_id}", owner_id=owner_id)

        self._login_pull = None
        if self.pull_on_login:
            self._login_pull = asyncio.ensure_future(self._pull_after_login(owner_id))
        return self._login_pull

    async def _pull_after_login(self, owner_id: str) -> Optional[SyncCycleReport]:
        try:
            return await self.coordinator.pull(owner_id)
        except ConnectivityError as e:
            logger.info(f"Skipping pull after login: {e}")
            return None
        except Exception:
            logger.exception(f"Pull after login failed for {owner_id}")
            return None

    async def on_logout(self) -> None:
        """Cancel running cycles and forget the current owner."""
        owner_id = self._owner_id
        self.coordinator.cancel_all()
        self._owner_id = None
        self._login_pull = None
        self.events.emit_info(SyncEventType.SESSION_LOGOUT, "Logged out", owner_id=owner_id)

    # =========================================================================
    # Manual triggers
    # =========================================================================

    async def sync_to_cloud(self, on_progress: Optional[ProgressCallback] = None) -> SyncCycleReport:
        """Push everything pending for the current owner.

        Raises:
            ConnectivityError: Remote store unreachable or forced offline
            OwnerScopeError: Nobody is logged in
        """
        return await self.coordinator.push(self._require_owner(), on_progress=on_progress)

    async def sync_from_cloud(self, on_progress: Optional[ProgressCallback] = None) -> SyncCycleReport:
        """Pull remote changes for the current owner.

        Raises:
            ConnectivityError: Remote store unreachable or forced offline
            OwnerScopeError: Nobody is logged in
        """
        return await self.coordinator.pull(self._require_owner(), on_progress=on_progress)

    # =========================================================================
    # Writes for the current owner
    # =========================================================================

    async def save_shipment(
        self,
        shipment: Shipment,
        boxes: List[Box] = (),
        products: List[Product] = (),
    ) -> Shipment:
        return await self.coordinator.save_shipment(self._require_owner(), shipment, boxes, products)

    async def save_box(self, box: Box) -> Box:
        return await self.coordinator.save_box(self._require_owner(), box)

    async def save_product(self, product: Product) -> Product:
        return await self.coordinator.save_product(self._require_owner(), product)

    async def save_master_record(self, record: MasterDataRecord) -> MasterDataRecord:
        return await self.coordinator.save_master_record(self._require_owner(), record)

    async def delete(self, kind: EntityKind, key: str) -> bool:
        return await self.coordinator.delete(self._require_owner(), kind, key)

    # =========================================================================
    # Status
    # =========================================================================

    def subscribe_progress(self, callback: Callable[[SyncEvent], None]) -> Callable[[], None]:
        """Forward cycle and progress events of the current owner to ``callback``.

        Returns:
            A function that removes the subscription
        """
        def forward(event: SyncEvent) -> None:
            if event.owner_id and event.owner_id == self._owner_id:
                callback(event)

        sink = CallbackEventSink(forward, event_types=PROGRESS_EVENT_TYPES)
        self.events.add_sink(sink)
        return lambda: self.events.remove_sink(sink)

    def sync_status(self) -> SyncStatus:
        if not self._owner_id:
            return SyncStatus(status_message="Not logged in")
        return self.coordinator.sync_status(self._owner_id)

    async def get_data_source_info(self) -> DataSourceInfo:
        return DataSourceInfo(
            is_online=await self.gate.reachable(),
            force_offline=self.gate.force_offline,
            owner_id=self._owner_id,
        )

    async def get_sync_summary(self) -> SyncSummary:
        """Local and remote record counts for the current owner.

        ``remote_count`` is None when the remote store cannot be reached or
        the count request fails.
        """
        owner_id = self._require_owner()
        remote_count = None
        if await self.gate.reachable():
            try:
                remote_count = await self.gate.with_timeout(
                    lambda: self.remote.total_count(owner_id),
                    timeout=self.coordinator.remote_timeout,
                    operation="count remote records",
                )
            except Exception as e:
                logger.warning(f"Remote count unavailable: {e}")

        return SyncSummary(
            local_count=await self.local.total_count(owner_id),
            remote_count=remote_count,
            pending_count=await self.local.pending_count(owner_id),
            last_sync_timestamp=await self.local.get_last_sync(owner_id),
        )

    def set_force_offline(self, value: bool) -> None:
        self.gate.set_force_offline(value)

    async def wait_for_login_pull(self) -> Optional[SyncCycleReport]:
        if self._login_pull is None:
            return None
        return await self._login_pull

    async def close(self) -> None:
        """Cancel cycles, flush background writes and close the remote store."""
        self.coordinator.cancel_all()
        if self._login_pull is not None:
            await self._login_pull
        await self.coordinator.wait_for_background()
        await self.remote.close()


# =============================================================================
# Factory
# =============================================================================

def build_probe(settings: SyncSettings) -> ConnectivityProbe:
    if settings.probe_url:
        return HttpHealthProbe(settings.probe_url, timeout_seconds=settings.probe_timeout_seconds)
    return TcpProbe(settings.probe_host, settings.probe_port, timeout_seconds=settings.probe_timeout_seconds)


def build_remote_store(settings: SyncSettings) -> RecordStore:
    if settings.remote_store.lower() == "cloud":
        api_config = RemoteApiConfig(
            base_url=settings.remote_base_url,
            api_key=settings.remote_api_key,
            retry_config=RetryConfig(max_retries=settings.remote_max_retries),
            timeout_seconds=settings.remote_timeout_seconds,
        )
        return create_store("cloud", api_config=api_config)
    return create_store(settings.remote_store)


def build_session(
    settings: Optional[SyncSettings] = None,
    remote: Optional[RecordStore] = None,
    probe: Optional[ConnectivityProbe] = None,
    events: Optional[SyncEventBus] = None,
) -> SyncSession:
    """Wire LocalStore, remote store, gate and coordinator from settings."""
    settings = settings or load_settings()
    configure_logging(level=settings.log_level_value, json_format=settings.log_json)

    gate = ConnectivityGate(
        probe or build_probe(settings),
        force_offline=settings.force_offline,
        cache_seconds=settings.probe_cache_seconds,
        default_timeout=settings.remote_timeout_seconds,
    )
    coordinator = SyncCoordinator(
        local=LocalStore(settings.local_db_path),
        remote=remote or build_remote_store(settings),
        gate=gate,
        events=events or SyncEventBus.default(),
        remote_timeout=settings.remote_timeout_seconds,
    )
    logger.info(
        f"Sync session ready (local={settings.local_db_path}, remote={coordinator.remote.name})"
    )
    return SyncSession(coordinator, pull_on_login=settings.pull_on_login)
