"""Identity Resolver Algorithm.

A shipment has one primary identifier (its invoice number) and up to three
alternates (awb, master_awb, house_awb). Older data stored boxes under the
AWB, newer data under the invoice number. Resolution:

1. List boxes under the primary key
2. List boxes under each legacy key, in order
3. Primary non-empty -> PRIMARY, unless a legacy key holds a different
   non-empty box set, which raises RepairNeeded
4. Primary empty -> first non-empty legacy key (LEGACY), unless a later
   legacy key holds a different non-empty box set (RepairNeeded)
5. Nothing anywhere -> EMPTY, primary key

Resolution never writes, so repeating it on consistent data returns the same
key every time.
"""

from typing import Awaitable, Callable, List, Optional, TypeVar

from connectors.base import RecordStore
from core.errors import RepairNeeded
from core.models.records import Box, EntityKind, Shipment
from core.observability.logging import get_logger
from identity_resolver.models import ChildResolution, ResolutionMethod

logger = get_logger(__name__)

T = TypeVar("T")

# Wraps one store call; the coordinator passes the connectivity gate here
StoreCall = Callable[[Callable[[], Awaitable[T]]], Awaitable[T]]


async def _direct(op_factory: Callable[[], Awaitable[T]]) -> T:
    return await op_factory()


class IdentityResolver:
    """Resolves which key a shipment's children live under.

    Works over any RecordStore (local or remote).

    Example:
        resolver = IdentityResolver(call=lambda op: gate.with_timeout(op))
        resolution = await resolver.resolve_children(remote, "user-1", shipment)
        for box in resolution.boxes:
            ...
    """

    def __init__(self, call: Optional[StoreCall] = None, check_divergence: bool = True):
        """Initialize the resolver.

        Args:
            call: Wrapper applied to every store call (timeouts, connectivity)
            check_divergence: Also query legacy keys when the primary key has
                children, so divergent data is reported instead of hidden
        """
        self._call = call or _direct
        self.check_divergence = check_divergence

    async def _list_boxes(self, store: RecordStore, owner_id: str, key: str) -> List[Box]:
        return await self._call(lambda: store.list(owner_id, EntityKind.BOX, parent_key=key))

    async def resolve_children(
        self,
        store: RecordStore,
        owner_id: str,
        shipment: Shipment,
    ) -> ChildResolution:
        """Find the boxes of ``shipment`` in ``store``.

        Raises:
            RepairNeeded: Two populated keys (primary or legacy) hold
                different box sets
        """
        primary = shipment.key
        tried = [primary]
        primary_boxes = await self._list_boxes(store, owner_id, primary)

        if primary_boxes and not self.check_divergence:
            return ChildResolution(
                key=primary, boxes=primary_boxes, method=ResolutionMethod.PRIMARY, tried_keys=tried
            )

        primary_ids = {b.id for b in primary_boxes}
        legacy_hit: Optional[ChildResolution] = None

        for legacy in shipment.legacy_keys():
            tried.append(legacy)
            legacy_boxes = await self._list_boxes(store, owner_id, legacy)
            if not legacy_boxes:
                continue

            legacy_ids = {b.id for b in legacy_boxes}
            if primary_boxes:
                if legacy_ids != primary_ids:
                    logger.warning(
                        f"Shipment {primary} has divergent boxes under {legacy}",
                        extra_fields={"primary_ids": sorted(primary_ids), "legacy_ids": sorted(legacy_ids)},
                    )
                    raise RepairNeeded(primary, legacy, primary_ids, legacy_ids)
                continue

            if legacy_hit is None:
                legacy_hit = ChildResolution(
                    key=legacy, boxes=legacy_boxes, method=ResolutionMethod.LEGACY, tried_keys=[]
                )
                if not self.check_divergence:
                    break
                continue

            hit_ids = {b.id for b in legacy_hit.boxes}
            if legacy_ids != hit_ids:
                logger.warning(
                    f"Shipment {primary} has divergent boxes under {legacy_hit.key} and {legacy}",
                    extra_fields={"reference_ids": sorted(hit_ids), "legacy_ids": sorted(legacy_ids)},
                )
                raise RepairNeeded(primary, legacy, hit_ids, legacy_ids, reference_key=legacy_hit.key)

        if primary_boxes:
            return ChildResolution(
                key=primary, boxes=primary_boxes, method=ResolutionMethod.PRIMARY, tried_keys=tried
            )

        if legacy_hit is not None:
            logger.debug(f"Shipment {primary} children found under legacy key {legacy_hit.key}")
            return legacy_hit.model_copy(update={"tried_keys": tried})

        return ChildResolution(key=primary, boxes=[], method=ResolutionMethod.EMPTY, tried_keys=tried)

    async def resolve_storage_key(self, store: RecordStore, owner_id: str, shipment: Shipment) -> str:
        """Key new children of ``shipment`` must be written under in ``store``.

        The key existing children already use, otherwise the primary key.
        """
        resolution = await self.resolve_children(store, owner_id, shipment)
        return resolution.key

    async def find_shipment(self, store: RecordStore, owner_id: str, key: str) -> Optional[Shipment]:
        """Look up a shipment by primary key, falling back to alternate identifiers."""
        shipment = await self._call(lambda: store.get(owner_id, EntityKind.SHIPMENT, key))
        if shipment is not None:
            return shipment

        for candidate in await self._call(lambda: store.list(owner_id, EntityKind.SHIPMENT)):
            if key in candidate.legacy_keys():
                return candidate
        return None


# =============================================================================
# Module-level convenience functions
# =============================================================================

_default_resolver = IdentityResolver()


async def resolve_children(store: RecordStore, owner_id: str, shipment: Shipment) -> ChildResolution:
    """Resolve ``shipment``'s boxes with the default resolver."""
    return await _default_resolver.resolve_children(store, owner_id, shipment)


async def resolve_storage_key(store: RecordStore, owner_id: str, shipment: Shipment) -> str:
    """Storage key for new children with the default resolver."""
    return await _default_resolver.resolve_storage_key(store, owner_id, shipment)


async def find_shipment(store: RecordStore, owner_id: str, key: str) -> Optional[Shipment]:
    """Shipment lookup with legacy fallback using the default resolver."""
    return await _default_resolver.find_shipment(store, owner_id, key)
