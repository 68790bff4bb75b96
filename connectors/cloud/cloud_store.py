"""Cloud record store.

Maps the RecordStore contract onto the cloud REST API:

    owners/{owner}/shipments                     list / count
    owners/{owner}/shipments/{invoice_number}    get / put / delete (cascades)
    owners/{owner}/shipments/{key}/boxes         boxes stored under a shipment key
    owners/{owner}/boxes/{box_id}                get / put / delete (cascades)
    owners/{owner}/boxes/{box_id}/products       products of a box
    owners/{owner}/products/{product_id}         get / put / delete
    owners/{owner}/{shippers|consignees|product_types|flower_types}[/{id}]

Payloads are camelCase JSON as produced by ``model_dump(by_alias=True)``.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

from pydantic import ValidationError

from connectors.base import RecordStore, register_store, require_owner, scope_record
from connectors.cloud.cloud_client import RemoteApiClient, RemoteApiConfig
from core.models.records import AnyRecord, EntityKind, SyncRecord, model_for_kind
from core.observability.logging import get_logger

logger = get_logger(__name__)


COLLECTIONS: Dict[EntityKind, str] = {
    EntityKind.SHIPMENT: "shipments",
    EntityKind.BOX: "boxes",
    EntityKind.PRODUCT: "products",
    EntityKind.SHIPPER: "shippers",
    EntityKind.CONSIGNEE: "consignees",
    EntityKind.PRODUCT_TYPE: "product_types",
    EntityKind.FLOWER_TYPE: "flower_types",
}

# Child collections are nested under their parent's collection
PARENT_COLLECTIONS: Dict[EntityKind, str] = {
    EntityKind.BOX: "shipments",
    EntityKind.PRODUCT: "boxes",
}


def _segment(value: str) -> str:
    return quote(str(value), safe="")


@register_store("cloud")
class CloudRecordStore(RecordStore):
    """RecordStore backed by the cloud REST API."""

    name = "cloud"

    def __init__(self, client: Optional[RemoteApiClient] = None, api_config: Optional[RemoteApiConfig] = None):
        self.client = client or RemoteApiClient(api_config or RemoteApiConfig())

    # =========================================================================
    # Paths / payloads
    # =========================================================================

    def _collection_path(self, owner_id: str, kind: EntityKind) -> str:
        return f"owners/{_segment(owner_id)}/{COLLECTIONS[kind]}"

    def _item_path(self, owner_id: str, kind: EntityKind, key: str) -> str:
        return f"{self._collection_path(owner_id, kind)}/{_segment(key)}"

    def _children_path(self, owner_id: str, kind: EntityKind, parent_key: str) -> str:
        parent = PARENT_COLLECTIONS[kind]
        return f"owners/{_segment(owner_id)}/{parent}/{_segment(parent_key)}/{COLLECTIONS[kind]}"

    def _parse(self, owner_id: str, kind: EntityKind, payload: Dict[str, Any]) -> Optional[AnyRecord]:
        """Validate a remote payload. Records that do not validate are skipped."""
        data = dict(payload)
        data.setdefault("ownerId", owner_id)
        if kind.is_master_data:
            data.setdefault("kind", kind.value)
        try:
            return model_for_kind(kind).model_validate(data)
        except ValidationError as e:
            logger.warning(
                f"Skipping invalid remote {kind.value} payload: {e.error_count()} error(s)",
                extra_fields={"payload_keys": sorted(data.keys())},
            )
            return None

    # =========================================================================
    # RecordStore
    # =========================================================================

    async def get(self, owner_id: str, kind: EntityKind, key: str) -> Optional[AnyRecord]:
        require_owner(owner_id)
        payload = await self.client.get_json(self._item_path(owner_id, kind, key))
        if not payload:
            return None
        return self._parse(owner_id, kind, payload)

    async def list(
        self,
        owner_id: str,
        kind: EntityKind,
        parent_key: Optional[str] = None,
    ) -> List[AnyRecord]:
        require_owner(owner_id)
        if parent_key is not None and kind in PARENT_COLLECTIONS:
            path = self._children_path(owner_id, kind, parent_key)
        else:
            path = self._collection_path(owner_id, kind)

        records = []
        for payload in await self.client.list_json(path):
            record = self._parse(owner_id, kind, payload)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.key)

    async def upsert(self, owner_id: str, record: SyncRecord) -> str:
        record = scope_record(owner_id, record)
        await self.client.put_json(
            self._item_path(owner_id, record.kind, record.key),
            record.model_dump(mode="json", by_alias=True),
        )
        return record.key

    async def delete(self, owner_id: str, kind: EntityKind, key: str) -> bool:
        require_owner(owner_id)
        return await self.client.delete(self._item_path(owner_id, kind, key))

    async def count(self, owner_id: str, kind: EntityKind) -> int:
        require_owner(owner_id)
        response = await self.client.get_json(f"{self._collection_path(owner_id, kind)}/count")
        return int((response or {}).get("count", 0))

    async def test_connection(self) -> bool:
        return await self.client.health()

    async def close(self) -> None:
        await self.client.disconnect()
