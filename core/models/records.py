"""Synced record models.

These models are the single logical schema shared by the LocalStore and the
remote store. Remote payloads use camelCase keys (the cloud API's convention);
the models accept both spellings and dump camelCase with ``by_alias=True``.

Timestamps are epoch milliseconds (int) and drive recency-based conflict
resolution.
"""

from __future__ import annotations

import time
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


PLACEHOLDER_PREFIX = "_placeholder"


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Value Parsers (local rows, remote JSON and form input all feed these models)
# =============================================================================

def _parse_decimal(value):
    """Parse decimal from str/int/float, tolerating blanks and thousands separators."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        s = value.strip().replace(",", "")
        if s == "":
            return Decimal("0")
        return Decimal(s)
    return value


def _parse_epoch_ms(value):
    """Parse an epoch-ms timestamp from int, float, ISO string, date or datetime."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("Boolean is not a timestamp")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, date):
        return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp() * 1000)
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        if s.lstrip("-").isdigit():
            return int(s)
        return _parse_epoch_ms(datetime.fromisoformat(s.replace("Z", "+00:00")))
    return value


def _parse_bool(value):
    """SQLite stores booleans as 0/1."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


DecimalValue = Annotated[Decimal, BeforeValidator(_parse_decimal)]
EpochMs = Annotated[int, BeforeValidator(_parse_epoch_ms)]
OptionalEpochMs = Annotated[Optional[int], BeforeValidator(_parse_epoch_ms)]
BoolValue = Annotated[bool, BeforeValidator(_parse_bool)]


# =============================================================================
# Entity Kinds
# =============================================================================

class EntityKind(str, Enum):
    """Kinds of records handled by the stores."""
    SHIPMENT = "shipment"
    BOX = "box"
    PRODUCT = "product"
    SHIPPER = "shipper"
    CONSIGNEE = "consignee"
    PRODUCT_TYPE = "product_type"
    FLOWER_TYPE = "flower_type"

    @property
    def is_master_data(self) -> bool:
        return self in MASTER_DATA_KINDS


MASTER_DATA_KINDS = (
    EntityKind.SHIPPER,
    EntityKind.CONSIGNEE,
    EntityKind.PRODUCT_TYPE,
    EntityKind.FLOWER_TYPE,
)


# =============================================================================
# Base Model
# =============================================================================

class SyncRecord(BaseModel):
    """Base model for every synced record."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    owner_id: str = ""
    created_at: EpochMs = Field(default_factory=now_ms)
    updated_at: EpochMs = Field(default_factory=now_ms)

    @property
    def kind(self) -> EntityKind:
        raise NotImplementedError

    @property
    def key(self) -> str:
        raise NotImplementedError

    @property
    def parent_key(self) -> Optional[str]:
        return None

    def content(self) -> Dict[str, Any]:
        """Field values used for convergence checks (JSON-safe, snake_case)."""
        return self.model_dump(mode="json")

    def touched(self, at: Optional[int] = None) -> "SyncRecord":
        """Copy with ``updated_at`` set to now (or ``at``)."""
        return self.model_copy(update={"updated_at": at if at is not None else now_ms()})


# =============================================================================
# Hierarchical Records
# =============================================================================

class Shipment(SyncRecord):
    """Root aggregate: one invoice / consignment.

    ``invoice_number`` is the primary identifier. ``awb`` is the registered
    alternate identifier; older data stored children under it. ``master_awb``
    and ``house_awb`` are further alternates.
    """
    invoice_number: str = Field(..., min_length=1)
    awb: str = ""
    master_awb: str = ""
    house_awb: str = ""
    status: str = "pending"

    shipper: str = ""
    shipper_address: str = ""
    consignee: str = ""
    consignee_address: str = ""
    client_ref: str = ""
    flight_no: str = ""
    discharge_airport: str = ""
    origin: str = ""
    destination: str = ""
    eta: OptionalEpochMs = None
    invoice_date: OptionalEpochMs = None
    gross_weight: float = 0.0
    total_amount: DecimalValue = Decimal("0")
    invoice_title: str = ""

    @property
    def kind(self) -> EntityKind:
        return EntityKind.SHIPMENT

    @property
    def key(self) -> str:
        return self.invoice_number

    @property
    def is_placeholder(self) -> bool:
        return self.invoice_number.startswith(PLACEHOLDER_PREFIX)

    def legacy_keys(self) -> List[str]:
        """Alternate identifiers in lookup order, without blanks or duplicates."""
        keys: List[str] = []
        for candidate in (self.awb, self.master_awb, self.house_awb):
            candidate = (candidate or "").strip()
            if candidate and candidate != self.invoice_number and candidate not in keys:
                keys.append(candidate)
        return keys

    def lookup_keys(self) -> List[str]:
        """Primary key followed by legacy keys."""
        return [self.invoice_number] + self.legacy_keys()


class Box(SyncRecord):
    """A box inside a shipment."""
    id: str = Field(..., min_length=1)
    shipment_key: str = Field(..., min_length=1)
    box_number: str = ""
    length: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def kind(self) -> EntityKind:
        return EntityKind.BOX

    @property
    def key(self) -> str:
        return self.id

    @property
    def parent_key(self) -> Optional[str]:
        return self.shipment_key

    @property
    def volume(self) -> float:
        return self.length * self.width * self.height


class Product(SyncRecord):
    """A product line inside a box."""
    id: str = Field(..., min_length=1)
    box_id: str = Field(..., min_length=1)
    type: str = ""
    description: str = ""
    weight: float = 0.0
    rate: DecimalValue = Decimal("0")
    flower_type: str = "LOOSE FLOWERS"
    has_stems: BoolValue = False
    approx_quantity: int = 0

    @property
    def kind(self) -> EntityKind:
        return EntityKind.PRODUCT

    @property
    def key(self) -> str:
        return self.id

    @property
    def parent_key(self) -> Optional[str]:
        return self.box_id


# =============================================================================
# Flat Reference Data
# =============================================================================

class MasterDataRecord(SyncRecord):
    """Flat reference data (shipper, consignee, product type, flower type)."""
    id: str = Field(..., min_length=1)
    record_kind: EntityKind = Field(..., alias="kind")
    fields: Dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> EntityKind:
        return self.record_kind

    @property
    def key(self) -> str:
        return self.id

    @property
    def name(self) -> str:
        return str(self.fields.get("name") or self.fields.get("flower_name") or "")


AnyRecord = Union[Shipment, Box, Product, MasterDataRecord]


def model_for_kind(kind: EntityKind):
    """Model class that stores records of ``kind``."""
    if kind == EntityKind.SHIPMENT:
        return Shipment
    if kind == EntityKind.BOX:
        return Box
    if kind == EntityKind.PRODUCT:
        return Product
    return MasterDataRecord
