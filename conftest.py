"""Shared pytest fixtures: a temp-file LocalStore, an in-memory remote, a gate
with a switchable probe and an event bus that keeps every event in memory.

Async code is driven with asyncio.run() from plain pytest tests, one
asyncio.run() per test so per-owner locks never cross event loops.
"""

import tempfile
from pathlib import Path

import pytest

from connectivity.gate import ConnectivityGate, StaticProbe
from connectors.memory import InMemoryRecordStore
from core.audit.events import InMemoryEventSink, SyncEventBus
from core.models.records import Box, EntityKind, MasterDataRecord, Product, Shipment
from storage.local_store import LocalStore
from sync_engine.coordinator import SyncCoordinator


OWNER = "user-1"


# =============================================================================
# Record builders
# =============================================================================

def make_shipment(invoice_number: str, updated_at: int = 100, **fields) -> Shipment:
    return Shipment(invoice_number=invoice_number, created_at=1, updated_at=updated_at, **fields)


def make_box(box_id: str, shipment_key: str, updated_at: int = 100, **fields) -> Box:
    return Box(id=box_id, shipment_key=shipment_key, created_at=1, updated_at=updated_at, **fields)


def make_product(product_id: str, box_id: str, updated_at: int = 100, **fields) -> Product:
    return Product(id=product_id, box_id=box_id, created_at=1, updated_at=updated_at, **fields)


def make_master(record_id: str, kind: EntityKind = EntityKind.SHIPPER, updated_at: int = 100, **fields) -> MasterDataRecord:
    return MasterDataRecord(id=record_id, record_kind=kind, fields=fields, created_at=1, updated_at=updated_at)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def db_path():
    """Fresh SQLite file per test."""
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "sync_test.db"


@pytest.fixture
def local_store(db_path):
    return LocalStore(db_path)


@pytest.fixture
def remote_store():
    return InMemoryRecordStore()


@pytest.fixture
def probe():
    return StaticProbe(online=True)


@pytest.fixture
def gate(probe):
    # No caching, so flipping probe.online takes effect immediately
    return ConnectivityGate(probe, cache_seconds=0.0, default_timeout=5.0)


@pytest.fixture
def event_sink():
    return InMemoryEventSink()


@pytest.fixture
def events(event_sink):
    return SyncEventBus([event_sink])


@pytest.fixture
def coordinator(local_store, remote_store, gate, events):
    return SyncCoordinator(local_store, remote_store, gate, events=events, remote_timeout=5.0)
