"""Identity Resolver - canonical storage key for a shipment's children.

Shipments carry a primary identifier (invoice number) and legacy alternates
(AWB, master AWB, house AWB). Children written by older versions live under
the AWB. The resolver tries the primary key first, falls back to the legacy
keys in order, and raises RepairNeeded rather than guessing when both hold
different data.

Usage:
    from identity_resolver import resolve_children

    resolution = await resolve_children(remote_store, "user-1", shipment)
    if resolution.is_legacy:
        print(f"Boxes stored under legacy key {resolution.key}")
"""

from identity_resolver.models import (
    ChildResolution,
    ResolutionMethod,
)
from identity_resolver.resolver import (
    IdentityResolver,
    resolve_children,
    resolve_storage_key,
    find_shipment,
)

__all__ = [
    # Models
    "ChildResolution",
    "ResolutionMethod",
    # Resolver
    "IdentityResolver",
    "resolve_children",
    "resolve_storage_key",
    "find_shipment",
]
