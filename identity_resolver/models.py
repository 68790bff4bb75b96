"""Identity Resolver Data Models.

This module defines the Pydantic models for shipment identity resolution:
- ResolutionMethod: Which identifier the children were found under
- ChildResolution: The result of resolving a shipment's children
"""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field

from core.models.records import Box


class ResolutionMethod(str, Enum):
    """How the storage key was chosen."""
    PRIMARY = "primary"  # Children found under the invoice number
    LEGACY = "legacy"    # Children found under an alternate identifier (AWB)
    EMPTY = "empty"      # No children anywhere; primary key is used


class ChildResolution(BaseModel):
    """The boxes of a shipment and the key they live under.

    Attributes:
        key: Shipment key the boxes are stored under
        boxes: Boxes found under ``key``
        method: Whether ``key`` is the primary or a legacy identifier
        tried_keys: Keys queried, in order
    """
    key: str = Field(..., description="Canonical storage key for the children")
    boxes: List[Box] = Field(default_factory=list)
    method: ResolutionMethod = ResolutionMethod.EMPTY
    tried_keys: List[str] = Field(default_factory=list)

    @property
    def is_legacy(self) -> bool:
        return self.method == ResolutionMethod.LEGACY

    @property
    def box_ids(self) -> List[str]:
        return sorted(b.id for b in self.boxes)
