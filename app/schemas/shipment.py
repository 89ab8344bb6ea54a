"""
Schemas for shipment read, manual edit and unlock endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ShipmentResponse(BaseModel):
    shipment_reference: str
    fields: dict[str, Any] = Field(default_factory=dict)
    locked_fields: list[str] = Field(default_factory=list)
    container_numbers: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
