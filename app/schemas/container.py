"""
Schemas for container read, manual edit and unlock endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class LifecycleEventResponse(BaseModel):
    stage_code: str
    event_time: datetime
    location: str | None = None
    source: str
    import_batch_id: str | None = None


class ContainerResponse(BaseModel):
    container_number: str
    fields: dict[str, Any] = Field(default_factory=dict)
    locked_fields: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    shipment_references: list[str] = Field(default_factory=list)
    events: list[LifecycleEventResponse] = Field(default_factory=list)
    last_import_batch_id: str | None = None
    created_at: datetime
    updated_at: datetime


class ContainerListResponse(BaseModel):
    containers: list[ContainerResponse] = Field(default_factory=list)


class ManualEditRequest(BaseModel):
    changes: dict[str, Any] = Field(min_length=1)
    actor: str = Field(min_length=1, max_length=128)

    @field_validator("actor")
    @classmethod
    def _strip_actor(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("actor must not be blank")
        return stripped
