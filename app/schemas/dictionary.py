"""
Schema for the canonical dictionary read endpoint.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class DictionaryFieldResponse(BaseModel):
    name: str
    required: bool
    field_type: str
    target: str
    synonyms: list[str] = Field(default_factory=list)
    confidence_threshold: float


class DictionaryResponse(BaseModel):
    version: str
    last_updated: str | None = None
    fields: list[DictionaryFieldResponse] = Field(default_factory=list)
    pending_fields: list[dict[str, Any]] = Field(default_factory=list)
    business_units: dict[str, list[str]] = Field(default_factory=dict)
