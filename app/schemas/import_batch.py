"""
Schemas for import batch trigger, status and control endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ImportBatchAcceptedResponse(BaseModel):
    batch_id: str
    source_name: str
    status: str
    row_count: int
    created_at: datetime


class ImportBatchStatusResponse(BaseModel):
    batch_id: str
    source_name: str
    status: str
    row_count: int = 0
    rows_processed: int = 0
    rows_succeeded: int = 0
    rows_failed: int = 0
    rows_unmapped: int = 0
    dictionary_version: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    analysis_payload: dict[str, Any] | None = None
    error_message: str | None = None


class ImportBatchListResponse(BaseModel):
    batches: list[ImportBatchStatusResponse] = Field(default_factory=list)


class ImportBatchCancelResponse(BaseModel):
    batch_id: str
    cancellation_requested: bool


class QualityTiersResponse(BaseModel):
    excellent: int = 0
    good: int = 0
    needs_improvement: int = 0
    poor: int = 0


class ImportBatchQualityResponse(BaseModel):
    batch_id: str
    total_containers: int = 0
    audited_containers: int = 0
    unaudited_containers: int = 0
    average_capture_rate: float = 0.0
    average_mapping_confidence: float | None = None
    tiers: QualityTiersResponse = Field(default_factory=QualityTiersResponse)
    grade: str
    recommend_improvement: bool = False
    unique_unmapped_fields: list[str] = Field(default_factory=list)
