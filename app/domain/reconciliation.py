"""
app/domain/reconciliation.py

Value types produced by archiving and reconciling one import batch.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class ArchivedRow:
    """
    One source row as handed to the reconciliation engine.
    """

    row_index: int
    values: dict[str, Any]
    raw_row_id: uuid.UUID | None = None


@dataclass(frozen=True)
class UnmappedFieldInsight:
    header: str
    suggested_field: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class HeaderMapping:
    """
    Resolved header-to-canonical-field mapping for one header list.
    """

    canonical_to_source: dict[str, str]
    source_headers: tuple[str, ...]
    field_confidence: dict[str, float]
    confidence: float
    strategy: str
    dictionary_version: str
    unmapped_headers: tuple[str, ...] = ()
    insights: tuple[UnmappedFieldInsight, ...] = ()
    flags: tuple[str, ...] = ()

    @property
    def source_to_canonical(self) -> dict[str, str]:
        return {source: canonical for canonical, source in self.canonical_to_source.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "canonical_to_source": dict(self.canonical_to_source),
            "field_confidence": dict(self.field_confidence),
            "confidence": self.confidence,
            "strategy": self.strategy,
            "dictionary_version": self.dictionary_version,
            "unmapped_headers": list(self.unmapped_headers),
            "insights": [
                {
                    "header": insight.header,
                    "suggested_field": insight.suggested_field,
                    "reason": insight.reason,
                }
                for insight in self.insights
            ],
            "flags": list(self.flags),
        }


@dataclass(frozen=True)
class RowFailure:
    row_index: int
    error: str
    raw_row_id: uuid.UUID | None = None


@dataclass(frozen=True)
class DroppedRow:
    """
    A row with no resolvable identity key. Kept for gap analysis.
    """

    row_index: int
    reason: str
    values: dict[str, Any]
    raw_row_id: uuid.UUID | None = None


@dataclass(frozen=True)
class ReconciledRecord:
    """
    Outcome of upserting one row into its canonical container.
    """

    container_id: uuid.UUID
    container_number: str
    row_index: int
    raw_row_id: uuid.UUID | None
    stage: str | None
    values: dict[str, Any]
    written_fields: tuple[str, ...]
    skipped_locked_fields: tuple[str, ...]
    mapping_confidence: float
    shipment_reference: str | None = None
    created: bool = False


@dataclass(frozen=True)
class EmittedEvent:
    container_number: str
    stage: str
    event_time: datetime
    location: str | None
    source: str


@dataclass
class MappingReport:
    """
    Batch-level account of how rows were mapped, dropped, or failed.
    """

    mapping: HeaderMapping
    total_rows: int = 0
    reconciled_rows: int = 0
    chunks: int = 0
    dropped_rows: list[DroppedRow] = field(default_factory=list)
    failures: list[RowFailure] = field(default_factory=list)

    @property
    def unmapped_row_count(self) -> int:
        return len(self.dropped_rows)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mapping": self.mapping.to_dict(),
            "total_rows": self.total_rows,
            "reconciled_rows": self.reconciled_rows,
            "unmapped_rows": self.unmapped_row_count,
            "failed_rows": len(self.failures),
            "chunks": self.chunks,
            "dropped_rows": [
                {"row_index": row.row_index, "reason": row.reason} for row in self.dropped_rows
            ],
            "failures": [
                {"row_index": failure.row_index, "error": failure.error} for failure in self.failures
            ],
        }


@dataclass(frozen=True)
class ReconcileResult:
    records: list[ReconciledRecord]
    events: list[EmittedEvent]
    mapping_report: MappingReport


@dataclass
class BatchSummary:
    """
    End-of-run summary surfaced on the import batch.
    """

    batch_id: str
    status: str
    rows_total: int = 0
    rows_processed: int = 0
    rows_succeeded: int = 0
    rows_failed: int = 0
    unmapped_rows: int = 0
    audited: int = 0
    corrected: int = 0
    unaudited: int = 0
    enriched: int = 0
    exceptions_flagged: int = 0
    exceptions_cleared: int = 0
    failures: list[RowFailure] = field(default_factory=list)
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "rows_total": self.rows_total,
            "rows_processed": self.rows_processed,
            "rows_succeeded": self.rows_succeeded,
            "rows_failed": self.rows_failed,
            "unmapped_rows": self.unmapped_rows,
            "audited": self.audited,
            "corrected": self.corrected,
            "unaudited": self.unaudited,
            "enriched": self.enriched,
            "exceptions_flagged": self.exceptions_flagged,
            "exceptions_cleared": self.exceptions_cleared,
            "failures": [
                {"row_index": failure.row_index, "error": failure.error} for failure in self.failures
            ],
            "error_message": self.error_message,
        }
