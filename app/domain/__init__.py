"""
app/domain package marker.
"""

from app.domain.reconciliation import (
    ArchivedRow,
    BatchSummary,
    DroppedRow,
    EmittedEvent,
    HeaderMapping,
    MappingReport,
    ReconciledRecord,
    ReconcileResult,
    RowFailure,
    UnmappedFieldInsight,
)
from app.domain.stages import STAGE_CODES, STAGES, TERMINAL_STAGES, TransitStage, stage_sequence

__all__ = [
    "ArchivedRow",
    "BatchSummary",
    "DroppedRow",
    "EmittedEvent",
    "HeaderMapping",
    "MappingReport",
    "ReconcileResult",
    "ReconciledRecord",
    "RowFailure",
    "STAGES",
    "STAGE_CODES",
    "TERMINAL_STAGES",
    "TransitStage",
    "UnmappedFieldInsight",
    "stage_sequence",
]
