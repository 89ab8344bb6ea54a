"""
app/services/quality_service.py

Per-batch import quality: rolls the auditor's capture rates and the mapping
confidence of a batch into tiers, a grade and an improvement flag.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from app.errors import BatchNotFoundError
from app.repositories.event_log_repository import ProcessingLogRepository
from db.models.lifecycle_event import ProcessingLog, ProcessingStage
from db.repositories.import_batch_repository import ImportBatchRepository

EXCELLENT_THRESHOLD = 0.90
GOOD_THRESHOLD = 0.75
NEEDS_IMPROVEMENT_THRESHOLD = 0.60

GRADE_EXCELLENT = "EXCELLENT"
GRADE_GOOD = "GOOD"
GRADE_NEEDS_IMPROVEMENT = "NEEDS_IMPROVEMENT"
GRADE_POOR = "POOR"
GRADE_NO_DATA = "NO_DATA"

_UNAUDITED = "UNAUDITED"


@dataclass(frozen=True)
class QualityTiers:
    excellent: int = 0
    good: int = 0
    needs_improvement: int = 0
    poor: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "excellent": self.excellent,
            "good": self.good,
            "needs_improvement": self.needs_improvement,
            "poor": self.poor,
        }


@dataclass(frozen=True)
class BatchQualityReport:
    batch_id: str
    total_containers: int
    audited_containers: int
    unaudited_containers: int
    average_capture_rate: float
    average_mapping_confidence: float | None
    tiers: QualityTiers
    grade: str
    recommend_improvement: bool
    unique_unmapped_fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "total_containers": self.total_containers,
            "audited_containers": self.audited_containers,
            "unaudited_containers": self.unaudited_containers,
            "average_capture_rate": self.average_capture_rate,
            "average_mapping_confidence": self.average_mapping_confidence,
            "tiers": self.tiers.to_dict(),
            "grade": self.grade,
            "recommend_improvement": self.recommend_improvement,
            "unique_unmapped_fields": list(self.unique_unmapped_fields),
        }


def grade_for(rate: float) -> str:
    if rate >= EXCELLENT_THRESHOLD:
        return GRADE_EXCELLENT
    if rate >= GOOD_THRESHOLD:
        return GRADE_GOOD
    if rate >= NEEDS_IMPROVEMENT_THRESHOLD:
        return GRADE_NEEDS_IMPROVEMENT
    return GRADE_POOR


def tier_counts(rates: Iterable[float]) -> QualityTiers:
    counts = {GRADE_EXCELLENT: 0, GRADE_GOOD: 0, GRADE_NEEDS_IMPROVEMENT: 0, GRADE_POOR: 0}
    for rate in rates:
        counts[grade_for(rate)] += 1
    return QualityTiers(
        excellent=counts[GRADE_EXCELLENT],
        good=counts[GRADE_GOOD],
        needs_improvement=counts[GRADE_NEEDS_IMPROVEMENT],
        poor=counts[GRADE_POOR],
    )


def _latest_per_container(entries: Iterable[ProcessingLog]) -> list[ProcessingLog]:
    # Reprocessing appends new entries; only the newest per container counts.
    latest: dict[str, ProcessingLog] = {}
    for entry in entries:
        latest[entry.container_number or str(entry.id)] = entry
    return list(latest.values())


def _unmapped_names(output: Mapping[str, Any] | None) -> list[str]:
    names: list[str] = []
    for finding in (output or {}).get("unmapped") or []:
        if not isinstance(finding, Mapping):
            continue
        name = finding.get("raw_field") or finding.get("field")
        if name:
            names.append(str(name))
    return names


def _mean(values: list[float]) -> float | None:
    if not values:
        return None
    return round(sum(values) / len(values), 4)


def summarize_batch_quality(*, db: Session, batch_id: str) -> BatchQualityReport:
    """
    Raises:
        BatchNotFoundError: If the batch does not exist.
    """

    if ImportBatchRepository(db).get_batch(batch_id) is None:
        raise BatchNotFoundError(batch_id)

    logs = ProcessingLogRepository(db)
    audits = _latest_per_container(logs.list_entries(import_batch_id=batch_id, stage=ProcessingStage.AUDITOR))
    persisted = _latest_per_container(
        logs.list_entries(import_batch_id=batch_id, stage=ProcessingStage.PERSISTENCE)
    )

    audited = [entry for entry in audits if entry.status != _UNAUDITED and entry.confidence is not None]
    rates = [float(entry.confidence) for entry in audited]
    unmapped = sorted({name for entry in audited for name in _unmapped_names(entry.output)})
    mapping_confidence = _mean([float(entry.confidence) for entry in persisted if entry.confidence is not None])

    average = _mean(rates)
    return BatchQualityReport(
        batch_id=batch_id,
        total_containers=len(audits),
        audited_containers=len(audited),
        unaudited_containers=len(audits) - len(audited),
        average_capture_rate=average or 0.0,
        average_mapping_confidence=mapping_confidence,
        tiers=tier_counts(rates),
        grade=grade_for(average) if average is not None else GRADE_NO_DATA,
        recommend_improvement=average is not None and average < EXCELLENT_THRESHOLD,
        unique_unmapped_fields=unmapped,
    )
