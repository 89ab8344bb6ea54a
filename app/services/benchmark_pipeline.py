"""
app/services/benchmark_pipeline.py

One improvement-loop iteration over the benchmark corpus: archive, reconcile
and audit every source with the given dictionary, then score the outcome
and mine unmapped header statistics.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.config import ReconciliationSettings, get_reconciliation_settings
from app.connectors.base import RowSource
from app.dictionary.canonical_dictionary import CanonicalDictionary
from app.domain.reconciliation import ArchivedRow, DroppedRow, HeaderMapping, ReconciledRecord, RowFailure
from app.services.archive_service import ArchiveService
from app.services.audit_service import AuditService, AuditSummary
from app.services.reconciliation_service import ReconciliationService
from oracle.client import ClassificationOracle

logger = logging.getLogger(__name__)

# Score weights, fixed.
COVERAGE_WEIGHT = 0.5
REQUIRED_FILL_WEIGHT = 0.3
OPTIONAL_FILL_WEIGHT = 0.1
CONFIDENCE_WEIGHT = 0.1

MAX_SAMPLE_VALUES = 5


@dataclass
class SourceOutcome:
    source_name: str
    batch_id: str
    mapping: HeaderMapping
    rows: list[ArchivedRow]
    records: list[ReconciledRecord]
    dropped_rows: list[DroppedRow] = field(default_factory=list)
    failures: list[RowFailure] = field(default_factory=list)
    audit: AuditSummary = field(default_factory=AuditSummary)


@dataclass
class IterationOutcome:
    sources: list[SourceOutcome] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(len(source.rows) for source in self.sources)


@dataclass(frozen=True)
class IterationScores:
    coverage: float
    required_fill_rate: float
    optional_fill_rate: float
    mean_confidence: float
    score: float
    total_rows: int = 0
    valid_records: int = 0
    dropped_rows: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "coverage": self.coverage,
            "required_fill_rate": self.required_fill_rate,
            "optional_fill_rate": self.optional_fill_rate,
            "mean_confidence": self.mean_confidence,
            "score": self.score,
            "total_rows": self.total_rows,
            "valid_records": self.valid_records,
            "dropped_rows": self.dropped_rows,
        }


def weighted_score(
    *,
    coverage: float,
    required_fill_rate: float,
    optional_fill_rate: float,
    mean_confidence: float,
) -> float:
    return round(
        COVERAGE_WEIGHT * coverage
        + REQUIRED_FILL_WEIGHT * required_fill_rate
        + OPTIONAL_FILL_WEIGHT * optional_fill_rate
        + CONFIDENCE_WEIGHT * mean_confidence,
        4,
    )


def _fill_rate(records: Sequence[ReconciledRecord], fields: Sequence[str]) -> float:
    if not records or not fields:
        return 0.0
    filled = sum(1 for record in records for name in fields if record.values.get(name) is not None)
    return round(filled / (len(records) * len(fields)), 4)


def score_iteration(outcome: IterationOutcome, dictionary: CanonicalDictionary) -> IterationScores:
    """
    Dropped and failed rows count toward the total with zero confidence.
    """

    records = [record for source in outcome.sources for record in source.records]
    total = outcome.total_rows
    dropped = sum(len(source.dropped_rows) for source in outcome.sources)
    coverage = round(len(records) / total, 4) if total else 0.0
    required = _fill_rate(records, dictionary.required_fields)
    optional = _fill_rate(records, dictionary.optional_fields)
    confidence = round(sum(record.mapping_confidence for record in records) / total, 4) if total else 0.0
    return IterationScores(
        coverage=coverage,
        required_fill_rate=required,
        optional_fill_rate=optional,
        mean_confidence=confidence,
        score=weighted_score(
            coverage=coverage,
            required_fill_rate=required,
            optional_fill_rate=optional,
            mean_confidence=confidence,
        ),
        total_rows=total,
        valid_records=len(records),
        dropped_rows=dropped,
    )


def _present(value: Any) -> bool:
    if value is None:
        return False
    return bool(str(value).strip())


def collect_unmapped_stats(outcome: IterationOutcome) -> list[dict[str, Any]]:
    """
    header -> up to five distinct sample values and a frequency, most
    frequent first. Dropped rows contribute every non-empty header.
    """

    stats: dict[str, dict[str, Any]] = {}

    def observe(header: str, value: Any) -> None:
        entry = stats.setdefault(header, {"header": header, "samples": [], "frequency": 0})
        entry["frequency"] += 1
        sample = str(value).strip()
        if sample not in entry["samples"] and len(entry["samples"]) < MAX_SAMPLE_VALUES:
            entry["samples"].append(sample)

    for source in outcome.sources:
        rows_by_index = {row.row_index: row for row in source.rows}
        for record in source.records:
            row = rows_by_index.get(record.row_index)
            if row is None:
                continue
            for header in source.mapping.unmapped_headers:
                if _present(row.values.get(header)):
                    observe(header, row.values[header])
        for dropped in source.dropped_rows:
            for header, value in dropped.values.items():
                if _present(value):
                    observe(header, value)

    return sorted(stats.values(), key=lambda item: (-item["frequency"], item["header"]))


class BenchmarkPipeline:
    """
    Runs Archive -> Reconcile -> Audit over benchmark sources on its own
    sessions. Sources are processed one after another.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        oracle: ClassificationOracle,
        settings: ReconciliationSettings | None = None,
        row_limit: int = 0,
        run_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_reconciliation_settings()
        self._archive = ArchiveService()
        self._reconciler = ReconciliationService(oracle=oracle, settings=self._settings)
        self._auditor = AuditService(oracle=oracle, settings=self._settings)
        self._row_limit = row_limit
        self._run_id = run_id or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")

    def run_iteration(
        self,
        *,
        sources: Sequence[RowSource],
        dictionary: CanonicalDictionary,
        iteration: int,
    ) -> IterationOutcome:
        outcome = IterationOutcome()
        for source in sources:
            row_batch = source.read(row_limit=self._row_limit)
            batch_id = f"bench-{self._run_id}-{iteration:03d}-{row_batch.source_name}"[:255]
            with self._session_factory() as db:
                archived = self._archive.archive(db=db, batch_id=batch_id, row_batch=row_batch)
                db.commit()
                result = self._reconciler.reconcile(
                    db=db,
                    batch_id=batch_id,
                    headers=archived.headers,
                    rows=archived.rows,
                    dictionary=dictionary,
                )
                audit = AuditSummary()
                if self._settings.audit_enabled and result.records:
                    audit = self._auditor.audit_records(
                        db=db,
                        batch_id=batch_id,
                        records=result.records,
                        rows=archived.rows,
                        mapping=result.mapping_report.mapping,
                        dictionary=dictionary,
                    )
            outcome.sources.append(
                SourceOutcome(
                    source_name=row_batch.source_name,
                    batch_id=batch_id,
                    mapping=result.mapping_report.mapping,
                    rows=archived.rows,
                    records=result.records,
                    dropped_rows=list(result.mapping_report.dropped_rows),
                    failures=list(result.mapping_report.failures),
                    audit=audit,
                )
            )
            logger.info(
                "Benchmark iteration %d source %s: %d/%d rows reconciled",
                iteration,
                row_batch.source_name,
                len(result.records),
                len(archived.rows),
            )
        return outcome
