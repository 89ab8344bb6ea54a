"""
app/services/enrichment_service.py

Enricher: derive facts the source never states outright, from the latest
source row of each container and its persisted milestone dates.

Rules:

    1. service type   FCL/LCL from status text, container type or raw service columns
    2. status         the milestone implied by recorded dates, when ahead of the status
    3. destination    cleaned final destination from raw columns when none is mapped

Results live under ``metadata.derived``. Canonical columns are never written.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from sqlalchemy.orm import Session

from app.concurrency import identity_locks
from app.domain.reconciliation import ArchivedRow, ReconciledRecord
from app.domain.stages import OTHER_STAGE, stage_sequence
from app.logging_utils import log_event
from app.mappers.field_transformer import clean_string
from app.repositories.container_repository import ContainerRepository, container_snapshot, identity_lock_key
from app.repositories.event_log_repository import ProcessingLogRepository
from db.models.lifecycle_event import ProcessingStage

logger = logging.getLogger(__name__)

DERIVED_METADATA_KEY = "derived"

CONFIDENCE_HIGH = "HIGH"
CONFIDENCE_MEDIUM = "MED"

METHOD_SERVICE_TYPE = "Regex_ServiceType"
METHOD_DATE_INFERENCE = "Date_Inference"
METHOD_TEXT_CLEANUP = "Text_Cleanup"

SERVICE_TYPE_COLUMNS = (
    "shipping type",
    "container type",
    "service",
    "svc type",
    "load type",
    "ship type",
    "current status",
    "status",
)
DESTINATION_COLUMNS = ("ship to city", "delv place", "final dest", "destination")

_LCL_PATTERN = re.compile(r"\b(?:LCL|LESS)\b")
_FCL_PATTERN = re.compile(
    r"\b(?:FCL|FULL)\b|\bCY\s*/\s*CY\b|\b(?:20|40|45)\s*'?\s*(?:HC|HQ|ST|GP|DV|RF)\b"
)
# A bare size is only meaningful in a container type column.
_CONTAINER_SIZE = re.compile(r"^\s*(?:20|40|45)\s*'?")
_HEADER_NOISE = re.compile(r"[^a-z0-9]+")

# Same precedence as the date overrides, then the voyage dates. First date
# present wins.
_DATE_MILESTONES: tuple[tuple[str, str, str], ...] = (
    ("delivery_date", "DEL", CONFIDENCE_HIGH),
    ("empty_return_date", "RET", CONFIDENCE_HIGH),
    ("gate_out_date", "CGO", CONFIDENCE_HIGH),
    ("ata", "ARR", CONFIDENCE_HIGH),
    ("atd", "DEP", CONFIDENCE_HIGH),
    ("etd", "BOOK", CONFIDENCE_MEDIUM),
)


@dataclass(frozen=True)
class DerivedField:
    value: Any
    confidence: str
    source: str
    rationale: str
    method: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "source": self.source,
            "rationale": self.rationale,
            "method": self.method,
        }


@dataclass
class EnrichmentSummary:
    enriched: int = 0
    status_inferences: int = 0
    errors: list[str] = field(default_factory=list)


def _normalize_header(header: str) -> str:
    return " ".join(_HEADER_NOISE.sub(" ", str(header).lower()).split())


def _raw_candidates(raw_values: Mapping[str, Any], columns: Sequence[str]) -> list[tuple[str, str]]:
    """
    Raw (header, text) pairs whose header contains one of ``columns``, in
    the order the columns are listed.
    """

    normalized = [(header, _normalize_header(header)) for header in raw_values]
    found: list[tuple[str, str]] = []
    seen: set[str] = set()
    for column in columns:
        for header, key in normalized:
            if header in seen or column not in key:
                continue
            text = clean_string(raw_values.get(header))
            if text is not None:
                found.append((header, text))
                seen.add(header)
    return found


def classify_service_type(text: str | None, *, container_type_column: bool = False) -> str | None:
    if not text:
        return None
    upper = text.upper()
    if _LCL_PATTERN.search(upper):
        return "LCL"
    if _FCL_PATTERN.search(upper):
        return "FCL"
    if container_type_column and _CONTAINER_SIZE.match(upper):
        return "FCL"
    return None


def infer_service_type(snapshot: Mapping[str, Any], raw_values: Mapping[str, Any]) -> DerivedField | None:
    candidates: list[tuple[str, str, bool]] = []
    if snapshot.get("status_text"):
        candidates.append(("status_text", str(snapshot["status_text"]), False))
    if snapshot.get("container_type"):
        candidates.append(("container_type", str(snapshot["container_type"]), True))
    for header, text in _raw_candidates(raw_values, SERVICE_TYPE_COLUMNS):
        candidates.append((header, text, "container type" in _normalize_header(header)))

    for source, text, is_type_column in candidates:
        service_type = classify_service_type(text, container_type_column=is_type_column)
        if service_type is not None:
            return DerivedField(
                value=service_type,
                confidence=CONFIDENCE_HIGH,
                source=source,
                rationale=f"'{text}' indicates {service_type}",
                method=METHOD_SERVICE_TYPE,
            )
    return None


def infer_status(snapshot: Mapping[str, Any]) -> DerivedField | None:
    """
    Milestone implied by the recorded dates, only when it is further along
    than the current status.
    """

    current = snapshot.get("current_status")
    current_sequence = None if current == OTHER_STAGE else stage_sequence(current)
    for date_field, stage, confidence in _DATE_MILESTONES:
        if snapshot.get(date_field) is None:
            continue
        if current_sequence is not None and stage_sequence(stage) <= current_sequence:
            return None
        return DerivedField(
            value=stage,
            confidence=confidence,
            source=date_field,
            rationale=f"{date_field} is set while status is {current or 'empty'}",
            method=METHOD_DATE_INFERENCE,
        )
    return None


def clean_destination(snapshot: Mapping[str, Any], raw_values: Mapping[str, Any]) -> DerivedField | None:
    if snapshot.get("final_destination"):
        return None
    for header, text in _raw_candidates(raw_values, DESTINATION_COLUMNS):
        cleaned = " ".join(text.split()).title()
        return DerivedField(
            value=cleaned,
            confidence=CONFIDENCE_MEDIUM,
            source=header,
            rationale=f"normalized from '{text}'",
            method=METHOD_TEXT_CLEANUP,
        )
    return None


def derive_fields(snapshot: Mapping[str, Any], raw_values: Mapping[str, Any]) -> dict[str, DerivedField]:
    derived: dict[str, DerivedField] = {}
    service_type = infer_service_type(snapshot, raw_values)
    if service_type is not None:
        derived["service_type"] = service_type
    status = infer_status(snapshot)
    if status is not None:
        derived["current_status"] = status
    destination = clean_destination(snapshot, raw_values)
    if destination is not None:
        derived["final_destination"] = destination
    return derived


class EnrichmentService:
    def enrich_records(
        self,
        *,
        db: Session,
        batch_id: str,
        records: Sequence[ReconciledRecord],
        rows: Sequence[ArchivedRow],
        now: datetime | None = None,
    ) -> EnrichmentSummary:
        """
        Enrich the last reconciled row of each container in the batch.
        """

        now = now or datetime.now(timezone.utc)
        latest: dict[str, ReconciledRecord] = {}
        for record in records:
            latest[record.container_number] = record
        rows_by_index = {row.row_index: row for row in rows}

        summary = EnrichmentSummary()
        for container_number, record in latest.items():
            row = rows_by_index.get(record.row_index)
            raw_values = dict(row.values) if row is not None else {}
            try:
                with db.begin_nested():
                    derived = self._enrich_one(
                        db=db,
                        batch_id=batch_id,
                        container_number=container_number,
                        raw_values=raw_values,
                        now=now,
                    )
            except Exception as exc:  # noqa: BLE001
                summary.errors.append(f"{container_number}: {type(exc).__name__}: {exc}")
                logger.warning("Failed to enrich %s: %s", container_number, exc)
                continue
            if not derived:
                continue
            summary.enriched += 1
            if "current_status" in derived:
                summary.status_inferences += 1

        db.commit()
        log_event(
            logger,
            logging.INFO,
            "batch_enriched",
            batch_id=batch_id,
            enriched=summary.enriched,
            status_inferences=summary.status_inferences,
            errors=len(summary.errors),
        )
        return summary

    def _enrich_one(
        self,
        *,
        db: Session,
        batch_id: str,
        container_number: str,
        raw_values: Mapping[str, Any],
        now: datetime,
    ) -> dict[str, DerivedField] | None:
        repository = ContainerRepository(db)
        with identity_locks.hold(identity_lock_key("container", container_number)):
            container = repository.get_by_number(container_number, for_update=True)
            if container is None:
                return None
            derived = derive_fields(container_snapshot(container), raw_values)
            status = derived.get("current_status")
            payload = {
                "last_run": now.isoformat(),
                "fields": {name: item.to_dict() for name, item in derived.items()},
                "status_inference": status.value if status is not None else None,
            }
            repository.set_metadata(container, DERIVED_METADATA_KEY, payload)
            ProcessingLogRepository(db).append(
                stage=ProcessingStage.ENRICHER,
                status="ENRICHED" if derived else "NO_CHANGE",
                import_batch_id=batch_id,
                container_number=container_number,
                output=payload,
            )
            db.flush()
        return derived


@lru_cache(maxsize=1)
def get_enrichment_service() -> EnrichmentService:
    return EnrichmentService()
