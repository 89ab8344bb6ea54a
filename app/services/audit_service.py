"""
app/services/audit_service.py

Auditor: compare each persisted container with the source row it came from,
then apply the oracle's corrections when it recommends AUTO_CORRECT.

Corrections are partitioned. Canonical schema fields are written through the
lock filter; anything outside the schema is kept verbatim in the metadata
envelope. Oracle calls fan out over a thread pool; all writes are applied
sequentially on the caller's session.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.concurrency import CancellationToken, identity_locks
from app.config import ReconciliationSettings, get_reconciliation_settings
from app.dictionary.canonical_dictionary import IDENTITY_FIELD, CanonicalDictionary
from app.domain.reconciliation import ArchivedRow, HeaderMapping, ReconciledRecord
from app.errors import BatchCancelledError
from app.logging_utils import log_event
from app.mappers.field_transformer import FieldTransformer
from app.mappers.lifecycle import apply_date_overrides
from app.repositories.container_repository import (
    ContainerRepository,
    FieldWrite,
    container_snapshot,
    identity_lock_key,
)
from app.repositories.event_log_repository import ActivityLogRepository, ProcessingLogRepository
from db.models.container import CONTAINER_DATA_FIELDS, Container
from db.models.lifecycle_event import ActivityAction, ProcessingStage
from oracle.client import ClassificationOracle, build_oracle
from oracle.errors import OracleError
from oracle.schema import AuditResponse

logger = logging.getLogger(__name__)

AUDIT_ACTOR = "auditor"

RESULT_PASS = "PASS"
RESULT_FAIL = "FAIL"
RESULT_CORRECTED = "CORRECTED"
RESULT_UNAUDITED = "UNAUDITED"

# Fields an audit correction may write directly. Identity never changes.
CORRECTABLE_FIELDS = frozenset(CONTAINER_DATA_FIELDS) - {"current_status", "status_text"}
_STAGE_DATE_FIELDS = ("delivery_date", "empty_return_date", "gate_out_date")


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


def partition_corrections(fields_to_update: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Split oracle corrections into (schema fields, everything else).
    """

    schema: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for name, value in fields_to_update.items():
        if name in CORRECTABLE_FIELDS:
            schema[name] = value
        elif name != IDENTITY_FIELD:
            extra[name] = value
    return schema, extra


@dataclass(frozen=True)
class AuditTarget:
    """
    Everything the oracle needs for one container, captured before fan-out.
    """

    container_number: str
    raw_row: dict[str, Any]
    persisted: dict[str, Any]
    raw_row_id: str | None = None


@dataclass(frozen=True)
class AuditOutcome:
    container_number: str
    result: str
    response: AuditResponse | None = None
    error: str | None = None

    @property
    def audited(self) -> bool:
        return self.response is not None


@dataclass(frozen=True)
class CorrectionResult:
    corrected_fields: tuple[str, ...] = ()
    skipped_locked_fields: tuple[str, ...] = ()
    metadata_fields: tuple[str, ...] = ()
    applied: bool = False


@dataclass
class AuditSummary:
    audited: int = 0
    passed: int = 0
    failed: int = 0
    corrected: int = 0
    unaudited: int = 0
    errors: list[str] = field(default_factory=list)


class AuditService:
    def __init__(
        self,
        *,
        oracle: ClassificationOracle | None = None,
        settings: ReconciliationSettings | None = None,
    ) -> None:
        self._oracle = oracle or build_oracle()
        self._settings = settings or get_reconciliation_settings()

    def audit(
        self,
        target: AuditTarget,
        *,
        mapping: HeaderMapping,
        dictionary: CanonicalDictionary,
    ) -> AuditOutcome:
        """
        One oracle call. Oracle failures become an UNAUDITED outcome.
        """

        try:
            response = self._oracle.audit_record(target.raw_row, mapping, target.persisted, dictionary)
        except OracleError as exc:
            logger.warning("Audit oracle failed for %s; leaving unaudited: %s", target.container_number, exc)
            return AuditOutcome(
                container_number=target.container_number,
                result=RESULT_UNAUDITED,
                error=f"{type(exc).__name__}: {exc}",
            )
        return AuditOutcome(container_number=target.container_number, result=response.result, response=response)

    def apply_corrections(
        self,
        *,
        db: Session,
        container: Container,
        response: AuditResponse,
        dictionary: CanonicalDictionary,
        import_batch_id: str | None = None,
    ) -> CorrectionResult:
        """
        Route every surfaced fact. Schema fields are written only when the
        oracle recommends AUTO_CORRECT; non-schema facts always land in metadata.
        """

        schema_fields, extra_fields = partition_corrections(response.recommended_corrections.fields_to_update)
        repository = ContainerRepository(db)

        facts: dict[str, Any] = {}
        facts.update(extra_fields)
        facts.update(response.recommended_corrections.metadata_to_add)
        unmapped_facts = {
            finding.raw_field: finding.raw_value
            for finding in response.unmapped
            if finding.raw_field and finding.raw_value is not None
        }
        metadata_fields: list[str] = []
        if facts:
            repository.merge_metadata(container, {"audit_additions": _json_safe(facts)})
            metadata_fields.extend(facts)
        if unmapped_facts:
            repository.merge_metadata(container, {"unmapped_source_fields": _json_safe(unmapped_facts)})
            metadata_fields.extend(unmapped_facts)

        if response.recommendation != "AUTO_CORRECT" or not schema_fields:
            return CorrectionResult(metadata_fields=tuple(metadata_fields))

        transformer = FieldTransformer(dictionary)
        typed: dict[str, Any] = {}
        for name, value in schema_fields.items():
            converted = transformer.transform_field(name, value) if dictionary.get(name) else value
            if converted is not None:
                typed[name] = converted

        before = {name: getattr(container, name) for name in typed}
        before["current_status"] = container.current_status
        write = repository.write_fields(container, typed)
        if any(name in write.written_fields for name in _STAGE_DATE_FIELDS):
            stage = apply_date_overrides(
                container.current_status,
                delivery_date=container.delivery_date,
                empty_return_date=container.empty_return_date,
                gate_out_date=container.gate_out_date,
            )
            stage_write = repository.write_fields(container, {"current_status": stage})
            if stage_write.written_fields or stage_write.skipped_locked_fields:
                write = FieldWrite(
                    written_fields=write.written_fields + stage_write.written_fields,
                    skipped_locked_fields=write.skipped_locked_fields + stage_write.skipped_locked_fields,
                )

        if write.written_fields:
            ActivityLogRepository(db).append(
                container_id=container.id,
                action=ActivityAction.AUTO_CORRECT,
                actor=AUDIT_ACTOR,
                details={
                    "import_batch_id": import_batch_id,
                    "changes": {
                        name: {
                            "before": _json_safe(before.get(name)),
                            "after": _json_safe(getattr(container, name)),
                        }
                        for name in write.written_fields
                    },
                },
            )
            repository.merge_metadata(container, {"audit_corrections": True})

        return CorrectionResult(
            corrected_fields=write.written_fields,
            skipped_locked_fields=write.skipped_locked_fields,
            metadata_fields=tuple(metadata_fields),
            applied=bool(write.written_fields),
        )

    def audit_records(
        self,
        *,
        db: Session,
        batch_id: str,
        records: Sequence[ReconciledRecord],
        rows: Sequence[ArchivedRow],
        mapping: HeaderMapping,
        dictionary: CanonicalDictionary,
        cancellation: CancellationToken | None = None,
        now: datetime | None = None,
    ) -> AuditSummary:
        """
        Audit the last reconciled row of each container in the batch.
        Earlier rows for the same identity were superseded by it.
        """

        now = now or datetime.now(timezone.utc)
        latest: dict[str, ReconciledRecord] = {}
        for record in records:
            latest[record.container_number] = record
        rows_by_index = {row.row_index: row for row in rows}

        repository = ContainerRepository(db)
        targets: list[AuditTarget] = []
        for container_number, record in latest.items():
            container = repository.get_by_number(container_number)
            row = rows_by_index.get(record.row_index)
            if container is None or row is None:
                continue
            targets.append(
                AuditTarget(
                    container_number=container_number,
                    raw_row=dict(row.values),
                    persisted=container_snapshot(container),
                    raw_row_id=str(row.raw_row_id) if row.raw_row_id is not None else None,
                )
            )

        workers = max(1, min(self._settings.audit_workers, len(targets) or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="audit") as pool:
            outcomes = list(
                pool.map(lambda target: self.audit(target, mapping=mapping, dictionary=dictionary), targets)
            )

        summary = AuditSummary()
        for index, outcome in enumerate(outcomes):
            if cancellation is not None and cancellation.cancelled:
                db.commit()
                raise BatchCancelledError(batch_id, index)
            try:
                with db.begin_nested():
                    result = self._record_outcome(
                        db=db,
                        batch_id=batch_id,
                        outcome=outcome,
                        dictionary=dictionary,
                        now=now,
                    )
            except (SQLAlchemyError, ValueError) as exc:
                summary.errors.append(f"{outcome.container_number}: {type(exc).__name__}: {exc}")
                logger.warning("Failed to record audit for %s: %s", outcome.container_number, exc)
                continue

            if result == RESULT_UNAUDITED:
                summary.unaudited += 1
                continue
            summary.audited += 1
            if result == RESULT_PASS:
                summary.passed += 1
            else:
                summary.failed += 1
            if result == RESULT_CORRECTED:
                summary.corrected += 1

        db.commit()
        log_event(
            logger,
            logging.INFO,
            "batch_audited",
            batch_id=batch_id,
            audited=summary.audited,
            passed=summary.passed,
            failed=summary.failed,
            corrected=summary.corrected,
            unaudited=summary.unaudited,
        )
        return summary

    def _record_outcome(
        self,
        *,
        db: Session,
        batch_id: str,
        outcome: AuditOutcome,
        dictionary: CanonicalDictionary,
        now: datetime,
    ) -> str:
        repository = ContainerRepository(db)
        with identity_locks.hold(identity_lock_key("container", outcome.container_number)):
            container = repository.get_by_number(outcome.container_number, for_update=True)
            if container is None:
                raise ValueError(f"container vanished before audit write: {outcome.container_number}")

            response = outcome.response
            if response is None:
                last_audit = {
                    "audited_at": now.isoformat(),
                    "result": RESULT_UNAUDITED,
                    "error": outcome.error,
                }
                repository.set_metadata(container, "last_audit", last_audit)
                ProcessingLogRepository(db).append(
                    stage=ProcessingStage.AUDITOR,
                    status=RESULT_UNAUDITED,
                    import_batch_id=batch_id,
                    container_number=outcome.container_number,
                    output={"error": outcome.error},
                    dictionary_version=dictionary.version,
                )
                db.flush()
                return RESULT_UNAUDITED

            correction = self.apply_corrections(
                db=db,
                container=container,
                response=response,
                dictionary=dictionary,
                import_batch_id=batch_id,
            )
            result = RESULT_CORRECTED if correction.applied else response.result
            last_audit = {
                "audited_at": now.isoformat(),
                "result": result,
                "capture_rate": response.capture_rate,
                "recommendation": response.recommendation,
                "corrected_fields": list(correction.corrected_fields),
                "lost_fields": [finding.name for finding in response.lost if finding.name],
                "wrong_fields": [finding.name for finding in response.wrong if finding.name],
                "unmapped_fields": [finding.name for finding in response.unmapped if finding.name],
                "skipped_locked_fields": list(correction.skipped_locked_fields),
            }
            repository.set_metadata(container, "last_audit", last_audit)
            ProcessingLogRepository(db).append(
                stage=ProcessingStage.AUDITOR,
                status=result,
                import_batch_id=batch_id,
                container_number=outcome.container_number,
                confidence=response.capture_rate,
                output=response.model_dump(mode="json"),
                dictionary_version=dictionary.version,
            )
            db.flush()
        return result


@lru_cache(maxsize=1)
def get_audit_service() -> AuditService:
    return AuditService()
