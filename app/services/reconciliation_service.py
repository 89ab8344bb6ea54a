"""
app/services/reconciliation_service.py

Reconciliation engine: mapping -> transform -> lock-aware upsert -> link ->
lifecycle event, for every archived row of a batch.

Rows run in fixed-size chunks. Each row is written inside its own savepoint
and each chunk is committed, so a failing row or a cancellation never leaves
a partial multi-field write behind.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from sqlalchemy.orm import Session

from app.concurrency import CancellationToken
from app.config import ReconciliationSettings, get_reconciliation_settings
from app.dictionary.canonical_dictionary import IDENTITY_FIELD, CanonicalDictionary
from app.domain.reconciliation import (
    ArchivedRow,
    DroppedRow,
    EmittedEvent,
    HeaderMapping,
    MappingReport,
    ReconciledRecord,
    ReconcileResult,
    RowFailure,
)
from app.errors import BatchCancelledError
from app.logging_utils import log_event
from app.mappers.field_transformer import FieldTransformer
from app.mappers.header_mapper import HeaderMapper
from app.mappers.identity import is_valid_identity_key, normalize_identity_key
from app.mappers.lifecycle import apply_date_overrides, assess_health
from app.mappers.status_normalizer import StatusNormalizer
from app.repositories.container_repository import ContainerRepository
from app.repositories.event_log_repository import LifecycleEventRepository, ProcessingLogRepository
from app.repositories.raw_archive_repository import RawArchiveRepository
from app.repositories.shipment_repository import ShipmentRepository
from db.models.container import CONTAINER_DATA_FIELDS, Container
from db.models.lifecycle_event import ProcessingStage
from db.repositories.import_batch_repository import ImportBatchRepository
from oracle.client import ClassificationOracle, build_oracle

logger = logging.getLogger(__name__)

EVENT_SOURCE_IMPORT = "IMPORT"

# Shipment references are tried in this order.
_SHIPMENT_REFERENCE_FIELDS = ("shipment_reference", "booking_reference")

# Which date best timestamps each stage's lifecycle event.
_STAGE_EVENT_DATES: dict[str, tuple[str, ...]] = {
    "DEL": ("delivery_date",),
    "RET": ("empty_return_date",),
    "CGO": ("gate_out_date",),
    "ARR": ("ata",),
    "DIS": ("ata",),
    "DEP": ("atd",),
    "LOA": ("atd",),
}


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def derive_business_unit(consignee: str | None, dictionary: CanonicalDictionary) -> str | None:
    """
    Match consignee text against the dictionary's business unit keywords.
    """

    if not consignee:
        return None
    lowered = consignee.lower()
    for unit, keywords in dictionary.business_units:
        for keyword in (unit, *keywords):
            if keyword and keyword.lower() in lowered:
                return unit
    return None


def stage_event_time(stage: str, values: Mapping[str, Any], now: datetime) -> datetime:
    for name in _STAGE_EVENT_DATES.get(stage, ()):
        if values.get(name) is not None:
            return values[name]
    status_date = values.get("status_date")
    return status_date if status_date is not None else now


class ReconciliationService:
    """
    Owns the canonical record lifecycle for one batch at a time.
    """

    def __init__(
        self,
        *,
        oracle: ClassificationOracle | None = None,
        settings: ReconciliationSettings | None = None,
        header_mapper: HeaderMapper | None = None,
    ) -> None:
        self._oracle = oracle or build_oracle()
        self._settings = settings or get_reconciliation_settings()
        self._header_mapper = header_mapper or HeaderMapper(self._oracle)

    def resolve_mapping(
        self,
        *,
        headers: Sequence[str],
        rows: Sequence[ArchivedRow],
        dictionary: CanonicalDictionary,
    ) -> HeaderMapping:
        sample_rows = [row.values for row in rows[: self._settings.sample_rows]]
        return self._header_mapper.resolve(headers, sample_rows, dictionary)

    def reconcile(
        self,
        *,
        db: Session,
        batch_id: str,
        headers: Sequence[str],
        rows: Sequence[ArchivedRow],
        dictionary: CanonicalDictionary,
        cancellation: CancellationToken | None = None,
        now: datetime | None = None,
    ) -> ReconcileResult:
        """
        Reconcile every row and return records, new events and the mapping report.

        Raises:
            SchemaMappingError: If the header list is empty.
            BatchCancelledError: If cancelled; completed chunks stay committed.
        """

        now = now or datetime.now(timezone.utc)
        mapping = self.resolve_mapping(headers=headers, rows=rows, dictionary=dictionary)
        ProcessingLogRepository(db).append(
            stage=ProcessingStage.TRANSLATOR,
            status="MAPPED" if IDENTITY_FIELD in mapping.canonical_to_source else "NO_IDENTITY",
            import_batch_id=batch_id,
            confidence=mapping.confidence,
            output=mapping.to_dict(),
            dictionary_version=dictionary.version,
        )

        report = MappingReport(mapping=mapping, total_rows=len(rows))
        records: list[ReconciledRecord] = []
        events: list[EmittedEvent] = []
        transformer = FieldTransformer(dictionary)
        normalizer = StatusNormalizer(self._oracle)
        batch_repository = ImportBatchRepository(db)
        chunk_size = max(1, self._settings.chunk_size)
        completed = 0

        for start in range(0, len(rows), chunk_size):
            chunk = rows[start : start + chunk_size]
            succeeded = failed = dropped = 0
            for row in chunk:
                if cancellation is not None and cancellation.cancelled:
                    batch_repository.record_progress(
                        batch_id=batch_id,
                        processed=succeeded + failed + dropped,
                        succeeded=succeeded,
                        failed=failed,
                        unmapped=dropped,
                    )
                    db.commit()
                    log_event(logger, logging.WARNING, "batch_cancelled", batch_id=batch_id, rows_completed=completed)
                    raise BatchCancelledError(batch_id, completed)

                try:
                    with db.begin_nested():
                        outcome = self._reconcile_row(
                            db=db,
                            batch_id=batch_id,
                            row=row,
                            mapping=mapping,
                            dictionary=dictionary,
                            transformer=transformer,
                            normalizer=normalizer,
                            now=now,
                        )
                except Exception as exc:  # noqa: BLE001
                    failed += 1
                    report.failures.append(
                        RowFailure(row_index=row.row_index, error=f"{type(exc).__name__}: {exc}", raw_row_id=row.raw_row_id)
                    )
                    logger.warning("Row %d of batch %s failed: %s", row.row_index, batch_id, exc)
                else:
                    if isinstance(outcome, DroppedRow):
                        dropped += 1
                        report.dropped_rows.append(outcome)
                    else:
                        record, event = outcome
                        succeeded += 1
                        records.append(record)
                        if event is not None:
                            events.append(event)
                completed += 1

            batch_repository.record_progress(
                batch_id=batch_id,
                processed=len(chunk),
                succeeded=succeeded,
                failed=failed,
                unmapped=dropped,
            )
            db.commit()
            report.chunks += 1
            log_event(
                logger,
                logging.INFO,
                "chunk_committed",
                batch_id=batch_id,
                chunk=report.chunks,
                rows=len(chunk),
                succeeded=succeeded,
                failed=failed,
                dropped=dropped,
            )

        report.reconciled_rows = len(records)
        return ReconcileResult(records=records, events=events, mapping_report=report)

    def _reconcile_row(
        self,
        *,
        db: Session,
        batch_id: str,
        row: ArchivedRow,
        mapping: HeaderMapping,
        dictionary: CanonicalDictionary,
        transformer: FieldTransformer,
        normalizer: StatusNormalizer,
        now: datetime,
    ) -> DroppedRow | tuple[ReconciledRecord, EmittedEvent | None]:
        identity_header = mapping.canonical_to_source.get(IDENTITY_FIELD)
        raw_identity = row.values.get(identity_header) if identity_header is not None else None
        container_number = normalize_identity_key(raw_identity)
        if not is_valid_identity_key(container_number, min_length=self._settings.min_identity_length):
            reason = "missing_identity_column" if identity_header is None else (
                "missing_identity" if container_number is None else "identity_too_short"
            )
            ProcessingLogRepository(db).append(
                stage=ProcessingStage.TRANSLATOR,
                status="DROPPED",
                import_batch_id=batch_id,
                confidence=0.0,
                output={"row_index": row.row_index, "reason": reason, "raw_identity": raw_identity},
                dictionary_version=dictionary.version,
            )
            return DroppedRow(row_index=row.row_index, reason=reason, values=dict(row.values), raw_row_id=row.raw_row_id)

        values = transformer.transform_row(row.values, mapping)
        values[IDENTITY_FIELD] = container_number

        status_text = values.get("current_status")
        resolution = normalizer.normalize(status_text)
        stage = apply_date_overrides(
            resolution.code,
            delivery_date=values.get("delivery_date"),
            empty_return_date=values.get("empty_return_date"),
            gate_out_date=values.get("gate_out_date"),
        )
        values["current_status"] = stage

        if values.get("business_unit") is None:
            values["business_unit"] = derive_business_unit(values.get("consignee"), dictionary)

        container_payload: dict[str, Any] = {"status_text": status_text}
        shipment_payload: dict[str, Any] = {}
        additional_fields: dict[str, Any] = {}
        for name, value in values.items():
            if name == IDENTITY_FIELD:
                continue
            definition = dictionary.get(name)
            target = definition.target if definition is not None else "container"
            if name in CONTAINER_DATA_FIELDS:
                container_payload[name] = value
            elif target == "shipment":
                shipment_payload[name] = value
            elif target == "container" and value is not None:
                additional_fields[name] = _json_safe(value)

        metadata_updates: dict[str, Any] = {
            "_internal": {
                "raw_row_id": str(row.raw_row_id) if row.raw_row_id is not None else None,
                "import_batch_id": batch_id,
                "row_index": row.row_index,
                "mapping_confidence": mapping.confidence,
                "mapping_strategy": mapping.strategy,
                "flags": list(mapping.flags),
                "dictionary_version": dictionary.version,
                "status_source": resolution.source,
            }
        }
        unmapped_values = {
            header: row.values.get(header)
            for header in mapping.unmapped_headers
            if _has_value(row.values.get(header))
        }
        if unmapped_values:
            metadata_updates["unmapped_source_fields"] = unmapped_values
        if additional_fields:
            metadata_updates["additional_fields"] = additional_fields

        containers = ContainerRepository(db)
        upsert = containers.upsert(
            container_number=container_number,
            payload=container_payload,
            metadata_updates=metadata_updates,
            import_batch_id=batch_id,
        )
        container = upsert.container
        derived = self._derived_fields(container, values=values, stage_changed="current_status" in upsert.written_fields, now=now)
        derived_write = containers.write_fields(container, derived)
        written = upsert.written_fields + derived_write.written_fields
        skipped = tuple(sorted(set(upsert.skipped_locked_fields) | set(derived_write.skipped_locked_fields)))

        shipment_reference = self._link_shipment(db, container=container, values=values, shipment_payload=shipment_payload)

        event: EmittedEvent | None = None
        if container.current_status:
            event_time = stage_event_time(container.current_status, values, now)
            location = values.get("event_location")
            appended = LifecycleEventRepository(db).append(
                container_id=container.id,
                stage_code=container.current_status,
                event_time=event_time,
                location=location,
                source=EVENT_SOURCE_IMPORT,
                import_batch_id=batch_id,
                raw_row_id=row.raw_row_id,
            )
            if appended is not None:
                event = EmittedEvent(
                    container_number=container_number,
                    stage=container.current_status,
                    event_time=event_time,
                    location=location,
                    source=EVENT_SOURCE_IMPORT,
                )

        if row.raw_row_id is not None:
            RawArchiveRepository(db).attach_container(raw_row_id=row.raw_row_id, container_number=container_number)

        ProcessingLogRepository(db).append(
            stage=ProcessingStage.PERSISTENCE,
            status="CREATED" if upsert.created else "UPDATED",
            import_batch_id=batch_id,
            container_number=container_number,
            confidence=mapping.confidence,
            output={
                "row_index": row.row_index,
                "stage": container.current_status,
                "status_text": status_text,
                "written_fields": list(written),
                "skipped_locked_fields": list(skipped),
                "shipment_reference": shipment_reference,
            },
            dictionary_version=dictionary.version,
        )

        record = ReconciledRecord(
            container_id=container.id,
            container_number=container_number,
            row_index=row.row_index,
            raw_row_id=row.raw_row_id,
            stage=container.current_status,
            values=values,
            written_fields=written,
            skipped_locked_fields=skipped,
            mapping_confidence=mapping.confidence,
            shipment_reference=shipment_reference,
            created=upsert.created,
        )
        return record, event

    @staticmethod
    def _derived_fields(
        container: Container,
        *,
        values: Mapping[str, Any],
        stage_changed: bool,
        now: datetime,
    ) -> dict[str, Any]:
        derived: dict[str, Any] = {}
        if container.current_status and (stage_changed or container.status_last_updated is None):
            derived["status_last_updated"] = values.get("status_date") or now

        health = assess_health(
            stage=container.current_status,
            last_free_day=container.last_free_day,
            delivery_date=container.delivery_date,
            empty_return_date=container.empty_return_date,
            departure_date=container.atd or container.etd,
            arrival_date=container.ata,
            now=now,
        )
        derived.update(
            health_score=health.health_score,
            attention_category=health.attention_category,
            operational_status=health.operational_status,
            days_in_transit=health.days_in_transit,
        )
        return derived

    @staticmethod
    def _link_shipment(
        db: Session,
        *,
        container: Container,
        values: Mapping[str, Any],
        shipment_payload: dict[str, Any],
    ) -> str | None:
        reference = next(
            (str(values[name]).strip() for name in _SHIPMENT_REFERENCE_FIELDS if values.get(name)),
            None,
        )
        if not reference:
            return None
        payload = dict(shipment_payload)
        payload.setdefault("mbl", values.get("mbl"))
        if payload.get("business_unit") is None:
            payload["business_unit"] = container.business_unit
        shipments = ShipmentRepository(db)
        shipment = shipments.upsert(shipment_reference=reference, payload=payload)
        shipments.link(shipment=shipment, container=container)
        return reference


@lru_cache(maxsize=1)
def get_reconciliation_service() -> ReconciliationService:
    return ReconciliationService()
