"""
Orchestrator for one import batch: archive -> reconcile -> audit -> enrich -> classify,
with the batch status surface kept current throughout.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Protocol

from fastapi import BackgroundTasks, UploadFile
from sqlalchemy.orm import Session

from app.concurrency import CancellationToken
from app.config import (
    ExceptionSettings,
    ReconciliationSettings,
    get_exception_settings,
    get_reconciliation_settings,
)
from app.connectors.base import RowBatch
from app.connectors.spreadsheet_connector import SpreadsheetRowSource
from app.dictionary.canonical_dictionary import CanonicalDictionary
from app.dictionary.dictionary_store import DictionaryStore, get_dictionary_store
from app.domain.reconciliation import BatchSummary, ReconcileResult
from app.errors import BatchCancelledError, BatchInProgressError, BatchNotFoundError, ConfigurationError
from app.logging_utils import log_event
from app.services.archive_service import ArchiveResult, ArchiveService
from app.services.audit_service import AuditService, AuditSummary
from app.services.enrichment_service import EnrichmentService, EnrichmentSummary
from app.services.exception_classifier import ClassificationSummary, ExceptionClassifier
from app.services.reconciliation_service import ReconciliationService
from app.validators.mapping_validator import SchemaMappingError
from db.models.import_batch import ImportBatch, ImportBatchStatus
from db.repositories.import_batch_repository import ImportBatchRepository
from oracle.client import ClassificationOracle, build_oracle

logger = logging.getLogger(__name__)


class BatchTaskExecutor(Protocol):
    def submit(self, task: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        ...


class FastAPIBackgroundTaskExecutor:
    def __init__(self, background_tasks: BackgroundTasks) -> None:
        self._background_tasks = background_tasks

    def submit(self, task: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        self._background_tasks.add_task(task, *args, **kwargs)


class ImportOrchestratorService:
    """
    Coordinates the pipeline stages and batch status persistence.

    Configuration errors (dictionary file, oracle credentials) and schema
    mapping errors fail the whole batch; per-row problems never do.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] | None = None,
        oracle: ClassificationOracle | None = None,
        dictionary_store: DictionaryStore | None = None,
        settings: ReconciliationSettings | None = None,
        exception_settings: ExceptionSettings | None = None,
        archive_service: ArchiveService | None = None,
    ) -> None:
        if session_factory is None:
            from db.session import SessionLocal

            self._session_factory = SessionLocal
        else:
            self._session_factory = session_factory

        self._oracle = oracle
        self._store = dictionary_store
        self._settings = settings or get_reconciliation_settings()
        self._exception_settings = exception_settings or get_exception_settings()
        self._archive = archive_service or ArchiveService()
        self._enricher = EnrichmentService()
        self._stages: tuple[ReconciliationService, AuditService, ExceptionClassifier] | None = None
        self._stage_lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}
        self._tokens_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Synchronous entrypoints
    # ------------------------------------------------------------------

    def run_batch(
        self,
        *,
        db: Session,
        batch_id: str,
        row_batch: RowBatch,
        dictionary: CanonicalDictionary | None = None,
        cancellation: CancellationToken | None = None,
        now: datetime | None = None,
    ) -> BatchSummary:
        """
        Archive ``row_batch`` under ``batch_id`` and run every stage over it.
        """

        archived = self._archive.archive(db=db, batch_id=batch_id, row_batch=row_batch)
        db.commit()
        return self._process(db=db, archived=archived, dictionary=dictionary, cancellation=cancellation, now=now)

    def reprocess_batch(
        self,
        *,
        db: Session,
        batch_id: str,
        dictionary: CanonicalDictionary | None = None,
        cancellation: CancellationToken | None = None,
        now: datetime | None = None,
    ) -> BatchSummary:
        """
        Run the stages again over rows already in the raw archive.
        """

        archived = self._archive.load(db=db, batch_id=batch_id)
        if archived is None:
            raise BatchNotFoundError(batch_id)
        return self._process(db=db, archived=archived, dictionary=dictionary, cancellation=cancellation, now=now)

    # ------------------------------------------------------------------
    # Background dispatch
    # ------------------------------------------------------------------

    def trigger_upload_import(
        self,
        *,
        db: Session,
        executor: BatchTaskExecutor,
        upload_file: UploadFile,
        batch_id: str | None = None,
        sheet_name: str | None = None,
    ) -> ImportBatch:
        """
        Archive an uploaded spreadsheet synchronously and process it in the background.

        Raises:
            RowSourceError: If the upload cannot be parsed.
        """

        file_name = upload_file.filename or "upload.csv"
        temp_path = self._persist_temp_upload(upload_file)
        try:
            row_batch = SpreadsheetRowSource(temp_path, sheet_name=sheet_name, source_name=file_name).read()
        finally:
            self._delete_file_quietly(temp_path)

        batch_id = batch_id or uuid.uuid4().hex
        archived = self._archive.archive(db=db, batch_id=batch_id, row_batch=row_batch)
        db.commit()
        executor.submit(self._run_reprocess_job, archived.batch_id)
        batch = ImportBatchRepository(db).get_batch(archived.batch_id)
        if batch is None:
            raise BatchNotFoundError(archived.batch_id)
        return batch

    def trigger_reprocess(self, *, db: Session, executor: BatchTaskExecutor, batch_id: str) -> ImportBatch:
        repository = ImportBatchRepository(db)
        batch = repository.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        if batch.status == ImportBatchStatus.PROCESSING:
            return batch

        executor.submit(self._run_reprocess_job, batch_id)
        return batch

    def cancel_batch(self, batch_id: str) -> bool:
        with self._tokens_lock:
            token = self._tokens.get(batch_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Cancellation requested for batch %s", batch_id)
        return True

    def get_batch(self, *, db: Session, batch_id: str) -> ImportBatch | None:
        return ImportBatchRepository(db).get_batch(batch_id)

    def list_batches(self, *, db: Session, limit: int = 100, status: str | None = None) -> list[ImportBatch]:
        return ImportBatchRepository(db).list_batches(limit=limit, status=status)

    def reset_batch(self, *, db: Session, batch_id: str) -> None:
        """
        Drop a batch with its raw archive and processing logs so the same
        key can be imported fresh. Canonical records are kept.

        Raises:
            BatchNotFoundError: If the batch does not exist.
            BatchInProgressError: If the batch is still processing.
        """

        repository = ImportBatchRepository(db)
        batch = repository.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        with self._tokens_lock:
            running = batch_id in self._tokens
        if running or batch.status == ImportBatchStatus.PROCESSING:
            raise BatchInProgressError(batch_id)

        repository.reset(batch_id=batch_id)
        db.commit()
        log_event(logger, logging.INFO, "batch_reset", batch_id=batch_id)

    def _run_reprocess_job(self, batch_id: str) -> None:
        with self._session_factory() as db:
            try:
                self.reprocess_batch(db=db, batch_id=batch_id)
            except Exception as exc:
                self._mark_batch_failed(db=db, batch_id=batch_id, exc=exc)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _process(
        self,
        *,
        db: Session,
        archived: ArchiveResult,
        dictionary: CanonicalDictionary | None,
        cancellation: CancellationToken | None,
        now: datetime | None,
    ) -> BatchSummary:
        batch_id = archived.batch_id
        now = now or datetime.now(timezone.utc)
        token = cancellation or CancellationToken()
        repository = ImportBatchRepository(db)
        summary = BatchSummary(batch_id=batch_id, status=ImportBatchStatus.PROCESSING, rows_total=len(archived.rows))

        with self._tokens_lock:
            self._tokens[batch_id] = token
        try:
            active_dictionary = dictionary or self._dictionary_store().load()
            reconciler, auditor, classifier = self._resolve_stages()

            repository.mark_processing(
                batch_id=batch_id,
                row_count=len(archived.rows),
                dictionary_version=active_dictionary.version,
            )
            db.commit()

            result = reconciler.reconcile(
                db=db,
                batch_id=batch_id,
                headers=archived.headers,
                rows=archived.rows,
                dictionary=active_dictionary,
                cancellation=token,
                now=now,
            )
            audit_summary = AuditSummary()
            if self._settings.audit_enabled and result.records:
                audit_summary = auditor.audit_records(
                    db=db,
                    batch_id=batch_id,
                    records=result.records,
                    rows=archived.rows,
                    mapping=result.mapping_report.mapping,
                    dictionary=active_dictionary,
                    cancellation=token,
                    now=now,
                )
            enrichment = EnrichmentSummary()
            if self._settings.enrichment_enabled and result.records:
                enrichment = self._enricher.enrich_records(
                    db=db,
                    batch_id=batch_id,
                    records=result.records,
                    rows=archived.rows,
                    now=now,
                )
            classification = classifier.classify_containers(
                db=db,
                container_numbers=[record.container_number for record in result.records],
                now=now,
                import_batch_id=batch_id,
            )
        except (ConfigurationError, SchemaMappingError, BatchCancelledError) as exc:
            db.rollback()
            summary.status = ImportBatchStatus.FAILED
            summary.error_message = f"{type(exc).__name__}: {exc}"
            self._persist_failure(db=db, summary=summary)
            return summary
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error while processing import batch %s", batch_id)
            db.rollback()
            summary.status = ImportBatchStatus.FAILED
            summary.error_message = f"{type(exc).__name__}: {exc}"
            self._persist_failure(db=db, summary=summary)
            return summary
        finally:
            with self._tokens_lock:
                self._tokens.pop(batch_id, None)

        self._fill_summary(
            summary,
            result=result,
            audit=audit_summary,
            enrichment=enrichment,
            classification=classification,
        )
        summary.status = ImportBatchStatus.COMPLETED
        repository.mark_completed(
            batch_id=batch_id,
            analysis_payload={
                "mapping_report": result.mapping_report.to_dict(),
                "summary": summary.to_dict(),
                "events_emitted": len(result.events),
            },
        )
        db.commit()
        log_event(logger, logging.INFO, "batch_completed", **summary.to_dict())
        return summary

    @staticmethod
    def _fill_summary(
        summary: BatchSummary,
        *,
        result: ReconcileResult,
        audit: AuditSummary,
        enrichment: EnrichmentSummary,
        classification: ClassificationSummary,
    ) -> None:
        report = result.mapping_report
        summary.rows_processed = report.total_rows
        summary.rows_succeeded = report.reconciled_rows
        summary.rows_failed = len(report.failures)
        summary.unmapped_rows = report.unmapped_row_count
        summary.failures = list(report.failures)
        summary.audited = audit.audited
        summary.corrected = audit.corrected
        summary.unaudited = audit.unaudited
        summary.enriched = enrichment.enriched
        summary.exceptions_flagged = classification.flagged
        summary.exceptions_cleared = classification.cleared

    def _persist_failure(self, *, db: Session, summary: BatchSummary) -> None:
        repository = ImportBatchRepository(db)
        batch = repository.get_batch(summary.batch_id)
        if batch is not None:
            summary.rows_processed = batch.rows_processed
            summary.rows_succeeded = batch.rows_succeeded
            summary.rows_failed = batch.rows_failed
            summary.unmapped_rows = batch.rows_unmapped
        repository.mark_failed(
            batch_id=summary.batch_id,
            error_message=(summary.error_message or "")[:2000],
            analysis_payload={"summary": summary.to_dict()},
        )
        db.commit()
        logger.error("Import batch %s failed: %s", summary.batch_id, summary.error_message)

    def _mark_batch_failed(self, *, db: Session, batch_id: str, exc: Exception) -> None:
        error_message = f"{type(exc).__name__}: {exc}"
        logger.exception("Import batch job failed id=%s error=%s", batch_id, error_message)
        try:
            db.rollback()
            failed = ImportBatchRepository(db).mark_failed(batch_id=batch_id, error_message=error_message[:2000])
            if failed is None:
                logger.error("Unable to mark import batch as failed because it was not found id=%s", batch_id)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to persist failed import batch state id=%s", batch_id)

    @staticmethod
    def _persist_temp_upload(upload_file: UploadFile) -> Path:
        _, ext = os.path.splitext(upload_file.filename or "upload.csv")
        upload_file.file.seek(0)
        with tempfile.NamedTemporaryFile(delete=False, prefix="import_batch_", suffix=ext or ".csv") as temp_file:
            shutil.copyfileobj(upload_file.file, temp_file, 1024 * 1024)
            temp_path = Path(temp_file.name)
        upload_file.file.seek(0)
        return temp_path

    @staticmethod
    def _delete_file_quietly(file_path: Path) -> None:
        try:
            os.remove(file_path)
        except OSError:
            return

    def _dictionary_store(self) -> DictionaryStore:
        if self._store is None:
            self._store = get_dictionary_store()
        return self._store

    def _resolve_stages(self) -> tuple[ReconciliationService, AuditService, ExceptionClassifier]:
        """
        Build the oracle and stage services on first use so that missing
        credentials surface as a batch failure, not an import-time crash.
        """

        with self._stage_lock:
            if self._stages is None:
                oracle = self._oracle or build_oracle()
                self._oracle = oracle
                self._stages = (
                    ReconciliationService(oracle=oracle, settings=self._settings),
                    AuditService(oracle=oracle, settings=self._settings),
                    ExceptionClassifier(oracle=oracle, settings=self._exception_settings),
                )
            return self._stages


@lru_cache(maxsize=1)
def get_import_orchestrator_service() -> ImportOrchestratorService:
    return ImportOrchestratorService()
