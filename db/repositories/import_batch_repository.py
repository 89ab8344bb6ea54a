"""
Repository for import batch lifecycle persistence and status lookup.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, delete, select
from sqlalchemy.orm import Session

from db.models.import_batch import ImportBatch, ImportBatchStatus
from db.models.lifecycle_event import ProcessingLog
from db.models.raw_row import RawRow


class ImportBatchRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_or_create(self, *, batch_id: str, source_name: str) -> tuple[ImportBatch, bool]:
        batch = self.get_batch(batch_id)
        if batch is not None:
            return batch, False
        batch = ImportBatch(
            id=batch_id,
            source_name=source_name,
            status=ImportBatchStatus.PENDING,
        )
        self._session.add(batch)
        self._session.flush()
        return batch, True

    def get_batch(self, batch_id: str) -> ImportBatch | None:
        return self._session.get(ImportBatch, batch_id)

    def list_batches(
        self,
        *,
        limit: int = 100,
        status: str | None = None,
    ) -> list[ImportBatch]:
        stmt: Select[tuple[ImportBatch]] = select(ImportBatch)
        if status:
            stmt = stmt.where(ImportBatch.status == status)
        stmt = stmt.order_by(ImportBatch.created_at.desc()).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())

    def mark_processing(self, *, batch_id: str, row_count: int, dictionary_version: str) -> ImportBatch | None:
        batch = self.get_batch(batch_id)
        if batch is None:
            return None
        batch.status = ImportBatchStatus.PROCESSING
        batch.row_count = row_count
        batch.rows_processed = 0
        batch.rows_succeeded = 0
        batch.rows_failed = 0
        batch.rows_unmapped = 0
        batch.dictionary_version = dictionary_version
        batch.started_at = datetime.now(timezone.utc)
        batch.completed_at = None
        batch.error_message = None
        return batch

    def record_progress(
        self,
        *,
        batch_id: str,
        processed: int = 0,
        succeeded: int = 0,
        failed: int = 0,
        unmapped: int = 0,
    ) -> ImportBatch | None:
        """
        Add to the cumulative counters. Callers commit per chunk so readers
        see progress during a run.
        """

        batch = self.get_batch(batch_id)
        if batch is None:
            return None
        batch.rows_processed += processed
        batch.rows_succeeded += succeeded
        batch.rows_failed += failed
        batch.rows_unmapped += unmapped
        return batch

    def mark_completed(
        self,
        *,
        batch_id: str,
        analysis_payload: dict[str, Any] | None = None,
    ) -> ImportBatch | None:
        batch = self.get_batch(batch_id)
        if batch is None:
            return None
        batch.status = ImportBatchStatus.COMPLETED
        batch.completed_at = datetime.now(timezone.utc)
        batch.analysis_payload = analysis_payload
        batch.error_message = None
        return batch

    def mark_failed(
        self,
        *,
        batch_id: str,
        error_message: str,
        analysis_payload: dict[str, Any] | None = None,
    ) -> ImportBatch | None:
        batch = self.get_batch(batch_id)
        if batch is None:
            return None
        batch.status = ImportBatchStatus.FAILED
        batch.completed_at = datetime.now(timezone.utc)
        batch.error_message = error_message
        if analysis_payload is not None:
            batch.analysis_payload = analysis_payload
        return batch

    def reset(self, *, batch_id: str) -> bool:
        """
        Explicit reset: drop the batch with its archived rows and logs.
        Canonical containers are left untouched.
        """

        batch = self.get_batch(batch_id)
        if batch is None:
            return False
        self._session.execute(delete(ProcessingLog).where(ProcessingLog.import_batch_id == batch_id))
        self._session.execute(delete(RawRow).where(RawRow.import_batch_id == batch_id))
        self._session.delete(batch)
        self._session.flush()
        return True
