"""
app/services/archive_service.py

Raw archive stage: register the import batch and snapshot every source row.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy.orm import Session

from app.connectors.base import RowBatch
from app.domain.reconciliation import ArchivedRow
from app.logging_utils import log_event
from app.repositories.event_log_repository import ProcessingLogRepository
from app.repositories.raw_archive_repository import RawArchiveRepository
from db.models.import_batch import ImportBatch
from db.models.lifecycle_event import ProcessingStage
from db.models.raw_row import RawRow
from db.repositories.import_batch_repository import ImportBatchRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveResult:
    batch_id: str
    headers: tuple[str, ...]
    rows: list[ArchivedRow]
    created_rows: int
    batch_created: bool


class ArchiveService:
    """
    Idempotent: archiving the same batch twice stores each row once and
    returns the originally archived values.
    """

    def archive(self, *, db: Session, batch_id: str, row_batch: RowBatch) -> ArchiveResult:
        batch_repository = ImportBatchRepository(db)
        batch, batch_created = batch_repository.get_or_create(
            batch_id=batch_id,
            source_name=row_batch.source_name,
        )

        raw_repository = RawArchiveRepository(db)
        stored_rows, created = raw_repository.archive_rows(
            batch_id=batch_id,
            headers=row_batch.headers,
            rows=row_batch.rows,
        )
        headers = tuple(stored_rows[0].headers) if stored_rows else tuple(row_batch.headers)

        ProcessingLogRepository(db).append(
            stage=ProcessingStage.ARCHIVIST,
            status="ARCHIVED",
            import_batch_id=batch_id,
            output={
                "source_name": row_batch.source_name,
                "rows_received": len(row_batch.rows),
                "rows_archived": created,
                "headers": list(headers),
            },
        )
        log_event(
            logger,
            logging.INFO,
            "batch_archived",
            batch_id=batch_id,
            rows_received=len(row_batch.rows),
            rows_archived=created,
            batch_created=batch_created,
        )
        return ArchiveResult(
            batch_id=batch_id,
            headers=headers,
            rows=archived_rows(stored_rows),
            created_rows=created,
            batch_created=batch_created,
        )

    def load(self, *, db: Session, batch_id: str) -> ArchiveResult | None:
        """
        Rebuild the archived view of an existing batch for reprocessing.
        """

        batch: ImportBatch | None = ImportBatchRepository(db).get_batch(batch_id)
        if batch is None:
            return None
        stored_rows = RawArchiveRepository(db).list_rows(batch_id)
        headers = tuple(stored_rows[0].headers) if stored_rows else ()
        return ArchiveResult(
            batch_id=batch_id,
            headers=headers,
            rows=archived_rows(stored_rows),
            created_rows=0,
            batch_created=False,
        )


def archived_rows(stored_rows: Sequence[RawRow]) -> list[ArchivedRow]:
    return [
        ArchivedRow(row_index=row.row_index, values=dict(row.raw_values or {}), raw_row_id=row.id)
        for row in stored_rows
    ]


@lru_cache(maxsize=1)
def get_archive_service() -> ArchiveService:
    return ArchiveService()
