"""
app/repositories/raw_archive_repository.py

Write-once persistence for archived source rows.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.models.raw_row import RawRow


class RawArchiveRepository:
    """
    Rows are keyed by (batch, row index). Re-archiving an existing key keeps
    the stored snapshot; the only later mutation is attaching the identity
    key of the container the row produced.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def archive_rows(
        self,
        *,
        batch_id: str,
        headers: Sequence[str],
        rows: Sequence[Mapping[str, Any]],
    ) -> tuple[list[RawRow], int]:
        existing = {row.row_index: row for row in self.list_rows(batch_id)}
        header_list = list(headers)
        archived: list[RawRow] = []
        created = 0

        for row_index, values in enumerate(rows):
            stored = existing.get(row_index)
            if stored is None:
                stored = RawRow(
                    import_batch_id=batch_id,
                    row_index=row_index,
                    headers=header_list,
                    raw_values={header: values.get(header) for header in header_list},
                )
                self._session.add(stored)
                created += 1
            archived.append(stored)

        self._session.flush()
        return archived, created

    def list_rows(self, batch_id: str) -> list[RawRow]:
        stmt = select(RawRow).where(RawRow.import_batch_id == batch_id).order_by(RawRow.row_index.asc())
        return list(self._session.scalars(stmt).all())

    def get_row(self, raw_row_id: uuid.UUID) -> RawRow | None:
        return self._session.get(RawRow, raw_row_id)

    def attach_container(self, *, raw_row_id: uuid.UUID, container_number: str) -> RawRow | None:
        row = self.get_row(raw_row_id)
        if row is None:
            return None
        if row.container_number is None:
            row.container_number = container_number
        return row

    def latest_for_container(self, container_number: str) -> RawRow | None:
        stmt = (
            select(RawRow)
            .where(RawRow.container_number == container_number)
            .order_by(RawRow.created_at.desc(), RawRow.row_index.desc())
            .limit(1)
        )
        return self._session.scalars(stmt).first()
