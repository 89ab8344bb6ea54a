"""
db/models/raw_row.py

Write-once snapshot of one source row.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, TimestampMixin


class RawRow(Base, TimestampMixin):
    __tablename__ = "raw_rows"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    import_batch_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("import_batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_index: Mapped[int] = mapped_column(Integer, nullable=False)
    headers: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    raw_values: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        comment="Original cell values keyed by header",
    )
    container_number: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
        comment="Identity key of the container this row produced",
    )

    __table_args__ = (
        UniqueConstraint("import_batch_id", "row_index", name="uq_raw_rows_batch_row"),
        Index("ix_raw_rows_container_number", "container_number"),
    )
