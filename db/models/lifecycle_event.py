"""
db/models/lifecycle_event.py

Append-only container timeline, plus the processing and activity logs.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, TimestampMixin


class LifecycleEvent(Base, TimestampMixin):
    __tablename__ = "lifecycle_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    container_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("containers.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage_code: Mapped[str] = mapped_column(String(8), nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False, comment="Which stage recorded it")
    import_batch_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    raw_row_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)

    __table_args__ = (
        Index("ix_lifecycle_events_container_stage", "container_id", "stage_code"),
    )


class ProcessingStage:
    ARCHIVIST = "ARCHIVIST"
    TRANSLATOR = "TRANSLATOR"
    PERSISTENCE = "PERSISTENCE"
    AUDITOR = "AUDITOR"
    ENRICHER = "ENRICHER"
    EXCEPTION_CLASSIFIER = "EXCEPTION_CLASSIFIER"


class ProcessingLog(Base, TimestampMixin):
    __tablename__ = "processing_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    import_batch_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    container_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    output: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Stage output, including raw oracle answers",
    )
    dictionary_version: Mapped[str | None] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        Index("ix_processing_logs_batch_stage", "import_batch_id", "stage"),
        Index("ix_processing_logs_container_number", "container_number"),
    )


class ActivityAction:
    AUTO_CORRECT = "AUTO_CORRECT"
    MANUAL_EDIT = "MANUAL_EDIT"
    UNLOCK = "UNLOCK"


class ActivityLog(Base, TimestampMixin):
    __tablename__ = "activity_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    container_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("containers.id", ondelete="CASCADE"),
        nullable=True,
    )
    shipment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("shipments.id", ondelete="CASCADE"),
        nullable=True,
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        # Each entry belongs to a container or a shipment.
        CheckConstraint("container_id IS NOT NULL OR shipment_id IS NOT NULL", name="has_target"),
        Index("ix_activity_logs_container_id", "container_id"),
        Index("ix_activity_logs_shipment_id", "shipment_id"),
    )

