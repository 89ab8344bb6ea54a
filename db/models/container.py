"""
db/models/container.py

Canonical container record, its lock set, and its metadata envelope.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, TimestampMixin

# Canonical fields written from source rows and audit corrections.
CONTAINER_DATA_FIELDS: tuple[str, ...] = (
    "carrier",
    "pol",
    "pod",
    "business_unit",
    "container_type",
    "current_status",
    "status_text",
    "etd",
    "atd",
    "eta",
    "ata",
    "last_free_day",
    "gate_out_date",
    "delivery_date",
    "empty_return_date",
    "seal_number",
    "gross_weight",
    "pieces",
    "volume_cbm",
    "vessel_name",
    "voyage",
    "hbl",
    "mbl",
    "final_destination",
    "final_destination_eta",
)

CONTAINER_DERIVED_FIELDS: tuple[str, ...] = (
    "status_last_updated",
    "health_score",
    "attention_category",
    "operational_status",
    "days_in_transit",
)

CONTAINER_EXCEPTION_FIELDS: tuple[str, ...] = (
    "has_exception",
    "exception_type",
    "exception_owner",
    "exception_reason",
    "exception_date",
    "exception_resolved_at",
)

CONTAINER_LOCKABLE_FIELDS: frozenset[str] = frozenset(
    CONTAINER_DATA_FIELDS + CONTAINER_DERIVED_FIELDS + CONTAINER_EXCEPTION_FIELDS
)


class Container(Base, TimestampMixin):
    __tablename__ = "containers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    container_number: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        comment="Normalized identity key",
    )

    carrier: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pol: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pod: Mapped[str | None] = mapped_column(String(255), nullable=True)
    business_unit: Mapped[str | None] = mapped_column(String(255), nullable=True)
    container_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    current_status: Mapped[str | None] = mapped_column(String(8), nullable=True, comment="Stage code")
    status_text: Mapped[str | None] = mapped_column(String(255), nullable=True)

    etd: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    atd: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    eta: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ata: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_free_day: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    gate_out_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    empty_return_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    final_destination_eta: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status_last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    seal_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gross_weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    pieces: Mapped[int | None] = mapped_column(Integer, nullable=True)
    volume_cbm: Mapped[float | None] = mapped_column(Float, nullable=True)
    vessel_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    voyage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hbl: Mapped[str | None] = mapped_column(String(128), nullable=True)
    mbl: Mapped[str | None] = mapped_column(String(128), nullable=True)
    final_destination: Mapped[str | None] = mapped_column(String(255), nullable=True)

    health_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attention_category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    operational_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    days_in_transit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    has_exception: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exception_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    exception_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    exception_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    exception_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    exception_resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    locked_fields: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Fields a human edited; automated writes skip them",
    )
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Provenance, unmapped source values, and audit outcome",
    )
    last_import_batch_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_containers_current_status", "current_status"),
        Index("ix_containers_has_exception", "has_exception"),
        Index("ix_containers_business_unit", "business_unit"),
    )
