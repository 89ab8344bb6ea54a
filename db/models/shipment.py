"""
db/models/shipment.py

Shipments keyed by business reference, linked many-to-many to containers.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, TimestampMixin

SHIPMENT_DATA_FIELDS: tuple[str, ...] = (
    "booking_reference",
    "mbl",
    "customer_po",
    "shipper",
    "consignee",
    "business_unit",
)


class Shipment(Base, TimestampMixin):
    __tablename__ = "shipments"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    shipment_reference: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    booking_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    mbl: Mapped[str | None] = mapped_column(String(128), nullable=True)
    customer_po: Mapped[str | None] = mapped_column(String(128), nullable=True)
    shipper: Mapped[str | None] = mapped_column(String(255), nullable=True)
    consignee: Mapped[str | None] = mapped_column(String(255), nullable=True)
    business_unit: Mapped[str | None] = mapped_column(String(255), nullable=True)
    locked_fields: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)


class ShipmentContainer(Base, TimestampMixin):
    __tablename__ = "shipment_containers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("shipments.id", ondelete="CASCADE"),
        nullable=False,
    )
    container_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("containers.id", ondelete="CASCADE"),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("shipment_id", "container_id", name="uq_shipment_containers_pair"),
        Index("ix_shipment_containers_container_id", "container_id"),
    )
