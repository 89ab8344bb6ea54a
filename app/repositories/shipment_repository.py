"""
app/repositories/shipment_repository.py

Shipments keyed by business reference and their container links.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.concurrency import identity_locks
from app.repositories.container_repository import (
    apply_manual_fields,
    identity_lock_key,
    remove_locks,
    strip_locked,
)
from db.models.container import Container
from db.models.shipment import SHIPMENT_DATA_FIELDS, Shipment, ShipmentContainer


class ShipmentRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_by_reference(self, shipment_reference: str, *, for_update: bool = False) -> Shipment | None:
        stmt = select(Shipment).where(Shipment.shipment_reference == shipment_reference)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.scalars(stmt).first()

    def upsert(self, *, shipment_reference: str, payload: Mapping[str, Any]) -> Shipment:
        """
        Same lock discipline as containers: non-null values only, locked
        shipment fields skipped.
        """

        with identity_locks.hold(identity_lock_key("shipment", shipment_reference)):
            shipment = self.get_by_reference(shipment_reference, for_update=True)
            if shipment is None:
                shipment = self._insert(shipment_reference)

            values = {
                key: value
                for key, value in payload.items()
                if key in SHIPMENT_DATA_FIELDS and value is not None
            }
            for name, value in strip_locked(values, shipment.locked_fields).items():
                setattr(shipment, name, value)
            self._session.flush()
        return shipment

    def _insert(self, shipment_reference: str) -> Shipment:
        shipment = Shipment(shipment_reference=shipment_reference, locked_fields=[], metadata_json={})
        try:
            with self._session.begin_nested():
                self._session.add(shipment)
                self._session.flush()
        except IntegrityError:
            existing = self.get_by_reference(shipment_reference, for_update=True)
            if existing is None:
                raise
            return existing
        return shipment

    def write_manual_fields(self, shipment: Shipment, payload: Mapping[str, Any]) -> dict[str, Any]:
        return apply_manual_fields(shipment, payload)

    def unlock_fields(self, shipment: Shipment, fields: Iterable[str]) -> list[str]:
        return remove_locks(shipment, fields)


    def link(self, *, shipment: Shipment, container: Container) -> bool:
        """
        Link a container to a shipment once. Returns True when a new link was made.
        """

        stmt = select(ShipmentContainer).where(
            ShipmentContainer.shipment_id == shipment.id,
            ShipmentContainer.container_id == container.id,
        )
        if self._session.scalars(stmt).first() is not None:
            return False
        self._session.add(ShipmentContainer(shipment_id=shipment.id, container_id=container.id))
        self._session.flush()
        return True

    def references_for_container(self, container: Container) -> list[str]:
        stmt = (
            select(Shipment.shipment_reference)
            .join(ShipmentContainer, ShipmentContainer.shipment_id == Shipment.id)
            .where(ShipmentContainer.container_id == container.id)
            .order_by(Shipment.shipment_reference.asc())
        )
        return list(self._session.scalars(stmt).all())

    def container_numbers(self, shipment: Shipment) -> list[str]:
        stmt = (
            select(Container.container_number)
            .join(ShipmentContainer, ShipmentContainer.container_id == Container.id)
            .where(ShipmentContainer.shipment_id == shipment.id)
            .order_by(Container.container_number.asc())
        )
        return list(self._session.scalars(stmt).all())
