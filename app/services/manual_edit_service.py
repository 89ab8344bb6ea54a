"""
app/services/manual_edit_service.py

The only path allowed to add or remove field locks, on containers and on
shipments.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from functools import lru_cache
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, Integer
from sqlalchemy.orm import Session

from app.concurrency import identity_locks
from app.domain.stages import is_valid_stage
from app.errors import LockedFieldError, RecordNotFoundError
from app.mappers.field_transformer import clean_string, parse_date, parse_integer, parse_number
from app.mappers.identity import normalize_identity_key
from app.repositories.container_repository import ContainerRepository, identity_lock_key
from app.repositories.event_log_repository import ActivityLogRepository
from app.repositories.shipment_repository import ShipmentRepository
from db.models.container import CONTAINER_DATA_FIELDS, CONTAINER_EXCEPTION_FIELDS, Container
from db.models.lifecycle_event import ActivityAction
from db.models.shipment import SHIPMENT_DATA_FIELDS, Shipment

logger = logging.getLogger(__name__)

EDITABLE_FIELDS: frozenset[str] = frozenset(CONTAINER_DATA_FIELDS + CONTAINER_EXCEPTION_FIELDS)
SHIPMENT_EDITABLE_FIELDS: frozenset[str] = frozenset(SHIPMENT_DATA_FIELDS)


def _json_safe(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def coerce_manual_value(field_name: str, value: Any, *, model: type[Any] = Container) -> Any:
    """
    Convert an edited value to the column's type. Raises ValueError when a
    non-empty value cannot be converted.
    """

    if value is None:
        return None
    column_type = model.__table__.columns[field_name].type
    if isinstance(column_type, Boolean):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"{field_name}: expected a boolean, got {value!r}")

    if isinstance(column_type, DateTime):
        converted: Any = parse_date(value)
    elif isinstance(column_type, Integer):
        converted = parse_integer(value)
    elif isinstance(column_type, Float):
        converted = parse_number(value)
    else:
        converted = clean_string(value)
        if field_name == "current_status" and converted is not None:
            converted = converted.upper()
            if not is_valid_stage(converted):
                raise ValueError(f"current_status: unknown stage code {value!r}")

    if converted is None and clean_string(value) is not None:
        raise ValueError(f"{field_name}: could not convert {value!r}")
    return converted


class ManualEditService:
    def edit_fields(
        self,
        *,
        db: Session,
        container_number: str,
        changes: Mapping[str, Any],
        actor: str,
    ) -> Container:
        """
        Write human-supplied values and lock every edited field.

        Raises:
            RecordNotFoundError: If no container has this identity key.
            LockedFieldError: If a field is not editable.
            ValueError: If a value cannot be converted.
        """

        key = normalize_identity_key(container_number) or container_number
        unknown = sorted(name for name in changes if name not in EDITABLE_FIELDS)
        if unknown:
            raise LockedFieldError(message="Fields cannot be edited manually.", fields=unknown)
        typed = {name: coerce_manual_value(name, value) for name, value in changes.items()}

        repository = ContainerRepository(db)
        with identity_locks.hold(identity_lock_key("container", key)):
            container = repository.get_by_number(key, for_update=True)
            if container is None:
                raise RecordNotFoundError(key)
            previous = repository.write_manual_fields(container, typed)
            ActivityLogRepository(db).append(
                container_id=container.id,
                action=ActivityAction.MANUAL_EDIT,
                actor=actor,
                details={
                    "changes": {
                        name: {"before": _json_safe(previous.get(name)), "after": _json_safe(value)}
                        for name, value in typed.items()
                    },
                    "locked_fields": list(container.locked_fields),
                },
            )
            db.commit()

        logger.info("Manual edit on %s by %s locked %s", key, actor, sorted(typed))
        return container

    def unlock_fields(
        self,
        *,
        db: Session,
        container_number: str,
        fields: Iterable[str],
        actor: str,
    ) -> Container:
        key = normalize_identity_key(container_number) or container_number
        requested = list(fields)
        repository = ContainerRepository(db)
        with identity_locks.hold(identity_lock_key("container", key)):
            container = repository.get_by_number(key, for_update=True)
            if container is None:
                raise RecordNotFoundError(key)
            missing = sorted(set(requested) - set(container.locked_fields or ()))
            if missing:
                raise LockedFieldError(message="Fields are not locked.", fields=missing)
            removed = repository.unlock_fields(container, requested)
            ActivityLogRepository(db).append(
                container_id=container.id,
                action=ActivityAction.UNLOCK,
                actor=actor,
                details={"unlocked_fields": removed},
            )
            db.commit()

        logger.info("Unlocked %s on %s by %s", removed, key, actor)
        return container

    def edit_shipment_fields(
        self,
        *,
        db: Session,
        shipment_reference: str,
        changes: Mapping[str, Any],
        actor: str,
    ) -> Shipment:
        """
        Shipment counterpart of ``edit_fields``; edited fields are locked
        against later imports.
        """

        key = shipment_reference.strip()
        unknown = sorted(name for name in changes if name not in SHIPMENT_EDITABLE_FIELDS)
        if unknown:
            raise LockedFieldError(message="Fields cannot be edited manually.", fields=unknown)
        typed = {name: coerce_manual_value(name, value, model=Shipment) for name, value in changes.items()}

        repository = ShipmentRepository(db)
        with identity_locks.hold(identity_lock_key("shipment", key)):
            shipment = repository.get_by_reference(key, for_update=True)
            if shipment is None:
                raise RecordNotFoundError(key, kind="Shipment")
            previous = repository.write_manual_fields(shipment, typed)
            ActivityLogRepository(db).append(
                shipment_id=shipment.id,
                action=ActivityAction.MANUAL_EDIT,
                actor=actor,
                details={
                    "changes": {
                        name: {"before": previous.get(name), "after": value} for name, value in typed.items()
                    },
                    "locked_fields": list(shipment.locked_fields),
                },
            )
            db.commit()

        logger.info("Manual edit on shipment %s by %s locked %s", key, actor, sorted(typed))
        return shipment

    def unlock_shipment_fields(
        self,
        *,
        db: Session,
        shipment_reference: str,
        fields: Iterable[str],
        actor: str,
    ) -> Shipment:
        key = shipment_reference.strip()
        requested = list(fields)
        repository = ShipmentRepository(db)
        with identity_locks.hold(identity_lock_key("shipment", key)):
            shipment = repository.get_by_reference(key, for_update=True)
            if shipment is None:
                raise RecordNotFoundError(key, kind="Shipment")
            missing = sorted(set(requested) - set(shipment.locked_fields or ()))
            if missing:
                raise LockedFieldError(message="Fields are not locked.", fields=missing)
            removed = repository.unlock_fields(shipment, requested)
            ActivityLogRepository(db).append(
                shipment_id=shipment.id,
                action=ActivityAction.UNLOCK,
                actor=actor,
                details={"unlocked_fields": removed},
            )
            db.commit()

        logger.info("Unlocked %s on shipment %s by %s", removed, key, actor)
        return shipment



@lru_cache(maxsize=1)
def get_manual_edit_service() -> ManualEditService:
    return ManualEditService()
