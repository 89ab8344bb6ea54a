"""
Shipment read, manual edit and lock endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.errors import LockedFieldError, RecordNotFoundError
from app.repositories.shipment_repository import ShipmentRepository
from app.schemas.container import ManualEditRequest
from app.schemas.shipment import ShipmentResponse
from app.services.manual_edit_service import ManualEditService, get_manual_edit_service
from db.models.shipment import SHIPMENT_DATA_FIELDS, Shipment
from db.session import get_db

router = APIRouter(prefix="/shipments", tags=["shipments"])


@router.get("/{shipment_reference}", response_model=ShipmentResponse)
def get_shipment(shipment_reference: str, db: Session = Depends(get_db)) -> ShipmentResponse:
    shipment = ShipmentRepository(db).get_by_reference(shipment_reference.strip())
    if shipment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Shipment not found: {shipment_reference}",
        )
    return _to_response(db, shipment)


@router.patch("/{shipment_reference}", response_model=ShipmentResponse)
def edit_shipment(
    shipment_reference: str,
    request: ManualEditRequest,
    db: Session = Depends(get_db),
    service: ManualEditService = Depends(get_manual_edit_service),
) -> ShipmentResponse:
    try:
        shipment = service.edit_shipment_fields(
            db=db,
            shipment_reference=shipment_reference,
            changes=request.changes,
            actor=request.actor,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except LockedFieldError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.to_dict()) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _to_response(db, shipment)


@router.delete("/{shipment_reference}/locks/{field_name}", response_model=ShipmentResponse)
def unlock_shipment_field(
    shipment_reference: str,
    field_name: str,
    actor: str = Query(default="api", min_length=1, max_length=128),
    db: Session = Depends(get_db),
    service: ManualEditService = Depends(get_manual_edit_service),
) -> ShipmentResponse:
    try:
        shipment = service.unlock_shipment_fields(
            db=db,
            shipment_reference=shipment_reference,
            fields=[field_name],
            actor=actor,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except LockedFieldError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_dict()) from exc
    return _to_response(db, shipment)


def _to_response(db: Session, shipment: Shipment) -> ShipmentResponse:
    return ShipmentResponse(
        shipment_reference=shipment.shipment_reference,
        fields={name: getattr(shipment, name) for name in SHIPMENT_DATA_FIELDS},
        locked_fields=list(shipment.locked_fields or []),
        container_numbers=ShipmentRepository(db).container_numbers(shipment),
        created_at=shipment.created_at,
        updated_at=shipment.updated_at,
    )
