"""
Container read, manual edit and lock endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.errors import LockedFieldError, RecordNotFoundError
from app.mappers.identity import normalize_identity_key
from app.repositories.container_repository import ContainerRepository, container_snapshot
from app.repositories.event_log_repository import LifecycleEventRepository
from app.repositories.shipment_repository import ShipmentRepository
from app.schemas.container import (
    ContainerListResponse,
    ContainerResponse,
    LifecycleEventResponse,
    ManualEditRequest,
)
from app.services.manual_edit_service import ManualEditService, get_manual_edit_service
from db.models.container import Container
from db.session import get_db

router = APIRouter(prefix="/containers", tags=["containers"])


@router.get("", response_model=ContainerListResponse)
def list_containers(
    has_exception: bool | None = Query(default=None),
    business_unit: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> ContainerListResponse:
    containers = ContainerRepository(db).list_containers(
        limit=limit,
        has_exception=has_exception,
        business_unit=business_unit,
    )
    return ContainerListResponse(containers=[_to_response(db, container) for container in containers])


@router.get("/{container_number}", response_model=ContainerResponse)
def get_container(container_number: str, db: Session = Depends(get_db)) -> ContainerResponse:
    key = normalize_identity_key(container_number) or container_number
    container = ContainerRepository(db).get_by_number(key)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Container not found: {key}",
        )
    return _to_response(db, container)


@router.patch("/{container_number}", response_model=ContainerResponse)
def edit_container(
    container_number: str,
    request: ManualEditRequest,
    db: Session = Depends(get_db),
    service: ManualEditService = Depends(get_manual_edit_service),
) -> ContainerResponse:
    try:
        container = service.edit_fields(
            db=db,
            container_number=container_number,
            changes=request.changes,
            actor=request.actor,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except LockedFieldError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.to_dict()) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _to_response(db, container)


@router.delete("/{container_number}/locks/{field_name}", response_model=ContainerResponse)
def unlock_container_field(
    container_number: str,
    field_name: str,
    actor: str = Query(default="api", min_length=1, max_length=128),
    db: Session = Depends(get_db),
    service: ManualEditService = Depends(get_manual_edit_service),
) -> ContainerResponse:
    try:
        container = service.unlock_fields(
            db=db,
            container_number=container_number,
            fields=[field_name],
            actor=actor,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except LockedFieldError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_dict()) from exc
    return _to_response(db, container)


def _to_response(db: Session, container: Container) -> ContainerResponse:
    snapshot = container_snapshot(container)
    snapshot.pop("container_number", None)
    events = LifecycleEventRepository(db).list_for_container(container.id)
    return ContainerResponse(
        container_number=container.container_number,
        fields=snapshot,
        locked_fields=list(container.locked_fields or []),
        metadata=dict(container.metadata_json or {}),
        shipment_references=ShipmentRepository(db).references_for_container(container),
        events=[
            LifecycleEventResponse(
                stage_code=event.stage_code,
                event_time=event.event_time,
                location=event.location,
                source=event.source,
                import_batch_id=event.import_batch_id,
            )
            for event in events
        ],
        last_import_batch_id=container.last_import_batch_id,
        created_at=container.created_at,
        updated_at=container.updated_at,
    )
