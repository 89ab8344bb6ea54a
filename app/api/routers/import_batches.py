"""
Import batch endpoints: upload, status, quality, reprocess, cancel and reset.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response, UploadFile, status
from sqlalchemy.orm import Session

from app.api.dependencies import get_spreadsheet_upload
from app.connectors.base import RowSourceError
from app.errors import BatchInProgressError, BatchNotFoundError
from app.schemas.import_batch import (
    ImportBatchAcceptedResponse,
    ImportBatchCancelResponse,
    ImportBatchListResponse,
    ImportBatchQualityResponse,
    ImportBatchStatusResponse,
)
from app.services.import_orchestrator_service import (
    FastAPIBackgroundTaskExecutor,
    ImportOrchestratorService,
    get_import_orchestrator_service,
)
from app.services.quality_service import summarize_batch_quality
from db.models.import_batch import ImportBatch
from db.session import get_db

router = APIRouter(prefix="/import-batches", tags=["import-batches"])


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ImportBatchAcceptedResponse,
)
def upload_import_batch(
    background_tasks: BackgroundTasks,
    file: UploadFile = Depends(get_spreadsheet_upload),
    batch_id: str | None = Query(default=None, max_length=255, description="Optional batch key; re-using one is idempotent"),
    sheet_name: str | None = Query(default=None, description="Optional Excel sheet name"),
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestratorService = Depends(get_import_orchestrator_service),
) -> ImportBatchAcceptedResponse:
    try:
        batch = orchestrator.trigger_upload_import(
            db=db,
            executor=FastAPIBackgroundTaskExecutor(background_tasks),
            upload_file=file,
            batch_id=batch_id,
            sheet_name=sheet_name,
        )
    except RowSourceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    finally:
        file.file.close()

    return ImportBatchAcceptedResponse(
        batch_id=batch.id,
        source_name=batch.source_name,
        status=batch.status,
        row_count=batch.row_count,
        created_at=batch.created_at,
    )


@router.get("", response_model=ImportBatchListResponse)
def list_import_batches(
    status_filter: str | None = Query(default=None, alias="status", description="Optional status filter"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestratorService = Depends(get_import_orchestrator_service),
) -> ImportBatchListResponse:
    batches = orchestrator.list_batches(db=db, limit=limit, status=status_filter)
    return ImportBatchListResponse(batches=[_to_status_response(batch) for batch in batches])


@router.get("/{batch_id}", response_model=ImportBatchStatusResponse)
def get_import_batch(
    batch_id: str,
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestratorService = Depends(get_import_orchestrator_service),
) -> ImportBatchStatusResponse:
    batch = orchestrator.get_batch(db=db, batch_id=batch_id)
    if batch is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Import batch not found: {batch_id}",
        )
    return _to_status_response(batch)


@router.get("/{batch_id}/quality", response_model=ImportBatchQualityResponse)
def get_import_batch_quality(
    batch_id: str,
    db: Session = Depends(get_db),
) -> ImportBatchQualityResponse:
    try:
        report = summarize_batch_quality(db=db, batch_id=batch_id)
    except BatchNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ImportBatchQualityResponse.model_validate(report.to_dict())


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
def reset_import_batch(
    batch_id: str,
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestratorService = Depends(get_import_orchestrator_service),
) -> Response:
    try:
        orchestrator.reset_batch(db=db, batch_id=batch_id)
    except BatchNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BatchInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{batch_id}/reprocess",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ImportBatchStatusResponse,
)
def reprocess_import_batch(
    batch_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestratorService = Depends(get_import_orchestrator_service),
) -> ImportBatchStatusResponse:
    try:
        batch = orchestrator.trigger_reprocess(
            db=db,
            executor=FastAPIBackgroundTaskExecutor(background_tasks),
            batch_id=batch_id,
        )
    except BatchNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _to_status_response(batch)


@router.post("/{batch_id}/cancel", response_model=ImportBatchCancelResponse)
def cancel_import_batch(
    batch_id: str,
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestratorService = Depends(get_import_orchestrator_service),
) -> ImportBatchCancelResponse:
    if orchestrator.get_batch(db=db, batch_id=batch_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Import batch not found: {batch_id}",
        )
    requested = orchestrator.cancel_batch(batch_id)
    return ImportBatchCancelResponse(batch_id=batch_id, cancellation_requested=requested)


def _to_status_response(batch: ImportBatch) -> ImportBatchStatusResponse:
    return ImportBatchStatusResponse(
        batch_id=batch.id,
        source_name=batch.source_name,
        status=batch.status,
        row_count=batch.row_count,
        rows_processed=batch.rows_processed,
        rows_succeeded=batch.rows_succeeded,
        rows_failed=batch.rows_failed,
        rows_unmapped=batch.rows_unmapped,
        dictionary_version=batch.dictionary_version,
        created_at=batch.created_at,
        updated_at=batch.updated_at,
        started_at=batch.started_at,
        completed_at=batch.completed_at,
        analysis_payload=batch.analysis_payload,
        error_message=batch.error_message,
    )
