"""
app/repositories/event_log_repository.py

Append-only stores: lifecycle timeline, stage processing log, activity log.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.models.lifecycle_event import ActivityLog, LifecycleEvent, ProcessingLog


class LifecycleEventRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def append(
        self,
        *,
        container_id: uuid.UUID,
        stage_code: str,
        event_time: datetime,
        location: str | None,
        source: str,
        import_batch_id: str | None = None,
        raw_row_id: uuid.UUID | None = None,
    ) -> LifecycleEvent | None:
        """
        Add a timeline entry unless the container already reached this stage.
        Returns None for the duplicate case.
        """

        stmt = select(LifecycleEvent.id).where(
            LifecycleEvent.container_id == container_id,
            LifecycleEvent.stage_code == stage_code,
        )
        if self._session.scalars(stmt).first() is not None:
            return None

        event = LifecycleEvent(
            container_id=container_id,
            stage_code=stage_code,
            event_time=event_time,
            location=location,
            source=source,
            import_batch_id=import_batch_id,
            raw_row_id=raw_row_id,
        )
        self._session.add(event)
        self._session.flush()
        return event

    def list_for_container(self, container_id: uuid.UUID) -> list[LifecycleEvent]:
        stmt = (
            select(LifecycleEvent)
            .where(LifecycleEvent.container_id == container_id)
            .order_by(LifecycleEvent.event_time.asc(), LifecycleEvent.created_at.asc())
        )
        return list(self._session.scalars(stmt).all())


class ProcessingLogRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def append(
        self,
        *,
        stage: str,
        status: str,
        import_batch_id: str | None = None,
        container_number: str | None = None,
        confidence: float | None = None,
        output: dict[str, Any] | None = None,
        dictionary_version: str | None = None,
    ) -> ProcessingLog:
        entry = ProcessingLog(
            import_batch_id=import_batch_id,
            container_number=container_number,
            stage=stage,
            status=status,
            confidence=confidence,
            output=output,
            dictionary_version=dictionary_version,
        )
        self._session.add(entry)
        return entry

    def list_entries(
        self,
        *,
        import_batch_id: str | None = None,
        container_number: str | None = None,
        stage: str | None = None,
    ) -> list[ProcessingLog]:
        stmt = select(ProcessingLog)
        if import_batch_id is not None:
            stmt = stmt.where(ProcessingLog.import_batch_id == import_batch_id)
        if container_number is not None:
            stmt = stmt.where(ProcessingLog.container_number == container_number)
        if stage is not None:
            stmt = stmt.where(ProcessingLog.stage == stage)
        return list(self._session.scalars(stmt.order_by(ProcessingLog.created_at.asc())).all())


class ActivityLogRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def append(
        self,
        *,
        action: str,
        actor: str,
        container_id: uuid.UUID | None = None,
        shipment_id: uuid.UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> ActivityLog:
        if container_id is None and shipment_id is None:
            raise ValueError("activity entry needs a container or a shipment")
        entry = ActivityLog(
            container_id=container_id,
            shipment_id=shipment_id,
            action=action,
            actor=actor,
            details=details,
        )
        self._session.add(entry)
        return entry

    def list_for_container(self, container_id: uuid.UUID) -> list[ActivityLog]:
        stmt = (
            select(ActivityLog)
            .where(ActivityLog.container_id == container_id)
            .order_by(ActivityLog.created_at.asc())
        )
        return list(self._session.scalars(stmt).all())

    def list_for_shipment(self, shipment_id: uuid.UUID) -> list[ActivityLog]:
        stmt = (
            select(ActivityLog)
            .where(ActivityLog.shipment_id == shipment_id)
            .order_by(ActivityLog.created_at.asc())
        )
        return list(self._session.scalars(stmt).all())
