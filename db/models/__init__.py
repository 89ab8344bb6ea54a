"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.container import Container
from db.models.import_batch import ImportBatch, ImportBatchStatus
from db.models.lifecycle_event import (
    ActivityAction,
    ActivityLog,
    LifecycleEvent,
    ProcessingLog,
    ProcessingStage,
)
from db.models.raw_row import RawRow
from db.models.shipment import Shipment, ShipmentContainer

__all__ = [
    "ActivityAction",
    "ActivityLog",
    "Container",
    "ImportBatch",
    "ImportBatchStatus",
    "LifecycleEvent",
    "ProcessingLog",
    "ProcessingStage",
    "RawRow",
    "Shipment",
    "ShipmentContainer",
]
