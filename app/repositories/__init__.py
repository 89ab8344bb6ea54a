"""
app/repositories package marker.
"""

from app.repositories.container_repository import ContainerRepository, container_snapshot, strip_locked
from app.repositories.event_log_repository import (
    ActivityLogRepository,
    LifecycleEventRepository,
    ProcessingLogRepository,
)
from app.repositories.raw_archive_repository import RawArchiveRepository
from app.repositories.shipment_repository import ShipmentRepository

__all__ = [
    "ActivityLogRepository",
    "ContainerRepository",
    "LifecycleEventRepository",
    "ProcessingLogRepository",
    "RawArchiveRepository",
    "ShipmentRepository",
    "container_snapshot",
    "strip_locked",
]
