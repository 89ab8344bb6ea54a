"""
app/schemas package marker.
"""

from app.schemas.container import (
    ContainerListResponse,
    ContainerResponse,
    LifecycleEventResponse,
    ManualEditRequest,
)
from app.schemas.dictionary import DictionaryFieldResponse, DictionaryResponse
from app.schemas.import_batch import (
    ImportBatchAcceptedResponse,
    ImportBatchCancelResponse,
    ImportBatchListResponse,
    ImportBatchQualityResponse,
    ImportBatchStatusResponse,
    QualityTiersResponse,
)
from app.schemas.shipment import ShipmentResponse

__all__ = [
    "ContainerListResponse",
    "ContainerResponse",
    "DictionaryFieldResponse",
    "DictionaryResponse",
    "ImportBatchAcceptedResponse",
    "ImportBatchCancelResponse",
    "ImportBatchListResponse",
    "ImportBatchQualityResponse",
    "ImportBatchStatusResponse",
    "LifecycleEventResponse",
    "ManualEditRequest",
    "QualityTiersResponse",
    "ShipmentResponse",
]
