"""
app/api/routers package marker.
"""

from app.api.routers.containers import router as containers_router
from app.api.routers.dictionary import router as dictionary_router
from app.api.routers.import_batches import router as import_batches_router
from app.api.routers.shipments import router as shipments_router

__all__ = [
    "containers_router",
    "dictionary_router",
    "import_batches_router",
    "shipments_router",
]
