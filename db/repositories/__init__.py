"""
Repository layer exports.
"""

from db.repositories.import_batch_repository import ImportBatchRepository

__all__ = [
    "ImportBatchRepository",
]
