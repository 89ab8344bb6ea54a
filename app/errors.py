"""
app/errors.py

Domain exception hierarchy for the reconciliation pipeline.
"""

from __future__ import annotations

from typing import Any


class ReconciliationError(Exception):
    """
    Base class for all pipeline errors.
    """


class ConfigurationError(ReconciliationError):
    """
    Raised at stage start when required configuration is missing or invalid.
    """


class DictionaryError(ConfigurationError):
    """
    Raised when the canonical dictionary document cannot be loaded or saved.
    """


class BatchNotFoundError(ReconciliationError):
    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Import batch not found: {batch_id}")
        self.batch_id = batch_id


class BatchCancelledError(ReconciliationError):
    """
    Raised when a batch is aborted between rows.
    """

    def __init__(self, batch_id: str, rows_completed: int) -> None:
        super().__init__(f"Import batch {batch_id} cancelled after {rows_completed} row(s).")
        self.batch_id = batch_id
        self.rows_completed = rows_completed


class RecordNotFoundError(ReconciliationError):
    def __init__(self, key: str, *, kind: str = "Container") -> None:
        super().__init__(f"{kind} not found: {key}")
        self.key = key
        self.kind = kind


class BatchInProgressError(ReconciliationError):
    """
    Raised when an operation needs a batch that is not currently processing.
    """

    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Import batch is still processing: {batch_id}")
        self.batch_id = batch_id


class LockedFieldError(ReconciliationError):
    """
    Raised when a manual edit targets a field that cannot be edited or locked.
    """

    def __init__(self, *, message: str, fields: list[str]) -> None:
        super().__init__(message)
        self.message = message
        self.fields = fields

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "fields": list(self.fields)}
