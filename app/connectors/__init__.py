"""
app/connectors package marker.
"""

from app.connectors.base import InMemoryRowSource, RowBatch, RowSource, RowSourceError
from app.connectors.spreadsheet_connector import SpreadsheetRowSource, json_safe_value

__all__ = [
    "InMemoryRowSource",
    "RowBatch",
    "RowSource",
    "RowSourceError",
    "SpreadsheetRowSource",
    "json_safe_value",
]
