"""
app/connectors/spreadsheet_connector.py

CSV and Excel row source backed by pandas.
"""

from __future__ import annotations

import csv
import logging
import math
from datetime import date, datetime
from pathlib import Path
from typing import Any

import pandas as pd

from app.connectors.base import RowBatch, RowSource, RowSourceError

logger = logging.getLogger(__name__)

_EXCEL_SUFFIXES = {".xlsx", ".xlsm", ".xls"}
_CSV_SUFFIXES = {".csv", ".txt"}


def json_safe_value(value: Any) -> Any:
    """
    Convert a pandas cell into a JSON-serializable scalar. Blank cells become None.
    """

    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        # numpy scalar
        return json_safe_value(value.item())
    if isinstance(value, str) and not value.strip():
        return None
    return value


class SpreadsheetRowSource(RowSource):
    """
    Reads the first (or named) sheet of a workbook, or a CSV file.

    Values keep their native cell types so Excel date serials and epoch
    numbers reach the field transformer untouched.
    """

    def __init__(self, path: Path, *, sheet_name: str | None = None, source_name: str | None = None) -> None:
        self._path = Path(path)
        self._sheet_name = sheet_name
        self.source_name = source_name or self._path.name

    def read(self, *, row_limit: int | None = None) -> RowBatch:
        frame = self._load_frame(row_limit=row_limit)
        headers = tuple(str(column).strip() for column in frame.columns)
        rows: list[dict[str, Any]] = []
        for record in frame.itertuples(index=False, name=None):
            values = {header: json_safe_value(cell) for header, cell in zip(headers, record)}
            if all(value is None for value in values.values()):
                continue
            rows.append(values)

        logger.info("Read %d row(s) and %d header(s) from %s", len(rows), len(headers), self._path)
        return RowBatch(source_name=self.source_name, headers=headers, rows=rows).limited(row_limit)

    def _load_frame(self, *, row_limit: int | None) -> pd.DataFrame:
        if not self._path.exists():
            raise RowSourceError(f"Source file not found: {self._path}")

        nrows = row_limit if row_limit and row_limit > 0 else None
        suffix = self._path.suffix.lower()
        try:
            if suffix in _EXCEL_SUFFIXES:
                return pd.read_excel(self._path, sheet_name=self._sheet_name or 0, nrows=nrows)
            if suffix in _CSV_SUFFIXES:
                return pd.read_csv(self._path, nrows=nrows, sep=None, engine="python")
        except (ValueError, OSError, csv.Error, pd.errors.ParserError) as exc:
            raise RowSourceError(f"Could not parse {self._path.name}: {exc}") from exc
        raise RowSourceError(f"Unsupported source format: {suffix or '<none>'}")
