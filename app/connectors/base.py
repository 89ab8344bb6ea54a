"""
app/connectors/base.py

Row source abstraction feeding the raw archive.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any


class RowSourceError(ValueError):
    """
    Raised when a source cannot be read into headers and rows.
    """


@dataclass(frozen=True)
class RowBatch:
    """
    One batch worth of source data: a header list and ordered rows.
    """

    source_name: str
    headers: tuple[str, ...]
    rows: list[dict[str, Any]] = field(default_factory=list)

    def limited(self, row_limit: int | None) -> "RowBatch":
        """
        Truncate to ``row_limit`` rows; zero or None keeps every row.
        """

        if not row_limit or row_limit <= 0 or row_limit >= len(self.rows):
            return self
        return RowBatch(source_name=self.source_name, headers=self.headers, rows=self.rows[:row_limit])


class RowSource(ABC):
    """
    Produces a ``RowBatch`` per read.
    """

    source_name: str

    @abstractmethod
    def read(self, *, row_limit: int | None = None) -> RowBatch:
        """
        Read headers and rows from the underlying source.
        """


class InMemoryRowSource(RowSource):
    """
    Rows already in memory; headers default to first-seen key order.
    """

    def __init__(
        self,
        *,
        source_name: str,
        rows: Sequence[Mapping[str, Any]],
        headers: Sequence[str] | None = None,
    ) -> None:
        self.source_name = source_name
        self._rows = [dict(row) for row in rows]
        if headers is None:
            seen: dict[str, None] = {}
            for row in self._rows:
                for key in row:
                    seen.setdefault(str(key), None)
            headers = list(seen)
        self._headers = tuple(str(header) for header in headers)

    def read(self, *, row_limit: int | None = None) -> RowBatch:
        batch = RowBatch(
            source_name=self.source_name,
            headers=self._headers,
            rows=[{header: row.get(header) for header in self._headers} for row in self._rows],
        )
        return batch.limited(row_limit)
