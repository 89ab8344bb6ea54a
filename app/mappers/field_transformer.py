"""
app/mappers/field_transformer.py

Value-level conversion of raw spreadsheet cells into typed canonical values.

Every converter returns ``None`` for malformed input instead of raising, so a
bad cell never aborts its row.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Mapping

import pandas as pd

from app.dictionary.canonical_dictionary import CanonicalDictionary
from app.domain.reconciliation import HeaderMapping

EXCEL_SERIAL_MIN = 20000
EXCEL_SERIAL_MAX = 60000
EXCEL_EPOCH_OFFSET_DAYS = 25569
EPOCH_MILLIS_MIN = 946684800000
MIN_PLAUSIBLE_YEAR = 2000

_NUMERIC_NOISE = re.compile(r"[^0-9.\-]")
_NUMERIC_TEXT = re.compile(r"^-?\d+(\.\d+)?$")
_PLACEHOLDERS = frozenset({"", "n/a", "na", "null", "none", "nan", "nat", "-", "--", "tbd", "tba"})


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if value is pd.NaT:
        return True
    if isinstance(value, str) and value.strip().lower() in _PLACEHOLDERS:
        return True
    return False


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _plausible(value: datetime) -> datetime | None:
    return value if value.year >= MIN_PLAUSIBLE_YEAR else None


def _finite_float(value: Any) -> float | None:
    # Integers past the double range raise instead of returning inf.
    try:
        numeric = float(value)
    except (OverflowError, ValueError):
        return None
    return None if math.isnan(numeric) or math.isinf(numeric) else numeric


def parse_date(value: Any) -> datetime | None:
    """
    Parse Excel serials, epoch milliseconds, datetimes and date strings.
    """

    if _is_missing(value) or isinstance(value, bool):
        return None

    if isinstance(value, pd.Timestamp):
        return _plausible(_ensure_utc(value.to_pydatetime()))
    if isinstance(value, datetime):
        return _plausible(_ensure_utc(value))
    if isinstance(value, date):
        return _plausible(datetime(value.year, value.month, value.day, tzinfo=timezone.utc))

    if isinstance(value, str) and _NUMERIC_TEXT.match(value.strip()):
        value = _finite_float(value.strip())
        if value is None:
            return None

    if isinstance(value, (int, float)):
        numeric = _finite_float(value)
        if numeric is None:
            return None
        if EXCEL_SERIAL_MIN < numeric < EXCEL_SERIAL_MAX:
            epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
            return _plausible(epoch + timedelta(days=numeric - EXCEL_EPOCH_OFFSET_DAYS))
        if numeric > EPOCH_MILLIS_MIN:
            try:
                return _plausible(datetime.fromtimestamp(numeric / 1000.0, tz=timezone.utc))
            except (OverflowError, OSError, ValueError):
                return None
        return None

    text = str(value).strip()
    try:
        parsed = pd.to_datetime(text, errors="coerce", utc=True)
    except (ValueError, TypeError, OverflowError):
        return None
    if parsed is None or pd.isna(parsed):
        return None
    return _plausible(parsed.to_pydatetime())


def parse_number(value: Any) -> float | None:
    """
    Strip currency symbols, separators and units, then parse as float.
    """

    if _is_missing(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _finite_float(value)
    cleaned = _NUMERIC_NOISE.sub("", str(value))
    if not cleaned:
        return None
    return _finite_float(cleaned)


def parse_integer(value: Any) -> int | None:
    numeric = parse_number(value)
    if numeric is None:
        return None
    return int(round(numeric))


def clean_string(value: Any) -> str | None:
    if _is_missing(value) or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    text = str(value).strip()
    return text or None


class FieldTransformer:
    """
    Converts mapped raw values per the declared type of each canonical field.
    """

    def __init__(self, dictionary: CanonicalDictionary) -> None:
        self._dictionary = dictionary

    def transform_value(self, value: Any, field_type: str) -> Any:
        if field_type == "date":
            return parse_date(value)
        if field_type == "number":
            return parse_number(value)
        if field_type == "integer":
            return parse_integer(value)
        return clean_string(value)

    def transform_field(self, field_name: str, value: Any) -> Any:
        return self.transform_value(value, self._dictionary.field_type(field_name))

    def transform_row(
        self,
        raw_row: Mapping[str, Any],
        mapping: HeaderMapping,
    ) -> dict[str, Any]:
        """
        Return {canonical_field: typed value} for every mapped field.
        """

        return {
            canonical_field: self.transform_field(canonical_field, raw_row.get(source_header))
            for canonical_field, source_header in mapping.canonical_to_source.items()
        }
