"""
tests/test_field_transformer.py

Pure unit tests for identity keys and value conversion. No database.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.dictionary.canonical_dictionary import CanonicalDictionary
from app.domain.reconciliation import HeaderMapping
from app.mappers.field_transformer import (
    FieldTransformer,
    clean_string,
    parse_date,
    parse_integer,
    parse_number,
)
from app.mappers.identity import is_valid_identity_key, normalize_identity_key


# ---------------------------------------------------------------------------
# Identity keys
# ---------------------------------------------------------------------------


class TestIdentityKey:
    def test_strips_separators_and_uppercases(self) -> None:
        assert normalize_identity_key("msku-123 4567") == "MSKU1234567"

    def test_integer_like_float_loses_decimal(self) -> None:
        assert normalize_identity_key(1234567.0) == "1234567"

    @pytest.mark.parametrize("value", [None, "", " - ", float("nan"), True])
    def test_blank_values_have_no_key(self, value: object) -> None:
        assert normalize_identity_key(value) is None

    def test_minimum_length(self) -> None:
        assert is_valid_identity_key("MSKU", min_length=4)
        assert not is_valid_identity_key("MSK", min_length=4)
        assert not is_valid_identity_key(None)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


class TestParseDate:
    def test_excel_serial(self) -> None:
        assert parse_date(45000) == datetime(2023, 3, 15, tzinfo=timezone.utc)

    def test_excel_serial_as_text(self) -> None:
        assert parse_date("45000") == datetime(2023, 3, 15, tzinfo=timezone.utc)

    def test_epoch_milliseconds(self) -> None:
        assert parse_date(1700000000000) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_iso_string_is_utc(self) -> None:
        parsed = parse_date("2026-11-02")
        assert parsed == datetime(2026, 11, 2, tzinfo=timezone.utc)

    def test_naive_datetime_gets_utc(self) -> None:
        assert parse_date(datetime(2026, 1, 5, 8, 30)) == datetime(2026, 1, 5, 8, 30, tzinfo=timezone.utc)

    def test_years_before_2000_are_dropped(self) -> None:
        assert parse_date("1999-12-31") is None
        assert parse_date(datetime(1970, 1, 1)) is None

    @pytest.mark.parametrize("value", [None, "", "n/a", "TBD", "not a date", 1234, True])
    def test_unparseable_values_are_none(self, value: object) -> None:
        assert parse_date(value) is None

    @pytest.mark.parametrize("value", [10**400, -(10**400), "9" * 400, float("inf")])
    def test_out_of_range_numbers_are_none(self, value: object) -> None:
        assert parse_date(value) is None


# ---------------------------------------------------------------------------
# Numbers and strings
# ---------------------------------------------------------------------------


class TestParseNumber:
    def test_strips_units_and_separators(self) -> None:
        assert parse_number("12,500.5 KG") == pytest.approx(12500.5)

    def test_currency_symbol(self) -> None:
        assert parse_number("$1,200") == pytest.approx(1200.0)

    def test_placeholder_is_none(self) -> None:
        assert parse_number("N/A") is None
        assert parse_number("kg") is None

    def test_integer_rounds(self) -> None:
        assert parse_integer("41.6 pcs") == 42
        assert parse_integer(None) is None

    def test_integers_past_float_range_are_none(self) -> None:
        assert parse_number(10**400) is None
        assert parse_integer(10**400) is None
        assert parse_number("1" * 400) is None


class TestCleanString:
    def test_trims(self) -> None:
        assert clean_string("  Maersk  ") == "Maersk"

    def test_integer_like_float(self) -> None:
        assert clean_string(40.0) == "40"

    def test_placeholder(self) -> None:
        assert clean_string("null") is None
        assert clean_string("   ") is None


# ---------------------------------------------------------------------------
# Row transform
# ---------------------------------------------------------------------------


class TestFieldTransformer:
    def test_transform_row_uses_declared_types(self, dictionary: CanonicalDictionary) -> None:
        mapping = HeaderMapping(
            canonical_to_source={
                "container_number": "Cntr",
                "eta": "ETA",
                "gross_weight": "Weight",
                "pieces": "Pcs",
                "carrier": "Line",
            },
            source_headers=("Cntr", "ETA", "Weight", "Pcs", "Line"),
            field_confidence={},
            confidence=1.0,
            strategy="dictionary",
            dictionary_version=dictionary.version,
        )
        raw = {"Cntr": "msku1234567", "ETA": 45000, "Weight": "1,000 kg", "Pcs": "12", "Line": " MSC "}

        values = FieldTransformer(dictionary).transform_row(raw, mapping)

        assert values["eta"] == datetime(2023, 3, 15, tzinfo=timezone.utc)
        assert values["gross_weight"] == pytest.approx(1000.0)
        assert values["pieces"] == 12
        assert values["carrier"] == "MSC"
        assert values["container_number"] == "msku1234567"

    def test_missing_source_value_is_none(self, dictionary: CanonicalDictionary) -> None:
        mapping = HeaderMapping(
            canonical_to_source={"eta": "ETA"},
            source_headers=("ETA",),
            field_confidence={},
            confidence=0.0,
            strategy="dictionary",
            dictionary_version=dictionary.version,
        )
        assert FieldTransformer(dictionary).transform_row({}, mapping) == {"eta": None}
