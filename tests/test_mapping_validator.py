from __future__ import annotations

import unittest

from app.validators.mapping_validator import MappingErrorDetail, MappingValidator, SchemaMappingError


class TestMappingValidator(unittest.TestCase):
    def setUp(self) -> None:
        self.validator = MappingValidator(
            canonical_fields=("container_number", "carrier", "pol", "pod", "eta"),
        )
        self.headers = ("Cntr No", "Shipping Line", "Port of Loading", "ETA")

    def test_require_headers_drops_blanks(self) -> None:
        self.assertEqual(self.validator.require_headers(["Cntr No", "", "  ", "ETA"]), ("Cntr No", "ETA"))

    def test_require_headers_raises_when_empty(self) -> None:
        with self.assertRaises(SchemaMappingError) as ctx:
            self.validator.require_headers(["", " "])

        self.assertEqual(ctx.exception.errors[0].code, "empty_headers")
        self.assertEqual(ctx.exception.to_dict()["errors"][0]["code"], "empty_headers")

    def test_sanitize_keeps_valid_entries_in_source_spelling(self) -> None:
        clean, errors = self.validator.sanitize(
            mapping={"container_number": "cntr no", "carrier": "SHIPPING-LINE"},
            source_headers=self.headers,
        )

        self.assertEqual(clean, {"container_number": "Cntr No", "carrier": "Shipping Line"})
        self.assertEqual(errors, [])

    def test_sanitize_reports_each_rejection(self) -> None:
        clean, errors = self.validator.sanitize(
            mapping={
                "vessel_flag": "Cntr No",
                "pod": "Port of Discharge",
                "pol": "Port of Loading",
                "eta": "Port of Loading",
            },
            source_headers=self.headers,
        )

        self.assertEqual(clean, {"pol": "Port of Loading"})
        self.assertEqual(
            [error.code for error in errors],
            ["invalid_canonical_field", "unknown_source_column", "duplicate_source_column"],
        )

    def test_reserved_headers_are_not_reused(self) -> None:
        clean, errors = self.validator.sanitize(
            mapping={"container_number": "Cntr No"},
            source_headers=self.headers,
            reserved_headers={"Cntr No"},
        )

        self.assertEqual(clean, {})
        self.assertEqual(errors[0].source_column, "Cntr No")

    def test_error_detail_serializes(self) -> None:
        detail = MappingErrorDetail(code="x", message="y", canonical_field="carrier")
        self.assertEqual(
            detail.to_dict(),
            {"code": "x", "message": "y", "canonical_field": "carrier", "source_column": None, "context": None},
        )


if __name__ == "__main__":
    unittest.main()
