"""
app/validators/mapping_validator.py

Validation and sanitization of header mappings proposed by the oracle.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Collection, Mapping, Sequence

from app.dictionary.canonical_dictionary import normalize_header


@dataclass(frozen=True)
class MappingErrorDetail:
    """
    Structured mapping error detail.
    """

    code: str
    message: str
    canonical_field: str | None = None
    source_column: str | None = None
    context: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "canonical_field": self.canonical_field,
            "source_column": self.source_column,
            "context": self.context,
        }


class SchemaMappingError(ValueError):
    """
    Raised when a header list cannot be mapped at all.
    """

    def __init__(self, *, message: str, errors: Sequence[MappingErrorDetail]) -> None:
        super().__init__(message)
        self.message = message
        self.errors = tuple(errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "errors": [error.to_dict() for error in self.errors],
        }


class MappingValidator:
    """
    Filters a canonical-to-source mapping down to entries that are safe to use.
    """

    def __init__(self, *, canonical_fields: Collection[str]) -> None:
        self._canonical_set = set(canonical_fields)

    def require_headers(self, source_headers: Sequence[str]) -> tuple[str, ...]:
        headers = tuple(header for header in source_headers if header and str(header).strip())
        if not headers:
            raise SchemaMappingError(
                message="Source headers are empty; cannot resolve header mapping.",
                errors=[
                    MappingErrorDetail(
                        code="empty_headers",
                        message="No source headers were provided.",
                    )
                ],
            )
        return headers

    def sanitize(
        self,
        *,
        mapping: Mapping[str, str],
        source_headers: Sequence[str],
        reserved_headers: Collection[str] = (),
    ) -> tuple[dict[str, str], list[MappingErrorDetail]]:
        """
        Keep entries whose field is canonical and whose header exists.

        Headers are matched after normalization and returned in their source
        spelling. A header already claimed (or reserved) is not reused.
        """

        header_lookup = {normalize_header(header): header for header in source_headers}
        claimed = set(reserved_headers)
        clean: dict[str, str] = {}
        errors: list[MappingErrorDetail] = []

        for canonical_field, source_column in mapping.items():
            if canonical_field not in self._canonical_set:
                errors.append(
                    MappingErrorDetail(
                        code="invalid_canonical_field",
                        message="Unknown canonical field in mapping.",
                        canonical_field=canonical_field,
                        source_column=source_column,
                    )
                )
                continue

            matched = header_lookup.get(normalize_header(source_column))
            if matched is None:
                errors.append(
                    MappingErrorDetail(
                        code="unknown_source_column",
                        message="Mapped source column does not exist in the source headers.",
                        canonical_field=canonical_field,
                        source_column=source_column,
                        context={"source_headers": list(source_headers)},
                    )
                )
                continue

            if matched in claimed:
                errors.append(
                    MappingErrorDetail(
                        code="duplicate_source_column",
                        message="Source column is already mapped to another field.",
                        canonical_field=canonical_field,
                        source_column=matched,
                    )
                )
                continue

            clean[canonical_field] = matched
            claimed.add(matched)

        return clean, errors
