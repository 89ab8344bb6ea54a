"""
app/dictionary/canonical_dictionary.py

Immutable, versioned snapshot of the canonical field dictionary.

A snapshot is loaded once per stage invocation and passed by reference.
Changes go through ``app.dictionary.dictionary_updater.apply_suggestions``,
which returns a new snapshot with a bumped version.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Mapping

from app.errors import DictionaryError

DEFAULT_CONFIDENCE_THRESHOLD = 0.90
FIELD_TYPES = frozenset({"identity", "string", "date", "number", "integer", "status"})
FIELD_TARGETS = frozenset({"container", "shipment", "event"})
IDENTITY_FIELD = "container_number"

_VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


def normalize_header(header: str) -> str:
    """
    Normalize a column name for flexible matching.
    """

    return "".join(ch for ch in str(header).strip().lower() if ch.isalnum())


def bump_patch_version(version: str) -> str:
    match = _VERSION_PATTERN.match(version.strip())
    if match is None:
        raise DictionaryError(f"Dictionary version is not semantic (x.y.z): {version!r}")
    major, minor, patch = (int(part) for part in match.groups())
    return f"{major}.{minor}.{patch + 1}"


@dataclass(frozen=True)
class FieldDefinition:
    """
    One canonical field with its accepted header synonyms.

    ``synonym_groups`` is set when the document groups synonyms by sub-key;
    ``synonyms`` is always the flattened list.
    """

    name: str
    required: bool
    field_type: str = "string"
    target: str = "container"
    synonyms: tuple[str, ...] = ()
    synonym_groups: tuple[tuple[str, tuple[str, ...]], ...] | None = None
    confidence_threshold: float | None = None
    description: str | None = None

    @property
    def threshold(self) -> float:
        if self.confidence_threshold is None:
            return DEFAULT_CONFIDENCE_THRESHOLD
        return self.confidence_threshold

    def with_synonym(self, synonym: str) -> "FieldDefinition":
        if self.synonym_groups is None:
            return FieldDefinition(
                name=self.name,
                required=self.required,
                field_type=self.field_type,
                target=self.target,
                synonyms=(*self.synonyms, synonym),
                confidence_threshold=self.confidence_threshold,
                description=self.description,
            )

        groups = dict(self.synonym_groups)
        groups["learned"] = (*groups.get("learned", ()), synonym)
        return FieldDefinition(
            name=self.name,
            required=self.required,
            field_type=self.field_type,
            target=self.target,
            synonyms=(*self.synonyms, synonym),
            synonym_groups=tuple(groups.items()),
            confidence_threshold=self.confidence_threshold,
            description=self.description,
        )

    def to_document(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"type": self.field_type, "target": self.target}
        if self.description:
            entry["description"] = self.description
        if self.confidence_threshold is not None:
            entry["confidence_threshold"] = self.confidence_threshold
        if self.synonym_groups is not None:
            entry["header_synonyms"] = {group: list(values) for group, values in self.synonym_groups}
        else:
            entry["header_synonyms"] = list(self.synonyms)
        return entry


@dataclass(frozen=True)
class PendingSuggestion:
    header: str
    canonical_field: str
    confidence: float
    suggested_at: str
    reasoning: str | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "header": self.header,
            "canonical_field": self.canonical_field,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "suggested_at": self.suggested_at,
        }


@dataclass(frozen=True)
class CanonicalDictionary:
    """
    Versioned mapping of canonical fields to synonyms and thresholds.
    """

    version: str
    fields: tuple[FieldDefinition, ...]
    pending_fields: tuple[PendingSuggestion, ...] = ()
    business_units: tuple[tuple[str, tuple[str, ...]], ...] = ()
    last_updated: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @cached_property
    def field_index(self) -> dict[str, FieldDefinition]:
        return {definition.name: definition for definition in self.fields}

    @cached_property
    def synonym_index(self) -> dict[str, str]:
        """
        Normalized synonym (or field name) to canonical field name.
        The first field declaring a synonym keeps it.
        """

        index: dict[str, str] = {}
        for definition in self.fields:
            for candidate in (definition.name, *definition.synonyms):
                normalized = normalize_header(candidate)
                if normalized and normalized not in index:
                    index[normalized] = definition.name
        return index

    @property
    def required_fields(self) -> tuple[str, ...]:
        return tuple(definition.name for definition in self.fields if definition.required)

    @property
    def optional_fields(self) -> tuple[str, ...]:
        return tuple(definition.name for definition in self.fields if not definition.required)

    def get(self, name: str) -> FieldDefinition | None:
        return self.field_index.get(name)

    def field_type(self, name: str) -> str:
        definition = self.field_index.get(name)
        return definition.field_type if definition is not None else "string"

    def lookup_header(self, header: str) -> str | None:
        return self.synonym_index.get(normalize_header(header))

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = dict(self.extra)
        document["version"] = self.version
        document["last_updated"] = self.last_updated
        document["required_fields"] = {
            definition.name: definition.to_document() for definition in self.fields if definition.required
        }
        document["optional_fields"] = {
            definition.name: definition.to_document() for definition in self.fields if not definition.required
        }
        document["pending_fields"] = [pending.to_document() for pending in self.pending_fields]
        document["business_units"] = {name: list(keywords) for name, keywords in self.business_units}
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "CanonicalDictionary":
        if not isinstance(document, Mapping):
            raise DictionaryError("Dictionary document must be a mapping at the top level.")

        version = str(document.get("version") or "").strip()
        if not _VERSION_PATTERN.match(version):
            raise DictionaryError(f"Dictionary version is missing or not semantic: {version!r}")

        fields: list[FieldDefinition] = []
        seen: set[str] = set()
        for section, required in (("required_fields", True), ("optional_fields", False)):
            entries = document.get(section) or {}
            if not isinstance(entries, Mapping):
                raise DictionaryError(f"Dictionary section '{section}' must be a mapping.")
            for name, entry in entries.items():
                if name in seen:
                    raise DictionaryError(f"Canonical field declared twice: {name}")
                seen.add(name)
                fields.append(_parse_field(str(name), entry or {}, required=required))

        if IDENTITY_FIELD not in seen:
            raise DictionaryError(f"Dictionary must declare the identity field '{IDENTITY_FIELD}'.")

        pending = tuple(
            _parse_pending(item) for item in (document.get("pending_fields") or []) if isinstance(item, Mapping)
        )

        raw_units = document.get("business_units") or {}
        business_units = tuple(
            (str(name), tuple(str(keyword).upper() for keyword in (keywords or [])))
            for name, keywords in raw_units.items()
        ) if isinstance(raw_units, Mapping) else ()

        known_keys = {
            "version",
            "last_updated",
            "required_fields",
            "optional_fields",
            "pending_fields",
            "business_units",
        }
        extra = {key: value for key, value in document.items() if key not in known_keys}
        last_updated = document.get("last_updated")
        return cls(
            version=version,
            fields=tuple(fields),
            pending_fields=pending,
            business_units=business_units,
            last_updated=str(last_updated) if last_updated else None,
            extra=extra,
        )


def _parse_field(name: str, entry: Mapping[str, Any], *, required: bool) -> FieldDefinition:
    if not isinstance(entry, Mapping):
        raise DictionaryError(f"Field entry for '{name}' must be a mapping.")

    field_type = str(entry.get("type") or "string").strip().lower()
    if field_type not in FIELD_TYPES:
        raise DictionaryError(f"Field '{name}' has unknown type '{field_type}'.")
    target = str(entry.get("target") or "container").strip().lower()
    if target not in FIELD_TARGETS:
        raise DictionaryError(f"Field '{name}' has unknown target '{target}'.")

    raw_synonyms = entry.get("header_synonyms") or []
    groups: tuple[tuple[str, tuple[str, ...]], ...] | None = None
    if isinstance(raw_synonyms, Mapping):
        groups = tuple(
            (str(group), tuple(str(value) for value in (values or [])))
            for group, values in raw_synonyms.items()
        )
        synonyms = tuple(value for _, values in groups for value in values)
    elif isinstance(raw_synonyms, (list, tuple)):
        synonyms = tuple(str(value) for value in raw_synonyms)
    else:
        raise DictionaryError(f"Field '{name}' header_synonyms must be a list or mapping.")

    threshold = entry.get("confidence_threshold")
    try:
        confidence_threshold = float(threshold) if threshold is not None else None
    except (TypeError, ValueError) as exc:
        raise DictionaryError(f"Field '{name}' confidence_threshold is not numeric.") from exc

    return FieldDefinition(
        name=name,
        required=required,
        field_type=field_type,
        target=target,
        synonyms=synonyms,
        synonym_groups=groups,
        confidence_threshold=confidence_threshold,
        description=entry.get("description"),
    )


def _parse_pending(item: Mapping[str, Any]) -> PendingSuggestion:
    try:
        confidence = float(item.get("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    return PendingSuggestion(
        header=str(item.get("header") or ""),
        canonical_field=str(item.get("canonical_field") or ""),
        confidence=confidence,
        suggested_at=str(item.get("suggested_at") or ""),
        reasoning=item.get("reasoning"),
    )
