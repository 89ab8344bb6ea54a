"""
app/dictionary/dictionary_updater.py

The single mutation path for the canonical dictionary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from app.dictionary.canonical_dictionary import (
    CanonicalDictionary,
    FieldDefinition,
    PendingSuggestion,
    bump_patch_version,
    normalize_header,
)
from oracle.schema import FieldSuggestion

logger = logging.getLogger(__name__)

PENDING_CONFIDENCE_FLOOR = 0.70


@dataclass(frozen=True)
class DictionaryUpdate:
    """
    Result of applying suggestions. ``dictionary`` is the input snapshot
    when nothing was accepted.
    """

    dictionary: CanonicalDictionary
    synonyms_added: int = 0
    pending_added: int = 0
    discarded: int = 0
    details: tuple[str, ...] = field(default_factory=tuple)

    @property
    def changed(self) -> bool:
        return self.synonyms_added > 0 or self.pending_added > 0


def apply_suggestions(
    dictionary: CanonicalDictionary,
    suggestions: Sequence[FieldSuggestion],
    *,
    now: datetime | None = None,
) -> DictionaryUpdate:
    """
    Apply oracle field suggestions and return a new versioned snapshot.

    - ``ADD_SYNONYM`` at or above the field's confidence threshold becomes a synonym.
    - Anything at or above the pending floor is queued for review.
    - Everything else is discarded.
    """

    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    fields: dict[str, FieldDefinition] = {definition.name: definition for definition in dictionary.fields}
    known_synonyms = dict(dictionary.synonym_index)
    pending = list(dictionary.pending_fields)
    pending_keys = {(normalize_header(item.header), item.canonical_field) for item in pending}

    synonyms_added = 0
    pending_added = 0
    discarded = 0
    details: list[str] = []

    for suggestion in suggestions:
        header = suggestion.unmapped_header.strip()
        normalized = normalize_header(header)
        if not normalized:
            discarded += 1
            continue

        definition = fields.get(suggestion.canonical_field)
        threshold = definition.threshold if definition is not None else 1.0

        if (
            suggestion.action == "ADD_SYNONYM"
            and definition is not None
            and suggestion.confidence >= threshold
        ):
            owner = known_synonyms.get(normalized)
            if owner is not None:
                details.append(f"Skipped '{header}': already mapped to {owner}")
                continue
            fields[definition.name] = definition.with_synonym(header)
            known_synonyms[normalized] = definition.name
            synonyms_added += 1
            details.append(f"Added '{header}' to {definition.name}")
            continue

        if suggestion.confidence >= PENDING_CONFIDENCE_FLOOR:
            key = (normalized, suggestion.canonical_field)
            if key in pending_keys:
                continue
            pending.append(
                PendingSuggestion(
                    header=header,
                    canonical_field=suggestion.canonical_field,
                    confidence=suggestion.confidence,
                    suggested_at=timestamp,
                    reasoning=suggestion.reasoning,
                )
            )
            pending_keys.add(key)
            pending_added += 1
            details.append(f"Queued '{header}' -> {suggestion.canonical_field} for review")
            continue

        discarded += 1

    if synonyms_added == 0 and pending_added == 0:
        return DictionaryUpdate(dictionary=dictionary, discarded=discarded, details=tuple(details))

    updated = CanonicalDictionary(
        version=bump_patch_version(dictionary.version),
        fields=tuple(fields[definition.name] for definition in dictionary.fields),
        pending_fields=tuple(pending),
        business_units=dictionary.business_units,
        last_updated=timestamp[:10],
        extra=dictionary.extra,
    )
    logger.info(
        "Dictionary updated %s -> %s (synonyms=%d pending=%d discarded=%d)",
        dictionary.version,
        updated.version,
        synonyms_added,
        pending_added,
        discarded,
    )
    return DictionaryUpdate(
        dictionary=updated,
        synonyms_added=synonyms_added,
        pending_added=pending_added,
        discarded=discarded,
        details=tuple(details),
    )
