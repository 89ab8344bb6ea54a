"""
app/mappers/header_mapper.py

Header-to-canonical-field resolution.

Dictionary synonyms are matched first. Headers left over go to the oracle
when it is model-backed; otherwise (or when the oracle fails) a fuzzy
keyword heuristic fills the gaps.
"""

from __future__ import annotations

import logging
import threading
from difflib import SequenceMatcher
from statistics import fmean
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from app.dictionary.canonical_dictionary import IDENTITY_FIELD, CanonicalDictionary, normalize_header
from app.domain.reconciliation import HeaderMapping, UnmappedFieldInsight
from app.logging_utils import log_event
from app.validators.mapping_validator import MappingValidator
from oracle.errors import OracleError

if TYPE_CHECKING:
    from oracle.client import ClassificationOracle

logger = logging.getLogger(__name__)

DEFAULT_FUZZY_THRESHOLD = 0.84
LOW_CONFIDENCE = 0.5
REVIEW_CONFIDENCE = 0.9

STRATEGY_DICTIONARY = "dictionary"
STRATEGY_ORACLE = "oracle"
STRATEGY_HEURISTIC = "heuristic"
STRATEGY_FALLBACK = "heuristic_fallback"


def dictionary_matches(
    headers: Sequence[str],
    dictionary: CanonicalDictionary,
) -> dict[str, str]:
    """
    Exact normalized matches against field names and synonyms.
    The first header claiming a field wins.
    """

    resolved: dict[str, str] = {}
    for header in headers:
        canonical = dictionary.lookup_header(header)
        if canonical is not None and canonical not in resolved:
            resolved[canonical] = header
    return resolved


def fuzzy_matches(
    headers: Sequence[str],
    dictionary: CanonicalDictionary,
    *,
    already_mapped: Mapping[str, str],
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> dict[str, tuple[str, float]]:
    """
    Best fuzzy header per still-unmapped field: {field: (header, score)}.
    """

    used_headers = set(already_mapped.values())
    normalized_headers = {normalize_header(header): header for header in headers if normalize_header(header)}
    resolved: dict[str, tuple[str, float]] = {}

    for definition in dictionary.fields:
        if definition.name in already_mapped:
            continue
        candidates = [
            normalize_header(item)
            for item in (definition.name, *definition.synonyms)
            if len(normalize_header(item)) >= 3
        ]
        if not candidates:
            continue

        best_header: str | None = None
        best_score = 0.0
        for header_norm, header_raw in normalized_headers.items():
            if header_raw in used_headers:
                continue
            for candidate in candidates:
                score = SequenceMatcher(None, header_norm, candidate).ratio()
                if len(candidate) >= 4 and (header_norm in candidate or candidate in header_norm):
                    score = max(score, 0.9)
                if score > best_score:
                    best_score = score
                    best_header = header_raw

        if best_header is not None and best_score >= fuzzy_threshold:
            resolved[definition.name] = (best_header, round(best_score, 4))
            used_headers.add(best_header)
    return resolved


def overall_confidence(mapping: Mapping[str, str], field_confidence: Mapping[str, float]) -> float:
    if IDENTITY_FIELD not in mapping:
        return 0.0
    values = [field_confidence.get(name, 0.0) for name in mapping]
    return round(fmean(values), 4) if values else 0.0


def heuristic_header_mapping(
    headers: Sequence[str],
    dictionary: CanonicalDictionary,
    *,
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> HeaderMapping:
    """
    Deterministic mapping using only the dictionary and fuzzy matching.
    """

    source_headers = tuple(headers)
    resolved = dictionary_matches(source_headers, dictionary)
    field_confidence = {name: 1.0 for name in resolved}

    fuzzy = fuzzy_matches(source_headers, dictionary, already_mapped=resolved, fuzzy_threshold=fuzzy_threshold)
    for name, (header, score) in fuzzy.items():
        resolved[name] = header
        field_confidence[name] = score

    strategy = STRATEGY_DICTIONARY if not fuzzy and _all_claimed(source_headers, resolved) else STRATEGY_HEURISTIC
    return _build_mapping(
        source_headers=source_headers,
        resolved=resolved,
        field_confidence=field_confidence,
        strategy=strategy,
        dictionary=dictionary,
    )


def _all_claimed(headers: Sequence[str], resolved: Mapping[str, str]) -> bool:
    claimed = set(resolved.values())
    return all(header in claimed for header in headers)


def _build_mapping(
    *,
    source_headers: tuple[str, ...],
    resolved: dict[str, str],
    field_confidence: dict[str, float],
    strategy: str,
    dictionary: CanonicalDictionary,
    insights: tuple[UnmappedFieldInsight, ...] = (),
    extra_flags: tuple[str, ...] = (),
    confidence_cap: float | None = None,
) -> HeaderMapping:
    ordered = {
        definition.name: resolved[definition.name]
        for definition in dictionary.fields
        if definition.name in resolved
    }
    claimed = set(ordered.values())
    unmapped = tuple(header for header in source_headers if header not in claimed)
    confidence = overall_confidence(ordered, field_confidence)
    if confidence_cap is not None:
        confidence = min(confidence, confidence_cap)

    flags = list(extra_flags)
    if IDENTITY_FIELD not in ordered:
        flags.append("missing_identity_column")
    if confidence < REVIEW_CONFIDENCE:
        flags.append("low_confidence")

    return HeaderMapping(
        canonical_to_source=ordered,
        source_headers=source_headers,
        field_confidence={name: field_confidence.get(name, 0.0) for name in ordered},
        confidence=confidence,
        strategy=strategy,
        dictionary_version=dictionary.version,
        unmapped_headers=unmapped,
        insights=insights,
        flags=tuple(flags),
    )


class HeaderMapper:
    """
    Resolves header lists to canonical mappings, caching per header list
    and dictionary version.
    """

    def __init__(
        self,
        oracle: "ClassificationOracle",
        *,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
    ) -> None:
        self._oracle = oracle
        self._fuzzy_threshold = fuzzy_threshold
        self._cache: dict[tuple[str, tuple[str, ...]], HeaderMapping] = {}
        self._lock = threading.Lock()

    def resolve(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[Mapping[str, Any]],
        dictionary: CanonicalDictionary,
    ) -> HeaderMapping:
        validator = MappingValidator(canonical_fields=dictionary.field_index)
        source_headers = validator.require_headers(headers)
        cache_key = (dictionary.version, source_headers)
        with self._lock:
            cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        exact = dictionary_matches(source_headers, dictionary)
        if _all_claimed(source_headers, exact) or not self._oracle.consults_model:
            mapping = heuristic_header_mapping(source_headers, dictionary, fuzzy_threshold=self._fuzzy_threshold)
        else:
            mapping = self._resolve_with_oracle(
                source_headers=source_headers,
                sample_rows=sample_rows,
                dictionary=dictionary,
                exact=exact,
                validator=validator,
            )

        log_event(
            logger,
            logging.INFO,
            "header_mapping_resolved",
            strategy=mapping.strategy,
            confidence=mapping.confidence,
            mapped=len(mapping.canonical_to_source),
            unmapped=len(mapping.unmapped_headers),
            dictionary_version=dictionary.version,
        )
        with self._lock:
            self._cache[cache_key] = mapping
        return mapping

    def _resolve_with_oracle(
        self,
        *,
        source_headers: tuple[str, ...],
        sample_rows: Sequence[Mapping[str, Any]],
        dictionary: CanonicalDictionary,
        exact: dict[str, str],
        validator: MappingValidator,
    ) -> HeaderMapping:
        try:
            response = self._oracle.map_headers(source_headers, sample_rows, dictionary)
        except OracleError as exc:
            logger.warning("Header mapping oracle failed, using keyword heuristic: %s", exc)
            fallback = heuristic_header_mapping(source_headers, dictionary, fuzzy_threshold=self._fuzzy_threshold)
            return _build_mapping(
                source_headers=source_headers,
                resolved=dict(fallback.canonical_to_source),
                field_confidence=dict(fallback.field_confidence),
                strategy=STRATEGY_FALLBACK,
                dictionary=dictionary,
                extra_flags=("oracle_unavailable",),
                confidence_cap=LOW_CONFIDENCE,
            )

        # Dictionary matches are authoritative; the oracle only fills gaps.
        proposed = {field: header for field, header in response.mapping.items() if field not in exact}
        sanitized, errors = validator.sanitize(
            mapping=proposed,
            source_headers=source_headers,
            reserved_headers=set(exact.values()),
        )
        for error in errors:
            logger.info(
                "Discarded oracle mapping %s -> %s (%s)",
                error.canonical_field,
                error.source_column,
                error.code,
            )

        resolved = dict(exact)
        field_confidence = {name: 1.0 for name in exact}
        for name, header in sanitized.items():
            resolved[name] = header
            field_confidence[name] = response.confidence

        insights = tuple(
            UnmappedFieldInsight(
                header=insight.header,
                suggested_field=insight.suggested_field,
                reason=insight.reason,
            )
            for insight in response.unmapped_field_insights
        )
        return _build_mapping(
            source_headers=source_headers,
            resolved=resolved,
            field_confidence=field_confidence,
            strategy=STRATEGY_ORACLE,
            dictionary=dictionary,
            insights=insights,
        )
