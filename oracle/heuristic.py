"""Deterministic oracle used when no model is configured.

Answers every oracle task from local rules so the pipeline runs offline
and in tests with fully reproducible output.
"""

from datetime import datetime, timedelta
from difflib import SequenceMatcher
from typing import Any, Dict, List, Mapping, Optional, Sequence

from app.dictionary.canonical_dictionary import IDENTITY_FIELD, CanonicalDictionary, normalize_header
from app.domain.reconciliation import HeaderMapping
from app.domain.stages import stage_sequence
from app.mappers.field_transformer import FieldTransformer
from app.mappers.header_mapper import heuristic_header_mapping
from app.mappers.identity import normalize_identity_key
from app.mappers.lifecycle import ensure_utc
from app.mappers.status_normalizer import keyword_stage
from oracle.client import ClassificationOracle
from oracle.errors import OracleResponseError
from oracle.schema import (
    AnomalyJudgment,
    AuditResponse,
    FieldSuggestion,
    HeaderMappingResponse,
)

SUGGESTION_MIN_SCORE = 0.6
ARRIVAL_GRACE_DAYS = 7
# Status text is compared as a derived stage elsewhere.
_SKIPPED_AUDIT_TYPES = frozenset({"status"})
# Shipment and event values do not live on the container record.
_AUDITED_TARGET = "container"


def _values_match(expected: Any, persisted: Any) -> bool:
    if isinstance(expected, datetime) and isinstance(persisted, datetime):
        return ensure_utc(expected) == ensure_utc(persisted)
    if isinstance(expected, (int, float)) and isinstance(persisted, (int, float)):
        return abs(float(expected) - float(persisted)) < 1e-6
    return str(expected).strip() == str(persisted).strip()


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class HeuristicClassificationOracle(ClassificationOracle):
    """Rule-based implementation of the oracle contract."""

    name = "heuristic"
    consults_model = False

    def map_headers(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[Mapping[str, Any]],
        dictionary: CanonicalDictionary,
    ) -> HeaderMappingResponse:
        mapping = heuristic_header_mapping(headers, dictionary)
        if not mapping.canonical_to_source:
            raise OracleResponseError(
                stage="schema",
                errors=["no header matched a canonical field"],
                raw_response="",
            )
        return HeaderMappingResponse.model_validate(
            {
                "mapping": mapping.canonical_to_source,
                "unmapped_field_insights": [{"header": header} for header in mapping.unmapped_headers],
                "confidence": mapping.confidence,
            }
        )

    def classify_status(self, text: str, vocabulary: Mapping[str, str]) -> str:
        return keyword_stage(text) or "O"

    def audit_record(
        self,
        raw_row: Mapping[str, Any],
        mapping: HeaderMapping,
        persisted_record: Mapping[str, Any],
        dictionary: CanonicalDictionary,
    ) -> AuditResponse:
        transformer = FieldTransformer(dictionary)
        lost: List[Dict[str, Any]] = []
        wrong: List[Dict[str, Any]] = []
        unmapped: List[Dict[str, Any]] = []
        fields_to_update: Dict[str, Any] = {}
        uncorrectable = False
        non_empty = 0

        for canonical_field, header in mapping.canonical_to_source.items():
            raw_value = raw_row.get(header)
            if transformer.transform_value(raw_value, "string") is None:
                continue
            non_empty += 1
            definition = dictionary.get(canonical_field)
            if definition is None or definition.field_type in _SKIPPED_AUDIT_TYPES or definition.target != _AUDITED_TARGET:
                continue

            if canonical_field == IDENTITY_FIELD:
                expected: Any = normalize_identity_key(raw_value)
            else:
                expected = transformer.transform_field(canonical_field, raw_value)
            persisted = persisted_record.get(canonical_field)

            if expected is None:
                if persisted is None:
                    lost.append({"field": canonical_field, "raw_field": header, "raw_value": raw_value,
                                 "reason": "value could not be converted"})
                    uncorrectable = True
                continue

            if persisted is None:
                lost.append({"field": canonical_field, "raw_field": header, "raw_value": raw_value})
                fields_to_update[canonical_field] = _serialize(expected)
            elif not _values_match(expected, persisted):
                wrong.append(
                    {
                        "field": canonical_field,
                        "raw_field": header,
                        "raw_value": raw_value,
                        "persisted_value": _serialize(persisted),
                        "expected_value": _serialize(expected),
                    }
                )
                fields_to_update[canonical_field] = _serialize(expected)

        for header in mapping.unmapped_headers:
            raw_value = raw_row.get(header)
            if transformer.transform_value(raw_value, "string") is None:
                continue
            non_empty += 1
            unmapped.append({"raw_field": header, "raw_value": raw_value})

        failed = bool(lost or wrong)
        captured = non_empty - len(lost) - len(wrong)
        capture_rate = round(captured / non_empty, 4) if non_empty else 1.0
        if not failed:
            recommendation = "NONE"
        elif uncorrectable:
            recommendation = "HUMAN_REVIEW"
        else:
            recommendation = "AUTO_CORRECT"

        return AuditResponse.model_validate(
            {
                "result": "FAIL" if failed else "PASS",
                "lost": lost,
                "wrong": wrong,
                "unmapped": unmapped,
                "recommended_corrections": {"fields_to_update": fields_to_update, "metadata_to_add": {}},
                "recommendation": recommendation,
                "capture_rate": max(0.0, capture_rate),
            }
        )

    def judge_anomaly(self, record: Mapping[str, Any], now: datetime) -> AnomalyJudgment:
        eta = record.get("eta")
        ata = record.get("ata")
        sequence = stage_sequence(record.get("current_status"))
        arrived_sequence = stage_sequence("ARR") or 0
        if isinstance(eta, datetime) and ata is None and (sequence is None or sequence < arrived_sequence):
            overdue = ensure_utc(now) - ensure_utc(eta)
            if overdue > timedelta(days=ARRIVAL_GRACE_DAYS):
                return AnomalyJudgment(
                    is_exception=True,
                    type="Delayed Arrival",
                    owner="Freight Team",
                    reason=f"ETA passed {overdue.days} days ago with no arrival recorded.",
                )
        return AnomalyJudgment(is_exception=False)

    def suggest_fields(
        self,
        unmapped: Sequence[Mapping[str, Any]],
        dictionary: CanonicalDictionary,
    ) -> List[FieldSuggestion]:
        suggestions: List[FieldSuggestion] = []
        for item in unmapped:
            header = str(item.get("header") or "").strip()
            normalized = normalize_header(header)
            if not normalized or dictionary.lookup_header(header) is not None:
                continue
            best_field: Optional[str] = None
            best_score = 0.0
            for definition in dictionary.fields:
                for candidate in (definition.name, *definition.synonyms):
                    score = SequenceMatcher(None, normalized, normalize_header(candidate)).ratio()
                    if score > best_score:
                        best_score = score
                        best_field = definition.name
            if best_field is None or best_score < SUGGESTION_MIN_SCORE:
                continue
            suggestions.append(
                FieldSuggestion(
                    unmapped_header=header,
                    canonical_field=best_field,
                    confidence=round(best_score, 4),
                    action="ADD_SYNONYM",
                    reasoning="closest known synonym by string similarity",
                )
            )
        return suggestions
