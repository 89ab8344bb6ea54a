"""Structured prompt builder for classification oracle tasks."""

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from oracle.schema import (
    AnomalyJudgment,
    AuditResponse,
    FieldSuggestionResponse,
    HeaderMappingResponse,
    StatusClassificationResponse,
)

_RULES = """\
STRICT RULES:
- Use ONLY the data provided below.
- Return strictly valid JSON matching the schema defined below.
- Do NOT include any text outside the JSON object.
- Do NOT wrap the JSON in markdown code fences.
"""

_SECTION_TEMPLATE = """\
## {title}
```json
{data}
```
"""


def _section(title: str, data: Any) -> str:
    return _SECTION_TEMPLATE.format(
        title=title,
        data=json.dumps(data, indent=2, default=str, sort_keys=True),
    )


def _schema(model: Any) -> str:
    return _section("Response schema", model.model_json_schema())


class OraclePromptBuilder:
    """Builds deterministic prompts, one per oracle task.

    The first line of every prompt is ``TASK: <name>`` so adapters and
    logs can tell tasks apart without parsing the body.
    """

    def header_mapping(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[Mapping[str, Any]],
        canonical_fields: Mapping[str, Sequence[str]],
    ) -> str:
        body = [
            "TASK: map_headers",
            "You map spreadsheet column headers of container shipment exports to canonical fields.",
            "Return `mapping` as {canonical_field: exact source header}. Leave out fields with no column.",
            "List every header you could not map in `unmapped_field_insights`.",
            _RULES,
            _section("Source headers", list(headers)),
            _section("Sample rows", [dict(row) for row in sample_rows]),
            _section("Canonical fields with known synonyms", {k: list(v) for k, v in canonical_fields.items()}),
            _schema(HeaderMappingResponse),
        ]
        return "\n".join(body)

    def status_classification(self, text: str, vocabulary: Mapping[str, str]) -> str:
        body = [
            "TASK: classify_status",
            "Classify the free-text container status into exactly one stage code.",
            _RULES,
            _section("Status text", text),
            _section("Stage codes", dict(vocabulary)),
            _schema(StatusClassificationResponse),
        ]
        return "\n".join(body)

    def audit(
        self,
        raw_row: Mapping[str, Any],
        mapping: Mapping[str, str],
        persisted_record: Mapping[str, Any],
        canonical_fields: Iterable[str],
    ) -> str:
        body = [
            "TASK: audit_record",
            "Compare the persisted container record with the source row it came from.",
            "Report values that were lost, mapped wrongly, or have no canonical field.",
            "Put corrections for canonical fields in `fields_to_update`; anything else in `metadata_to_add`.",
            "Set `recommendation` to AUTO_CORRECT only when every correction is certain.",
            _RULES,
            _section("Source row", dict(raw_row)),
            _section("Header mapping (canonical -> source)", dict(mapping)),
            _section("Persisted record", dict(persisted_record)),
            _section("Canonical fields", sorted(canonical_fields)),
            _schema(AuditResponse),
        ]
        return "\n".join(body)

    def anomaly(self, record: Mapping[str, Any], now: datetime) -> str:
        body = [
            "TASK: judge_anomaly",
            "Decide whether this container needs operational attention.",
            "Only flag concrete risks (missed milestones, stale holds, inconsistent dates).",
            _RULES,
            _section("Current time", now.isoformat()),
            _section("Container", dict(record)),
            _schema(AnomalyJudgment),
        ]
        return "\n".join(body)

    def field_suggestions(
        self,
        unmapped: Sequence[Mapping[str, Any]],
        canonical_fields: Mapping[str, Sequence[str]],
    ) -> str:
        body: List[str] = [
            "TASK: suggest_fields",
            "Suggest which canonical field each unmapped header belongs to.",
            "Use ADD_SYNONYM for an existing field, NEW_FIELD if none fits, IGNORE for noise.",
            _RULES,
            _section("Unmapped headers with sample values", [dict(item) for item in unmapped]),
            _section("Canonical fields with known synonyms", {k: list(v) for k, v in canonical_fields.items()}),
            _schema(FieldSuggestionResponse),
        ]
        return "\n".join(body)


def canonical_field_catalog(fields: Iterable[Any]) -> Dict[str, List[str]]:
    """Project field definitions into {name: synonyms} for prompts."""
    return {definition.name: list(definition.synonyms) for definition in fields}
