"""Response contracts for the classification oracle.

Field aliases accept both snake_case and camelCase keys so that
OpenAI-compatible models answering in either convention validate.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class _OracleModel(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        str_strip_whitespace=True,
        populate_by_name=True,
    )


class UnmappedInsight(_OracleModel):
    header: str = Field(min_length=1, validation_alias=AliasChoices("header", "rawHeader", "raw_header"))
    suggested_field: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("suggested_field", "suggestedField", "canonicalField"),
    )
    reason: Optional[str] = None


class HeaderMappingResponse(_OracleModel):
    """Answer to ``map_headers``: canonical field -> source header."""

    mapping: Dict[str, Optional[str]]
    unmapped_field_insights: List[UnmappedInsight] = Field(
        default_factory=list,
        validation_alias=AliasChoices("unmapped_field_insights", "unmappedFieldInsights"),
    )
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("mapping")
    @classmethod
    def _drop_blank_targets(cls, value: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
        cleaned = {
            key.strip(): header.strip()
            for key, header in value.items()
            if isinstance(key, str) and key.strip() and isinstance(header, str) and header.strip()
        }
        if not cleaned:
            raise ValueError("mapping must contain at least one canonical field")
        return cleaned


class StatusClassificationResponse(_OracleModel):
    stage_code: str = Field(
        min_length=1,
        validation_alias=AliasChoices("stage_code", "stageCode", "code", "stage"),
    )


class AuditFinding(_OracleModel):
    """One lost, wrong, or unmapped value reported by an audit."""

    field: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("field", "canonical_field", "canonicalField"),
    )
    raw_field: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("raw_field", "rawField", "header"),
    )
    raw_value: Any = Field(default=None, validation_alias=AliasChoices("raw_value", "rawValue"))
    persisted_value: Any = Field(
        default=None,
        validation_alias=AliasChoices("persisted_value", "persistedValue", "extractedValue"),
    )
    expected_value: Any = Field(
        default=None,
        validation_alias=AliasChoices("expected_value", "expectedValue", "correctValue"),
    )
    reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_names(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"raw_field": data}
        return data

    @property
    def name(self) -> Optional[str]:
        return self.field or self.raw_field


class RecommendedCorrections(_OracleModel):
    fields_to_update: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("fields_to_update", "fieldsToUpdate"),
    )
    metadata_to_add: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata_to_add", "metadataToAdd"),
    )


class AuditResponse(_OracleModel):
    """Answer to ``audit_record``."""

    result: Literal["PASS", "FAIL"]
    lost: List[AuditFinding] = Field(default_factory=list)
    wrong: List[AuditFinding] = Field(default_factory=list)
    unmapped: List[AuditFinding] = Field(default_factory=list)
    recommended_corrections: RecommendedCorrections = Field(
        default_factory=RecommendedCorrections,
        validation_alias=AliasChoices("recommended_corrections", "recommendedCorrections"),
    )
    recommendation: Literal["AUTO_CORRECT", "HUMAN_REVIEW", "NONE"] = "NONE"
    capture_rate: float = Field(
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("capture_rate", "captureRate"),
    )
    summary: Optional[str] = None

    @field_validator("result", "recommendation", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper().replace(" ", "_")
        return value

    @field_validator("capture_rate", mode="before")
    @classmethod
    def _percent_to_ratio(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip().rstrip("%")
            try:
                value = float(text)
            except ValueError:
                return value
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 1.0:
            return float(value) / 100.0
        return value


class AnomalyJudgment(_OracleModel):
    """Answer to ``judge_anomaly``."""

    is_exception: bool = Field(validation_alias=AliasChoices("is_exception", "isException"))
    type: Optional[str] = None
    owner: Optional[str] = None
    reason: Optional[str] = None


class FieldSuggestion(_OracleModel):
    unmapped_header: str = Field(
        min_length=1,
        validation_alias=AliasChoices("unmapped_header", "unmappedHeader", "header"),
    )
    canonical_field: str = Field(
        min_length=1,
        validation_alias=AliasChoices("canonical_field", "canonicalField"),
    )
    confidence: float = Field(ge=0.0, le=1.0)
    action: Literal["ADD_SYNONYM", "NEW_FIELD", "IGNORE"] = "ADD_SYNONYM"
    reasoning: Optional[str] = None

    @field_validator("action", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class FieldSuggestionResponse(_OracleModel):
    """Answer to ``suggest_fields``."""

    suggestions: List[FieldSuggestion] = Field(default_factory=list)
    summary: Optional[str] = None
