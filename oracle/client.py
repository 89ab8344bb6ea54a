"""Classification oracle capability interface.

Two implementations sit behind ``ClassificationOracle``: the model-backed
``LLMClassificationOracle`` defined here and the deterministic
``HeuristicClassificationOracle`` in ``oracle.heuristic``. Which one runs
is decided by ``ORACLE_MODE``.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, List, Mapping, Optional, Sequence

from app.config import OracleSettings, get_oracle_settings
from oracle.adapter import BaseOracleAdapter, build_adapter
from oracle.prompt_builder import OraclePromptBuilder, canonical_field_catalog
from oracle.retry import generate_with_retry
from oracle.schema import (
    AnomalyJudgment,
    AuditResponse,
    FieldSuggestion,
    FieldSuggestionResponse,
    HeaderMappingResponse,
    StatusClassificationResponse,
)

if TYPE_CHECKING:
    from app.dictionary.canonical_dictionary import CanonicalDictionary
    from app.domain.reconciliation import HeaderMapping

logger = logging.getLogger(__name__)


class ClassificationOracle(ABC):
    """Narrow request/response contract used by the pipeline.

    Implementations raise ``oracle.errors.OracleError`` subclasses on
    failure; callers decide the fallback.
    """

    name: str = "oracle"
    # True when answers come from a model rather than local rules.
    consults_model: bool = False

    @abstractmethod
    def map_headers(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[Mapping[str, Any]],
        dictionary: "CanonicalDictionary",
    ) -> HeaderMappingResponse:
        """Map source headers to canonical fields."""

    @abstractmethod
    def classify_status(self, text: str, vocabulary: Mapping[str, str]) -> str:
        """Return a stage code for free-text status. Callers validate it."""

    @abstractmethod
    def audit_record(
        self,
        raw_row: Mapping[str, Any],
        mapping: "HeaderMapping",
        persisted_record: Mapping[str, Any],
        dictionary: "CanonicalDictionary",
    ) -> AuditResponse:
        """Compare a persisted record with its source row."""

    @abstractmethod
    def judge_anomaly(self, record: Mapping[str, Any], now: datetime) -> AnomalyJudgment:
        """Judge whether a record needs operational attention."""

    @abstractmethod
    def suggest_fields(
        self,
        unmapped: Sequence[Mapping[str, Any]],
        dictionary: "CanonicalDictionary",
    ) -> List[FieldSuggestion]:
        """Suggest canonical fields for unmapped headers."""


class LLMClassificationOracle(ClassificationOracle):
    """Oracle backed by a chat-completion model via an adapter."""

    name = "llm"
    consults_model = True

    def __init__(
        self,
        adapter: BaseOracleAdapter,
        *,
        settings: Optional[OracleSettings] = None,
        prompt_builder: Optional[OraclePromptBuilder] = None,
    ) -> None:
        self._adapter = adapter
        self._settings = settings or get_oracle_settings()
        self._prompts = prompt_builder or OraclePromptBuilder()

    def _call(self, prompt: str, response_model: Any) -> Any:
        return generate_with_retry(
            self._adapter,
            prompt,
            response_model,
            max_retries=self._settings.max_retries,
            timeout_seconds=self._settings.timeout_seconds,
            overall_timeout_seconds=self._settings.overall_timeout_seconds,
            backoff_initial_seconds=self._settings.backoff_initial_seconds,
            backoff_multiplier=self._settings.backoff_multiplier,
        )

    def map_headers(
        self,
        headers: Sequence[str],
        sample_rows: Sequence[Mapping[str, Any]],
        dictionary: "CanonicalDictionary",
    ) -> HeaderMappingResponse:
        prompt = self._prompts.header_mapping(
            headers,
            sample_rows,
            canonical_field_catalog(dictionary.fields),
        )
        return self._call(prompt, HeaderMappingResponse)

    def classify_status(self, text: str, vocabulary: Mapping[str, str]) -> str:
        prompt = self._prompts.status_classification(text, vocabulary)
        response: StatusClassificationResponse = self._call(prompt, StatusClassificationResponse)
        return response.stage_code

    def audit_record(
        self,
        raw_row: Mapping[str, Any],
        mapping: "HeaderMapping",
        persisted_record: Mapping[str, Any],
        dictionary: "CanonicalDictionary",
    ) -> AuditResponse:
        prompt = self._prompts.audit(
            raw_row,
            mapping.canonical_to_source,
            persisted_record,
            dictionary.field_index.keys(),
        )
        return self._call(prompt, AuditResponse)

    def judge_anomaly(self, record: Mapping[str, Any], now: datetime) -> AnomalyJudgment:
        return self._call(self._prompts.anomaly(record, now), AnomalyJudgment)

    def suggest_fields(
        self,
        unmapped: Sequence[Mapping[str, Any]],
        dictionary: "CanonicalDictionary",
    ) -> List[FieldSuggestion]:
        if not unmapped:
            return []
        prompt = self._prompts.field_suggestions(unmapped, canonical_field_catalog(dictionary.fields))
        response: FieldSuggestionResponse = self._call(prompt, FieldSuggestionResponse)
        return list(response.suggestions)


def build_oracle(settings: Optional[OracleSettings] = None) -> ClassificationOracle:
    """Select the oracle strategy from configuration.

    Raises:
        OracleConfigurationError: If the model-backed oracle is selected
            without credentials.
    """
    from oracle.heuristic import HeuristicClassificationOracle

    resolved = settings or get_oracle_settings()
    if resolved.mode == "llm":
        logger.info("Using model-backed oracle (adapter=%s, model=%s)", resolved.adapter, resolved.model)
        return LLMClassificationOracle(build_adapter(resolved), settings=resolved)
    logger.info("Using heuristic-only oracle")
    return HeuristicClassificationOracle()
