"""
tests/test_oracle_client.py

Validation, retry and timeout envelope of the classification oracle.

All tests are offline: the scripted mock adapter stands in for the model,
and sleeps and clocks are injected so no test waits on backoff.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone

import pytest

from app.config import OracleSettings
from app.dictionary.canonical_dictionary import CanonicalDictionary
from oracle.adapter import BaseOracleAdapter, MockOracleAdapter, extract_task
from oracle.client import LLMClassificationOracle, build_oracle
from oracle.errors import (
    OracleResponseError,
    OracleRetryExhaustedError,
    OracleTimeoutError,
    OracleTransportError,
)
from oracle.heuristic import HeuristicClassificationOracle
from oracle.retry import call_with_timeout, generate_with_retry
from oracle.schema import AnomalyJudgment, AuditResponse, FieldSuggestionResponse
from oracle.validator import validate_oracle_output


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ---------------------------------------------------------------------------
# Output validation
# ---------------------------------------------------------------------------


class TestValidateOracleOutput:
    def test_strips_markdown_fences(self) -> None:
        raw = '```json\n{"is_exception": false}\n```'
        judgment = validate_oracle_output(raw, AnomalyJudgment)
        assert judgment.is_exception is False

    def test_accepts_camel_case_keys(self) -> None:
        judgment = validate_oracle_output('{"isException": true, "type": "Rolled"}', AnomalyJudgment)
        assert judgment.is_exception is True
        assert judgment.type == "Rolled"

    def test_invalid_json_is_a_parse_failure(self) -> None:
        with pytest.raises(OracleResponseError) as ctx:
            validate_oracle_output("sure! here you go", AnomalyJudgment)
        assert ctx.value.stage == "json_parse"

    def test_empty_response_is_a_parse_failure(self) -> None:
        with pytest.raises(OracleResponseError) as ctx:
            validate_oracle_output("  ", AnomalyJudgment)
        assert ctx.value.stage == "json_parse"

    def test_array_is_a_schema_failure(self) -> None:
        with pytest.raises(OracleResponseError) as ctx:
            validate_oracle_output("[1, 2]", AnomalyJudgment)
        assert ctx.value.stage == "schema"

    def test_missing_required_key_is_a_schema_failure(self) -> None:
        with pytest.raises(OracleResponseError) as ctx:
            validate_oracle_output('{"result": "PASS"}', AuditResponse)
        assert ctx.value.stage == "schema"
        assert any("capture_rate" in error for error in ctx.value.errors)

    def test_audit_capture_rate_percent_is_normalized(self) -> None:
        response = validate_oracle_output(
            '{"result": "fail", "capture_rate": "85%", "recommendation": "auto correct"}',
            AuditResponse,
        )
        assert response.result == "FAIL"
        assert response.recommendation == "AUTO_CORRECT"
        assert response.capture_rate == pytest.approx(0.85)


# ---------------------------------------------------------------------------
# Retry envelope
# ---------------------------------------------------------------------------


class TestGenerateWithRetry:
    def test_retries_until_valid_with_exponential_backoff(self) -> None:
        clock = FakeClock()
        adapter = MockOracleAdapter(
            {"judge_anomaly": ["oops", '{"bad": 1}', '{"is_exception": false}']}
        )

        result = generate_with_retry(
            adapter,
            "TASK: judge_anomaly\n...",
            AnomalyJudgment,
            max_retries=2,
            backoff_initial_seconds=1.0,
            backoff_multiplier=2.0,
            sleep=clock.sleep,
            clock=clock,
        )

        assert result.is_exception is False
        assert clock.sleeps == [1.0, 2.0]
        assert adapter.calls_for("judge_anomaly") == 3

    def test_exhausted_retries_raise_with_history(self) -> None:
        clock = FakeClock()
        adapter = MockOracleAdapter({"judge_anomaly": OracleTransportError("503")})

        with pytest.raises(OracleRetryExhaustedError) as ctx:
            generate_with_retry(
                adapter,
                "TASK: judge_anomaly",
                AnomalyJudgment,
                max_retries=2,
                sleep=clock.sleep,
                clock=clock,
            )

        assert ctx.value.attempts == 3
        assert len(ctx.value.history) == 3
        assert isinstance(ctx.value.last_error, OracleTransportError)

    def test_overall_deadline_cuts_retries_short(self) -> None:
        clock = FakeClock()
        adapter = MockOracleAdapter({"judge_anomaly": "not json"})

        with pytest.raises(OracleRetryExhaustedError) as ctx:
            generate_with_retry(
                adapter,
                "TASK: judge_anomaly",
                AnomalyJudgment,
                max_retries=5,
                overall_timeout_seconds=2.5,
                backoff_initial_seconds=1.0,
                backoff_multiplier=2.0,
                sleep=clock.sleep,
                clock=clock,
            )

        assert ctx.value.attempts == 2
        assert clock.sleeps == [1.0, 1.5]


class _BlockingAdapter(BaseOracleAdapter):
    def __init__(self) -> None:
        self.release = threading.Event()

    def generate(self, prompt: str) -> str:
        self.release.wait(5)
        return '{"is_exception": false}'


class TestTimeouts:
    def test_call_with_timeout_abandons_slow_call(self) -> None:
        release = threading.Event()
        started = time.monotonic()
        with pytest.raises(OracleTimeoutError):
            call_with_timeout(lambda: release.wait(5), 0.05)
        release.set()
        assert time.monotonic() - started < 2

    def test_stuck_adapter_is_a_retryable_failure(self) -> None:
        adapter = _BlockingAdapter()
        try:
            with pytest.raises(OracleRetryExhaustedError) as ctx:
                generate_with_retry(
                    adapter,
                    "TASK: judge_anomaly",
                    AnomalyJudgment,
                    max_retries=0,
                    timeout_seconds=0.05,
                )
        finally:
            adapter.release.set()
        assert isinstance(ctx.value.last_error, OracleTimeoutError)


# ---------------------------------------------------------------------------
# Client and strategy selection
# ---------------------------------------------------------------------------


class TestOracleClient:
    def test_prompts_declare_their_task(self, dictionary: CanonicalDictionary) -> None:
        adapter = MockOracleAdapter({"suggest_fields": {"suggestions": []}})
        oracle = LLMClassificationOracle(
            adapter,
            settings=OracleSettings(mode="llm", adapter="mock", max_retries=0, backoff_initial_seconds=0.0),
        )

        oracle.suggest_fields([{"header": "Box No", "samples": ["MSKU1"], "frequency": 3}], dictionary)

        assert extract_task(adapter.prompts[0]) == "suggest_fields"
        assert "Box No" in adapter.prompts[0]

    def test_suggestions_are_validated(self, dictionary: CanonicalDictionary) -> None:
        adapter = MockOracleAdapter(
            {
                "suggest_fields": {
                    "suggestions": [
                        {
                            "unmappedHeader": "Box No",
                            "canonicalField": "container_number",
                            "confidence": 0.97,
                            "action": "add_synonym",
                        }
                    ]
                }
            }
        )
        oracle = LLMClassificationOracle(
            adapter,
            settings=OracleSettings(mode="llm", adapter="mock", max_retries=0, backoff_initial_seconds=0.0),
        )

        suggestions = oracle.suggest_fields([{"header": "Box No"}], dictionary)

        assert suggestions[0].canonical_field == "container_number"
        assert suggestions[0].action == "ADD_SYNONYM"

    def test_heuristic_mode_is_the_default_strategy(self) -> None:
        oracle = build_oracle(OracleSettings(mode="heuristic"))
        assert isinstance(oracle, HeuristicClassificationOracle)
        assert oracle.consults_model is False

    def test_llm_mode_with_mock_adapter(self) -> None:
        oracle = build_oracle(OracleSettings(mode="llm", adapter="mock"))
        assert isinstance(oracle, LLMClassificationOracle)
        assert oracle.consults_model is True


class TestHeuristicOracle:
    def test_overdue_arrival_is_an_anomaly(self) -> None:
        now = datetime(2026, 10, 19, tzinfo=timezone.utc)
        judgment = HeuristicClassificationOracle().judge_anomaly(
            {"current_status": "DEP", "eta": datetime(2026, 10, 1, tzinfo=timezone.utc), "ata": None},
            now,
        )
        assert judgment.is_exception is True
        assert judgment.type == "Delayed Arrival"

    def test_suggests_closest_synonym(self, dictionary: CanonicalDictionary) -> None:
        suggestions = HeuristicClassificationOracle().suggest_fields([{"header": "Container Numbr"}], dictionary)
        assert suggestions[0].canonical_field == "container_number"
        assert suggestions[0].action == "ADD_SYNONYM"

    def test_suggestion_response_model(self) -> None:
        response = FieldSuggestionResponse.model_validate({"suggestions": []})
        assert response.suggestions == []
