"""
tests/test_lifecycle.py

Stage derivation, health scoring and status normalization.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.config import OracleSettings
from app.mappers.lifecycle import apply_date_overrides, assess_health, ensure_utc
from app.mappers.status_normalizer import StatusNormalizer, clean_oracle_stage, keyword_stage
from oracle.adapter import MockOracleAdapter
from oracle.client import LLMClassificationOracle
from oracle.heuristic import HeuristicClassificationOracle

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

FAST_ORACLE = OracleSettings(
    mode="llm",
    adapter="mock",
    max_retries=0,
    timeout_seconds=2.0,
    overall_timeout_seconds=5.0,
    backoff_initial_seconds=0.0,
)


# ---------------------------------------------------------------------------
# Date priority
# ---------------------------------------------------------------------------


class TestDateOverrides:
    def test_delivery_date_beats_status_text(self) -> None:
        stage = keyword_stage("Arrived at port")
        assert stage == "ARR"
        assert apply_date_overrides(stage, delivery_date=NOW) == "DEL"

    def test_delivery_beats_empty_return(self) -> None:
        assert apply_date_overrides("ARR", delivery_date=NOW, empty_return_date=NOW) == "DEL"

    def test_empty_return_beats_gate_out(self) -> None:
        assert apply_date_overrides("ARR", empty_return_date=NOW, gate_out_date=NOW) == "RET"

    def test_gate_out_forces_cgo(self) -> None:
        assert apply_date_overrides("DIS", gate_out_date=NOW) == "CGO"

    def test_gate_out_does_not_pull_back_later_stage(self) -> None:
        assert apply_date_overrides("OFD", gate_out_date=NOW) == "OFD"

    def test_no_dates_keeps_stage(self) -> None:
        assert apply_date_overrides("DEP") == "DEP"
        assert apply_date_overrides(None) is None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestAssessHealth:
    def _assess(self, **overrides: object):
        values: dict[str, object] = {
            "stage": "DEP",
            "last_free_day": None,
            "delivery_date": None,
            "empty_return_date": None,
            "departure_date": None,
            "arrival_date": None,
            "now": NOW,
        }
        values.update(overrides)
        return assess_health(**values)  # type: ignore[arg-type]

    def test_passed_last_free_day_is_critical(self) -> None:
        health = self._assess(stage="DIS", last_free_day=NOW - timedelta(days=1))
        assert health.health_score == 50
        assert health.attention_category == "Critical"
        assert health.operational_status == "Discharged"

    def test_last_free_day_within_two_days_is_warning(self) -> None:
        health = self._assess(stage="AVL", last_free_day=NOW + timedelta(days=1))
        assert health.health_score == 80
        assert health.attention_category == "Warning"

    def test_no_last_free_day_costs_ten(self) -> None:
        health = self._assess()
        assert health.health_score == 90
        assert health.attention_category == "Routine"
        assert health.operational_status == "In Transit"

    def test_delivered_is_resolved(self) -> None:
        health = self._assess(stage="DEL", last_free_day=NOW - timedelta(days=10), delivery_date=NOW)
        assert health.health_score == 100
        assert health.attention_category == "Resolved"
        assert health.operational_status == "Delivered"

    def test_days_in_transit_rounds_up(self) -> None:
        health = self._assess(departure_date=NOW - timedelta(days=3, hours=2))
        assert health.days_in_transit == 4

    def test_naive_dates_are_treated_as_utc(self) -> None:
        naive = datetime(2026, 10, 18, 12, 0)
        health = self._assess(last_free_day=naive)
        assert health.health_score == 50
        assert ensure_utc(naive) == datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Status normalization
# ---------------------------------------------------------------------------


class TestKeywordStage:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Out for delivery", "OFD"),
            ("Empty container returned", "RET"),
            ("Delivered to consignee", "DEL"),
            ("Gated out of terminal", "CGO"),
            ("Customs hold", "CUS"),
            ("Discharged from vessel", "DIS"),
            ("Vessel departed", "DEP"),
            ("Loaded on board", "LOA"),
        ],
    )
    def test_known_phrases(self, text: str, expected: str) -> None:
        assert keyword_stage(text) == expected

    def test_unknown_text_is_other(self) -> None:
        assert keyword_stage("awaiting paperwork") == "O"

    def test_unloaded_is_discharge_not_loading(self) -> None:
        assert keyword_stage("Unloaded at port") == "DIS"
        assert keyword_stage("Loaded at port") == "LOA"

    @pytest.mark.parametrize("text", ["Awaiting delivery", "Pending delivery", "Delivery scheduled"])
    def test_delivery_not_yet_made_is_not_delivered(self, text: str) -> None:
        assert keyword_stage(text) != "DEL"


    def test_blank_text_has_no_stage(self) -> None:
        assert keyword_stage("   ") is None
        assert keyword_stage(None) is None


class TestCleanOracleStage:
    def test_takes_first_token_and_uppercases(self) -> None:
        assert clean_oracle_stage("dis (discharged)") == "DIS"

    def test_strips_punctuation(self) -> None:
        assert clean_oracle_stage("'CGO'.") == "CGO"

    def test_rejects_unknown_code(self) -> None:
        assert clean_oracle_stage("PICKED_UP") is None
        assert clean_oracle_stage("") is None


class TestStatusNormalizer:
    def test_heuristic_oracle_is_not_consulted(self) -> None:
        normalizer = StatusNormalizer(HeuristicClassificationOracle())
        resolution = normalizer.normalize("Vessel arrived")
        assert resolution.code == "ARR"
        assert resolution.source == "heuristic"

    def test_empty_status(self) -> None:
        resolution = StatusNormalizer().normalize("  ")
        assert resolution.code is None
        assert resolution.source == "empty"

    def test_model_answer_is_used_when_valid(self) -> None:
        adapter = MockOracleAdapter({"classify_status": {"stage_code": "AVL"}})
        normalizer = StatusNormalizer(LLMClassificationOracle(adapter, settings=FAST_ORACLE))

        resolution = normalizer.normalize("Ready for collection")

        assert resolution.code == "AVL"
        assert resolution.source == "oracle"

    def test_out_of_vocabulary_answer_falls_back_to_keywords(self) -> None:
        adapter = MockOracleAdapter({"classify_status": {"stage_code": "TELEPORTED"}})
        normalizer = StatusNormalizer(LLMClassificationOracle(adapter, settings=FAST_ORACLE))

        resolution = normalizer.normalize("Discharged at terminal")

        assert resolution.code == "DIS"
        assert resolution.source == "heuristic"

    def test_oracle_failure_falls_back_to_keywords(self) -> None:
        adapter = MockOracleAdapter({"classify_status": "not json"})
        normalizer = StatusNormalizer(LLMClassificationOracle(adapter, settings=FAST_ORACLE))

        resolution = normalizer.normalize("Customs hold")

        assert resolution.code == "CUS"
        assert resolution.source == "heuristic"

    def test_repeated_text_hits_the_cache(self) -> None:
        adapter = MockOracleAdapter({"classify_status": {"stage_code": "DEP"}})
        normalizer = StatusNormalizer(LLMClassificationOracle(adapter, settings=FAST_ORACLE))

        normalizer.normalize("Sailed")
        normalizer.normalize("  sailed ")

        assert adapter.calls_for("classify_status") == 1
        assert normalizer.cache_size == 1
