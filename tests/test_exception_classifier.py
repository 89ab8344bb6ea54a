"""
tests/test_exception_classifier.py

Exception state machine: terminal guard, deterministic rules, oracle
fallback, and lock-aware persistence.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.orm import Session

from app.config import ExceptionSettings
from app.repositories.container_repository import ContainerRepository
from app.services.exception_classifier import (
    CUSTOMS_HOLD_TYPE,
    DEMURRAGE_TYPE,
    RULE_CUSTOMS,
    RULE_DEMURRAGE,
    RULE_TERMINAL,
    STATE_FLAGGED,
    STATE_NORMAL,
    STATE_RESOLVED,
    ExceptionClassifier,
    evaluate_rules,
    is_terminal,
)
from app.services.manual_edit_service import ManualEditService
from factories import NOW
from oracle.errors import OracleTransportError
from oracle.heuristic import HeuristicClassificationOracle
from oracle.schema import AnomalyJudgment

SETTINGS = ExceptionSettings()


class FailingJudgeOracle(HeuristicClassificationOracle):
    def judge_anomaly(self, record, now) -> AnomalyJudgment:
        raise OracleTransportError("model unavailable")


class RecordingJudgeOracle(HeuristicClassificationOracle):
    def __init__(self) -> None:
        self.judged: list[str] = []

    def judge_anomaly(self, record, now) -> AnomalyJudgment:
        self.judged.append(record["container_number"])
        return super().judge_anomaly(record, now)


def _store(db: Session, number: str, **payload: Any):
    return ContainerRepository(db).upsert(container_number=number, payload=payload).container


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------


class TestEvaluateRules:
    @pytest.mark.parametrize("stage", ["REL", "AVL", "CGO", "DEL", "RET"])
    def test_terminal_stages_resolve(self, stage: str) -> None:
        decision = evaluate_rules({"current_status": stage}, now=NOW, settings=SETTINGS)
        assert decision.state == STATE_RESOLVED
        assert decision.rule == RULE_TERMINAL

    def test_stale_gate_out_is_terminal(self) -> None:
        record = {"current_status": "DIS", "gate_out_date": NOW - timedelta(days=15)}
        assert is_terminal(record, now=NOW, settings=SETTINGS)
        assert not is_terminal({"current_status": "DIS", "gate_out_date": NOW - timedelta(days=3)}, now=NOW, settings=SETTINGS)

    def test_terminal_guard_beats_passed_last_free_day(self) -> None:
        record = {"current_status": "DEL", "last_free_day": NOW - timedelta(days=10)}
        assert evaluate_rules(record, now=NOW, settings=SETTINGS).state == STATE_RESOLVED

    def test_customs_hold_after_threshold(self) -> None:
        record = {"current_status": "CUS", "status_last_updated": NOW - timedelta(days=6)}
        decision = evaluate_rules(record, now=NOW, settings=SETTINGS)
        assert decision.state == STATE_FLAGGED
        assert decision.exception_type == CUSTOMS_HOLD_TYPE
        assert decision.owner == "Freight Team"

    def test_recent_customs_hold_is_not_flagged(self) -> None:
        record = {"current_status": "CUS", "status_last_updated": NOW - timedelta(days=2)}
        assert evaluate_rules(record, now=NOW, settings=SETTINGS) is None

    def test_customs_hold_takes_precedence_over_demurrage(self) -> None:
        record = {
            "current_status": "CUS",
            "status_last_updated": NOW - timedelta(days=10),
            "last_free_day": NOW - timedelta(days=1),
        }
        assert evaluate_rules(record, now=NOW, settings=SETTINGS).rule == RULE_CUSTOMS

    def test_demurrage_risk_before_gate_out(self) -> None:
        record = {"current_status": "DIS", "last_free_day": NOW - timedelta(days=1)}
        decision = evaluate_rules(record, now=NOW, settings=SETTINGS)
        assert decision.rule == RULE_DEMURRAGE
        assert decision.exception_type == DEMURRAGE_TYPE
        assert decision.owner == "Distribution"

    def test_demurrage_applies_without_a_stage(self) -> None:
        record = {"current_status": None, "last_free_day": NOW - timedelta(days=1)}
        assert evaluate_rules(record, now=NOW, settings=SETTINGS).rule == RULE_DEMURRAGE

    def test_future_last_free_day_defers_to_oracle(self) -> None:
        record = {"current_status": "DIS", "last_free_day": NOW + timedelta(days=2)}
        assert evaluate_rules(record, now=NOW, settings=SETTINGS) is None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestClassify:
    def test_flag_is_written_with_owner_and_date(self, db_session: Session) -> None:
        container = _store(db_session, "MSKU1234567", current_status="DIS", last_free_day=NOW - timedelta(days=2))

        decision = ExceptionClassifier(oracle=HeuristicClassificationOracle()).classify(
            db=db_session, container=container, now=NOW
        )

        assert decision.flagged
        assert container.has_exception is True
        assert container.exception_type == DEMURRAGE_TYPE
        assert container.exception_owner == "Distribution"
        assert container.exception_date == NOW

    def test_terminal_record_clears_existing_flag(self, db_session: Session) -> None:
        container = _store(
            db_session,
            "MSKU1234567",
            current_status="DEL",
            has_exception=True,
            exception_type=DEMURRAGE_TYPE,
            exception_owner="Distribution",
        )
        oracle = RecordingJudgeOracle()

        decision = ExceptionClassifier(oracle=oracle).classify(db=db_session, container=container, now=NOW)

        assert decision.state == STATE_RESOLVED
        assert container.has_exception is False
        assert container.exception_type is None
        assert container.exception_resolved_at == NOW
        assert oracle.judged == []

    def test_oracle_is_consulted_when_no_rule_fires(self, db_session: Session) -> None:
        container = _store(db_session, "MSKU1234567", current_status="DEP", eta=NOW - timedelta(days=10))
        oracle = RecordingJudgeOracle()

        decision = ExceptionClassifier(oracle=oracle).classify(db=db_session, container=container, now=NOW)

        assert oracle.judged == ["MSKU1234567"]
        assert decision.exception_type == "Delayed Arrival"
        assert container.has_exception is True

    def test_oracle_failure_keeps_current_flag(self, db_session: Session) -> None:
        container = _store(
            db_session,
            "MSKU1234567",
            current_status="DEP",
            has_exception=True,
            exception_type="Rolled Booking",
            exception_owner="Operations",
        )

        decision = ExceptionClassifier(oracle=FailingJudgeOracle()).classify(
            db=db_session, container=container, now=NOW
        )

        assert decision is None
        assert container.has_exception is True
        assert container.exception_type == "Rolled Booking"

    def test_locked_exception_fields_are_untouched(self, db_session: Session) -> None:
        _store(db_session, "MSKU1234567", current_status="DEL")
        container = ManualEditService().edit_fields(
            db=db_session,
            container_number="MSKU1234567",
            changes={"has_exception": True, "exception_type": "Damaged Cargo"},
            actor="ops",
        )

        ExceptionClassifier(oracle=HeuristicClassificationOracle()).classify(db=db_session, container=container, now=NOW)

        assert container.has_exception is True
        assert container.exception_type == "Damaged Cargo"


class TestClassifyContainers:
    def test_summary_counts_each_outcome(self, db_session: Session) -> None:
        _store(db_session, "AAAU1111111", current_status="DIS", last_free_day=NOW - timedelta(days=1))
        _store(
            db_session,
            "BBBU2222222",
            current_status="RET",
            has_exception=True,
            exception_type=DEMURRAGE_TYPE,
        )
        _store(db_session, "CCCU3333333", current_status="DEP", eta=NOW + timedelta(days=5))
        db_session.commit()

        summary = ExceptionClassifier(oracle=HeuristicClassificationOracle()).classify_containers(
            db=db_session,
            container_numbers=["AAAU1111111", "BBBU2222222", "CCCU3333333", "CCCU3333333", "ZZZU9999999"],
            now=NOW,
        )

        assert summary.flagged == 1
        assert summary.cleared == 1
        assert summary.resolved == 1
        assert summary.normal == 1
        assert summary.decisions == {
            "AAAU1111111": STATE_FLAGGED,
            "BBBU2222222": STATE_RESOLVED,
            "CCCU3333333": STATE_NORMAL,
        }

    def test_oracle_errors_are_counted(self, db_session: Session) -> None:
        _store(db_session, "AAAU1111111", current_status="DEP")
        db_session.commit()

        summary = ExceptionClassifier(oracle=FailingJudgeOracle()).classify_containers(
            db=db_session, container_numbers=["AAAU1111111"], now=NOW
        )

        assert summary.unchanged_on_oracle_error == 1
        assert summary.decisions == {}
