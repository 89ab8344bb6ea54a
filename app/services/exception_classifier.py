"""
app/services/exception_classifier.py

Rule-first, oracle-fallback exception classifier for container records.

States per record: Normal, Flagged(type, owner), Resolved. Rules run in
order and the first that decides wins:

    1. terminal-stage / stale gate-out guard  -> Resolved, flag cleared
    2. deterministic rules (customs hold, demurrage risk) -> Flagged
    3. oracle judgment -> Flagged or Normal

When nothing fires, a previously set flag is cleared.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from sqlalchemy.orm import Session

from app.config import ExceptionSettings, get_exception_settings
from app.domain.stages import CUSTOMS_HOLD_STAGE, TERMINAL_STAGES, stage_sequence
from app.logging_utils import log_event
from app.mappers.lifecycle import ensure_utc
from app.repositories.container_repository import ContainerRepository, container_snapshot
from app.repositories.event_log_repository import ProcessingLogRepository
from db.models.container import Container
from db.models.lifecycle_event import ProcessingStage
from oracle.client import ClassificationOracle, build_oracle
from oracle.errors import OracleError

logger = logging.getLogger(__name__)

STATE_NORMAL = "Normal"
STATE_FLAGGED = "Flagged"
STATE_RESOLVED = "Resolved"

DEMURRAGE_TYPE = "Demurrage Risk"
DEMURRAGE_OWNER = "Distribution"
CUSTOMS_HOLD_TYPE = "Customs Hold"
CUSTOMS_HOLD_OWNER = "Freight Team"

RULE_TERMINAL = "terminal_guard"
RULE_CUSTOMS = "customs_hold"
RULE_DEMURRAGE = "demurrage_risk"
RULE_ORACLE = "oracle"
RULE_NONE = "none"


@dataclass(frozen=True)
class ExceptionDecision:
    state: str
    rule: str
    exception_type: str | None = None
    owner: str | None = None
    reason: str | None = None

    @property
    def flagged(self) -> bool:
        return self.state == STATE_FLAGGED


@dataclass
class ClassificationSummary:
    flagged: int = 0
    cleared: int = 0
    resolved: int = 0
    normal: int = 0
    unchanged_on_oracle_error: int = 0
    decisions: dict[str, str] = field(default_factory=dict)


def is_terminal(record: Mapping[str, Any], *, now: datetime, settings: ExceptionSettings) -> bool:
    if record.get("current_status") in TERMINAL_STAGES:
        return True
    gate_out = ensure_utc(record.get("gate_out_date"))
    return gate_out is not None and ensure_utc(now) - gate_out > timedelta(days=settings.stale_gate_out_days)


def evaluate_rules(
    record: Mapping[str, Any],
    *,
    now: datetime,
    settings: ExceptionSettings,
) -> ExceptionDecision | None:
    """
    Deterministic part of the state machine. Returns None when neither the
    guard nor a rule decided, meaning the oracle should be consulted.
    """

    now = ensure_utc(now)
    if is_terminal(record, now=now, settings=settings):
        return ExceptionDecision(state=STATE_RESOLVED, rule=RULE_TERMINAL)

    stage = record.get("current_status")

    # Customs hold takes precedence over demurrage when both apply.
    if stage == CUSTOMS_HOLD_STAGE:
        since = ensure_utc(record.get("status_last_updated"))
        if since is not None and now - since > timedelta(days=settings.customs_hold_days):
            return ExceptionDecision(
                state=STATE_FLAGGED,
                rule=RULE_CUSTOMS,
                exception_type=CUSTOMS_HOLD_TYPE,
                owner=CUSTOMS_HOLD_OWNER,
                reason=f"In customs hold for {(now - since).days} days.",
            )

    last_free_day = ensure_utc(record.get("last_free_day"))
    sequence = stage_sequence(stage)
    if (
        last_free_day is not None
        and now > last_free_day
        and (sequence is None or sequence < settings.demurrage_stage_sequence)
    ):
        return ExceptionDecision(
            state=STATE_FLAGGED,
            rule=RULE_DEMURRAGE,
            exception_type=DEMURRAGE_TYPE,
            owner=DEMURRAGE_OWNER,
            reason=f"Last free day {last_free_day.date().isoformat()} passed before gate out.",
        )
    return None


class ExceptionClassifier:
    def __init__(
        self,
        *,
        oracle: ClassificationOracle | None = None,
        settings: ExceptionSettings | None = None,
    ) -> None:
        self._oracle = oracle or build_oracle()
        self._settings = settings or get_exception_settings()

    def decide(self, record: Mapping[str, Any], *, now: datetime) -> ExceptionDecision | None:
        """
        Full decision for a snapshot. None means the oracle failed and the
        current flag state should be kept.
        """

        decision = evaluate_rules(record, now=now, settings=self._settings)
        if decision is not None:
            return decision

        try:
            judgment = self._oracle.judge_anomaly(record, now)
        except OracleError as exc:
            logger.warning(
                "Anomaly oracle failed for %s; keeping current flag: %s",
                record.get("container_number"),
                exc,
            )
            return None

        if judgment.is_exception:
            return ExceptionDecision(
                state=STATE_FLAGGED,
                rule=RULE_ORACLE,
                exception_type=judgment.type or "Anomaly",
                owner=judgment.owner or "Operations",
                reason=judgment.reason,
            )
        return ExceptionDecision(state=STATE_NORMAL, rule=RULE_NONE)

    def classify(
        self,
        *,
        db: Session,
        container: Container,
        now: datetime | None = None,
        import_batch_id: str | None = None,
    ) -> ExceptionDecision | None:
        """
        Decide and persist. All writes pass through the lock filter, so a
        human-locked exception field is never changed here.
        """

        now = ensure_utc(now or datetime.now(timezone.utc))
        decision = self.decide(container_snapshot(container), now=now)
        repository = ContainerRepository(db)

        if decision is None:
            ProcessingLogRepository(db).append(
                stage=ProcessingStage.EXCEPTION_CLASSIFIER,
                status="UNCHANGED",
                import_batch_id=import_batch_id,
                container_number=container.container_number,
                output={"reason": "oracle_unavailable"},
            )
            return None

        was_flagged = bool(container.has_exception)
        if decision.flagged:
            same_flag = was_flagged and container.exception_type == decision.exception_type
            payload: dict[str, Any] = {
                "has_exception": True,
                "exception_type": decision.exception_type,
                "exception_owner": decision.owner,
                "exception_reason": decision.reason,
                "exception_resolved_at": None,
            }
            if not same_flag:
                payload["exception_date"] = now
            write = repository.write_fields(container, payload)
            status = "FLAGGED"
        else:
            payload = {
                "has_exception": False,
                "exception_type": None,
                "exception_owner": None,
                "exception_reason": None,
            }
            if was_flagged:
                payload["exception_resolved_at"] = now
            write = repository.write_fields(container, payload)
            status = "CLEARED" if was_flagged else decision.state.upper()

        ProcessingLogRepository(db).append(
            stage=ProcessingStage.EXCEPTION_CLASSIFIER,
            status=status,
            import_batch_id=import_batch_id,
            container_number=container.container_number,
            output={
                "state": decision.state,
                "rule": decision.rule,
                "exception_type": decision.exception_type,
                "owner": decision.owner,
                "reason": decision.reason,
                "written_fields": list(write.written_fields),
                "skipped_locked_fields": list(write.skipped_locked_fields),
            },
        )
        db.flush()
        return decision

    def classify_containers(
        self,
        *,
        db: Session,
        container_numbers: Iterable[str],
        now: datetime | None = None,
        import_batch_id: str | None = None,
    ) -> ClassificationSummary:
        now = ensure_utc(now or datetime.now(timezone.utc))
        repository = ContainerRepository(db)
        summary = ClassificationSummary()

        for container_number in dict.fromkeys(container_numbers):
            container = repository.get_by_number(container_number)
            if container is None:
                continue
            was_flagged = bool(container.has_exception)
            decision = self.classify(db=db, container=container, now=now, import_batch_id=import_batch_id)
            if decision is None:
                summary.unchanged_on_oracle_error += 1
                continue
            summary.decisions[container_number] = decision.state
            if decision.flagged:
                summary.flagged += 1
            elif was_flagged and not container.has_exception:
                summary.cleared += 1
            if decision.state == STATE_RESOLVED:
                summary.resolved += 1
            elif decision.state == STATE_NORMAL:
                summary.normal += 1

        db.commit()
        log_event(
            logger,
            logging.INFO,
            "exceptions_classified",
            batch_id=import_batch_id,
            flagged=summary.flagged,
            cleared=summary.cleared,
            resolved=summary.resolved,
            normal=summary.normal,
        )
        return summary


@lru_cache(maxsize=1)
def get_exception_classifier() -> ExceptionClassifier:
    return ExceptionClassifier()
