"""
app/services/improvement_loop.py

Self-improving dictionary loop. Each iteration runs the benchmark corpus
with the active dictionary, scores the result, asks the oracle about the
headers nothing mapped, and feeds accepted suggestions back into the
dictionary for the next iteration.

Stopping policy:
    - TARGET_MET when coverage and score both clear their targets.
    - STALLED after three consecutive iterations without a new best score,
      or when iterations run out and the last one did not improve.
    - MAX_ITERATIONS when iterations run out on an improving iteration.

An iteration scoring more than 5% below the best restores the best
checkpoint before the next iteration. The stall counter is not reset.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from app.config import ImprovementSettings, get_improvement_settings
from app.connectors.base import RowSource
from app.dictionary.canonical_dictionary import CanonicalDictionary
from app.dictionary.dictionary_store import DictionaryStore
from app.dictionary.dictionary_updater import DictionaryUpdate, apply_suggestions
from app.logging_utils import log_event
from app.services.benchmark_pipeline import (
    IterationOutcome,
    IterationScores,
    collect_unmapped_stats,
    score_iteration,
)
from app.services.improvement_artifacts import ImprovementArtifacts
from oracle.client import ClassificationOracle
from oracle.errors import OracleError
from oracle.schema import FieldSuggestion

logger = logging.getLogger(__name__)

STOP_TARGET_MET = "TARGET_MET"
STOP_STALLED = "STALLED"
STOP_MAX_ITERATIONS = "MAX_ITERATIONS"

STALL_PATIENCE = 3
REGRESSION_TOLERANCE = 0.05


class IterationRunner(Protocol):
    def run_iteration(
        self,
        *,
        sources: Sequence[RowSource],
        dictionary: CanonicalDictionary,
        iteration: int,
    ) -> IterationOutcome:
        ...


Scorer = Callable[[IterationOutcome, CanonicalDictionary], IterationScores]


@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    scores: IterationScores
    dictionary_version_before: str
    dictionary_version_after: str
    suggestions: int
    synonyms_added: int
    pending_added: int
    improved: bool
    rolled_back: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "scores": self.scores.to_dict(),
            "dictionary_version_before": self.dictionary_version_before,
            "dictionary_version_after": self.dictionary_version_after,
            "suggestions": self.suggestions,
            "synonyms_added": self.synonyms_added,
            "pending_added": self.pending_added,
            "improved": self.improved,
            "rolled_back": self.rolled_back,
        }


@dataclass
class ImprovementHistory:
    run_dir: Path
    iterations: list[IterationRecord] = field(default_factory=list)
    stop_reason: str | None = None
    best_iteration: int | None = None
    best_score: float | None = None
    final_dictionary_version: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.stop_reason == STOP_TARGET_MET

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_dir": str(self.run_dir),
            "stop_reason": self.stop_reason,
            "best_iteration": self.best_iteration,
            "best_score": self.best_score,
            "final_dictionary_version": self.final_dictionary_version,
            "iterations": [record.to_dict() for record in self.iterations],
        }


class ImprovementLoop:
    """
    Sequential across iterations; each iteration's dictionary update is the
    next iteration's input.
    """

    def __init__(
        self,
        *,
        runner: IterationRunner,
        oracle: ClassificationOracle,
        dictionary_store: DictionaryStore,
        settings: ImprovementSettings | None = None,
        scorer: Scorer = score_iteration,
        run_id: str | None = None,
    ) -> None:
        self._runner = runner
        self._oracle = oracle
        self._store = dictionary_store
        self._settings = settings or get_improvement_settings()
        self._scorer = scorer
        self._run_id = run_id

    def run(
        self,
        sources: Sequence[RowSource],
        *,
        max_iterations: int | None = None,
        target_coverage: float | None = None,
        target_score: float | None = None,
    ) -> ImprovementHistory:
        max_iterations = max_iterations if max_iterations is not None else self._settings.max_iterations
        target_coverage = target_coverage if target_coverage is not None else self._settings.target_coverage
        target_score = target_score if target_score is not None else self._settings.target_score
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        artifacts = ImprovementArtifacts(self._settings.output_dir, run_id=self._run_id)
        dictionary = self._store.load(refresh=True)
        artifacts.write_config(
            {
                "max_iterations": max_iterations,
                "target_coverage": target_coverage,
                "target_score": target_score,
                "sources": [getattr(source, "source_name", type(source).__name__) for source in sources],
                "initial_dictionary_version": dictionary.version,
                "started_at": datetime.now(timezone.utc).isoformat(),
            }
        )

        history = ImprovementHistory(run_dir=artifacts.run_dir)
        best_score: float | None = None
        stall_count = 0

        for iteration in range(1, max_iterations + 1):
            version_before = dictionary.version
            outcome = self._runner.run_iteration(sources=sources, dictionary=dictionary, iteration=iteration)
            scores = self._scorer(outcome, dictionary)
            unmapped = collect_unmapped_stats(outcome)
            suggestions = self._suggest(unmapped, dictionary)
            update = apply_suggestions(dictionary, suggestions)
            if update.changed:
                dictionary = self._store.save(update.dictionary)

            improved = best_score is None or scores.score > best_score
            rolled_back = False
            if improved:
                best_score = scores.score
                stall_count = 0
                history.best_iteration = iteration
                history.best_score = scores.score
                artifacts.write_checkpoint(iteration, scores=scores.to_dict(), dictionary=dictionary)
            else:
                stall_count += 1
                if scores.score < best_score * (1 - REGRESSION_TOLERANCE) and artifacts.has_checkpoint():
                    dictionary = self._store.restore(artifacts.checkpoint_dictionary_path)
                    rolled_back = True
                    logger.warning(
                        "Iteration %d regressed to %.4f (best %.4f); restored dictionary %s",
                        iteration,
                        scores.score,
                        best_score,
                        dictionary.version,
                    )

            record = IterationRecord(
                iteration=iteration,
                scores=scores,
                dictionary_version_before=version_before,
                dictionary_version_after=dictionary.version,
                suggestions=len(suggestions),
                synonyms_added=update.synonyms_added,
                pending_added=update.pending_added,
                improved=improved,
                rolled_back=rolled_back,
            )
            history.iterations.append(record)
            artifacts.write_iteration(
                iteration,
                scores=scores.to_dict(),
                analyzer_output=self._analyzer_output(unmapped, suggestions, update, record),
            )
            log_event(
                logger,
                logging.INFO,
                "iteration_scored",
                iteration=iteration,
                score=scores.score,
                coverage=scores.coverage,
                improved=improved,
                stall_count=stall_count,
                rolled_back=rolled_back,
                dictionary_version=dictionary.version,
            )

            if scores.coverage >= target_coverage and scores.score >= target_score:
                history.stop_reason = STOP_TARGET_MET
                break
            if stall_count >= STALL_PATIENCE:
                history.stop_reason = STOP_STALLED
                break

        if history.stop_reason is None:
            last = history.iterations[-1]
            history.stop_reason = STOP_MAX_ITERATIONS if last.improved else STOP_STALLED

        if history.stop_reason != STOP_TARGET_MET and artifacts.has_checkpoint():
            dictionary = self._restore_best(dictionary, artifacts)

        history.final_dictionary_version = dictionary.version
        artifacts.write_summary(
            {
                **history.to_dict(),
                "finished_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        logger.info(
            "Improvement run finished: %s after %d iteration(s), best=%s at iteration %s",
            history.stop_reason,
            len(history.iterations),
            history.best_score,
            history.best_iteration,
        )
        return history

    def _suggest(
        self,
        unmapped: Sequence[Mapping[str, Any]],
        dictionary: CanonicalDictionary,
    ) -> list[FieldSuggestion]:
        if not unmapped:
            return []
        try:
            return list(self._oracle.suggest_fields(unmapped, dictionary))
        except OracleError as exc:
            logger.warning("Field suggestion failed; continuing without dictionary changes: %s", exc)
            return []

    def _restore_best(self, dictionary: CanonicalDictionary, artifacts: ImprovementArtifacts) -> CanonicalDictionary:
        restored = self._store.restore(artifacts.checkpoint_dictionary_path)
        if restored.version != dictionary.version:
            logger.info("Restored best checkpoint dictionary %s (was %s)", restored.version, dictionary.version)
        return restored

    @staticmethod
    def _analyzer_output(
        unmapped: Sequence[Mapping[str, Any]],
        suggestions: Sequence[FieldSuggestion],
        update: DictionaryUpdate,
        record: IterationRecord,
    ) -> dict[str, Any]:
        return {
            "unmapped_headers": list(unmapped),
            "suggestions": [suggestion.model_dump(mode="json") for suggestion in suggestions],
            "dictionary_update": {
                "version_before": record.dictionary_version_before,
                "version_after": record.dictionary_version_after,
                "synonyms_added": update.synonyms_added,
                "pending_added": update.pending_added,
                "discarded": update.discarded,
                "details": list(update.details),
            },
            "rolled_back": record.rolled_back,
        }
