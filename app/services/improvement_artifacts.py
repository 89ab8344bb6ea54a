"""
app/services/improvement_artifacts.py

Run-scoped documents written by the improvement loop. These live on disk
next to each other, outside the transactional store.

    run_<timestamp>/
        config.json
        iteration_001/scores.json
        iteration_001/analyzer_output.json
        best_run/scores.json
        best_run/iteration_number.txt
        best_run/dictionary.yml
        summary.json
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from app.dictionary.canonical_dictionary import CanonicalDictionary
from app.dictionary.dictionary_store import write_dictionary_file

logger = logging.getLogger(__name__)

BEST_RUN_DIR = "best_run"
CHECKPOINT_DICTIONARY = "dictionary.yml"


def _write_json(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    return path


class ImprovementArtifacts:
    def __init__(self, output_dir: Path, *, run_id: str | None = None) -> None:
        stamp = run_id or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        self._run_dir = Path(output_dir) / f"run_{stamp}"
        self._run_dir.mkdir(parents=True, exist_ok=True)

    @property
    def run_dir(self) -> Path:
        return self._run_dir

    @property
    def checkpoint_dictionary_path(self) -> Path:
        return self._run_dir / BEST_RUN_DIR / CHECKPOINT_DICTIONARY

    def has_checkpoint(self) -> bool:
        return self.checkpoint_dictionary_path.exists()

    def iteration_dir(self, iteration: int) -> Path:
        return self._run_dir / f"iteration_{iteration:03d}"

    def write_config(self, config: dict[str, Any]) -> Path:
        return _write_json(self._run_dir / "config.json", config)

    def write_iteration(
        self,
        iteration: int,
        *,
        scores: dict[str, Any],
        analyzer_output: dict[str, Any],
    ) -> Path:
        directory = self.iteration_dir(iteration)
        _write_json(directory / "scores.json", scores)
        _write_json(directory / "analyzer_output.json", analyzer_output)
        return directory

    def write_checkpoint(
        self,
        iteration: int,
        *,
        scores: dict[str, Any],
        dictionary: CanonicalDictionary,
    ) -> Path:
        """
        Persist the best-so-far snapshot. Called after every improving iteration.
        """

        directory = self._run_dir / BEST_RUN_DIR
        _write_json(directory / "scores.json", scores)
        (directory / "iteration_number.txt").write_text(f"{iteration}\n", encoding="utf-8")
        write_dictionary_file(directory / CHECKPOINT_DICTIONARY, dictionary)
        logger.info("Checkpointed iteration %d (dictionary %s) to %s", iteration, dictionary.version, directory)
        return directory

    def write_summary(self, summary: dict[str, Any]) -> Path:
        return _write_json(self._run_dir / "summary.json", summary)
