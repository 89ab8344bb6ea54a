"""
Run the dictionary improvement loop over a benchmark corpus from the CLI.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import replace
from pathlib import Path

from app.config import get_improvement_settings
from app.connectors.spreadsheet_connector import SpreadsheetRowSource
from app.logging_utils import configure_logging
from app.dictionary.dictionary_store import get_dictionary_store
from app.services.benchmark_pipeline import BenchmarkPipeline
from app.services.improvement_loop import ImprovementLoop
from db.session import SessionLocal
from oracle.client import build_oracle

_SOURCE_SUFFIXES = {".csv", ".xlsx", ".xlsm", ".xls"}


def _collect_sources(paths: list[Path]) -> list[SpreadsheetRowSource]:
    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(sorted(item for item in path.iterdir() if item.suffix.lower() in _SOURCE_SUFFIXES))
        else:
            files.append(path)
    return [SpreadsheetRowSource(file) for file in files]


def main() -> int:
    settings = get_improvement_settings()
    parser = argparse.ArgumentParser(description="Iteratively improve the canonical dictionary on a benchmark corpus.")
    parser.add_argument("sources", nargs="+", type=Path, help="Benchmark files or directories of files.")
    parser.add_argument("--max-iterations", type=int, default=settings.max_iterations)
    parser.add_argument("--target-coverage", type=float, default=settings.target_coverage)
    parser.add_argument("--target-score", type=float, default=settings.target_score)
    parser.add_argument("--row-limit", type=int, default=settings.row_limit, help="Rows per source (0 = all).")
    parser.add_argument("--output-dir", type=Path, default=settings.output_dir)
    args = parser.parse_args()

    configure_logging()

    sources = _collect_sources(args.sources)
    if not sources:
        parser.error("no benchmark sources found")

    oracle = build_oracle()
    loop = ImprovementLoop(
        runner=BenchmarkPipeline(session_factory=SessionLocal, oracle=oracle, row_limit=args.row_limit),
        oracle=oracle,
        dictionary_store=get_dictionary_store(),
        settings=replace(settings, output_dir=args.output_dir),
    )
    history = loop.run(
        sources,
        max_iterations=args.max_iterations,
        target_coverage=args.target_coverage,
        target_score=args.target_score,
    )

    print(json.dumps(history.to_dict(), indent=2, default=str))
    return 0 if history.succeeded else 1


if __name__ == "__main__":
    raise SystemExit(main())
