"""
Archive and reconcile one spreadsheet from the CLI.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from app.connectors.base import RowSourceError
from app.connectors.spreadsheet_connector import SpreadsheetRowSource
from app.logging_utils import configure_logging
from app.services.import_orchestrator_service import ImportOrchestratorService
from db.session import SessionLocal


def main() -> int:
    parser = argparse.ArgumentParser(description="Import a container tracking spreadsheet.")
    parser.add_argument("path", type=Path, help="CSV or Excel file to import.")
    parser.add_argument(
        "--batch-id",
        dest="batch_id",
        default=None,
        help="Batch key. Defaults to the file name, so re-running the same file is idempotent.",
    )
    parser.add_argument("--sheet", dest="sheet_name", default=None, help="Optional Excel sheet name.")
    parser.add_argument(
        "--row-limit",
        dest="row_limit",
        type=int,
        default=0,
        help="Only read the first N rows (0 = all).",
    )
    args = parser.parse_args()

    configure_logging()

    source = SpreadsheetRowSource(args.path, sheet_name=args.sheet_name)
    try:
        row_batch = source.read(row_limit=args.row_limit)
    except RowSourceError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    orchestrator = ImportOrchestratorService()
    with SessionLocal() as db:
        summary = orchestrator.run_batch(
            db=db,
            batch_id=args.batch_id or row_batch.source_name,
            row_batch=row_batch,
        )

    print(json.dumps(summary.to_dict(), indent=2, default=str))
    return 0 if summary.status == "COMPLETED" else 1


if __name__ == "__main__":
    raise SystemExit(main())
