"""Bring the entry tables into conformance and print the outcome as JSON."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from db_pool import SQLiteConnectionPool
from errors import HomeReaderError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the SQLite database (default: DB_PATH or data.db)",
    )
    parser.add_argument(
        "--kind",
        action="append",
        choices=sorted(db.ENTRY_SCHEMAS),
        help="Entry table to reconcile; repeat for several (default: all)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.db:
        db.DB_PATH = args.db
        db._pool = SQLiteConnectionPool(args.db, max_connections=2)

    kinds = args.kind or list(db.ENTRY_SCHEMAS)
    report = {}
    try:
        for kind in kinds:
            report[kind] = db.ensure_entry_schema(kind).as_dict()
    except HomeReaderError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print(json.dumps(report, indent=2, ensure_ascii=False))
    not_ready = [kind for kind, status in report.items() if status["still_missing"]]
    if not_ready:
        print(f"Tables not ready: {', '.join(not_ready)}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
