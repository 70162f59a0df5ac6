#!/usr/bin/env python3
"""Run the market basket pipeline end to end from a CSV export.

Cleans the file, loads the transactions table, runs one analysis and
publishes the association set, then prints the strongest pairs as JSON.
Uses DATABASE_URL when set, otherwise an in-memory SQLite store.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from database import init_db
from services.association_rules_engine import AssociationRulesEngine
from services.csv_processor import csv_processor
from services.insights import summarize_analysis
from services.ranker import top_associations
from settings import ConfigurationError, load_analysis_settings


async def _run(csv_path: Path, min_cooccurrence: int | None, min_lift: float | None, top: int) -> dict:
    settings = load_analysis_settings().with_overrides(
        min_cooccurrence=min_cooccurrence,
        min_lift=min_lift,
    )
    await init_db()

    report = await csv_processor.process_csv(csv_path.read_text(encoding="utf-8-sig"), settings)
    print(
        f"Loaded {report.rows_loaded} rows ({report.valid_rows} valid, "
        f"{report.rows_dropped_invalid_date} dropped for bad dates)"
    )
    sys.stdout.flush()

    engine = AssociationRulesEngine(settings=settings)
    result = await engine.generate_association_rules()

    return {
        "cleaning": report.to_dict(),
        "summary": summarize_analysis(result.canonical, result.basket_sizes, result.total_orders),
        "top": [
            p.to_dict()
            for p in top_associations(result.canonical, n=top, min_lift=settings.top_min_lift)
        ],
    }


def _parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("csv_path", type=Path, help="Online Retail style CSV export")
    parser.add_argument("--min-cooccurrence", type=int, default=None, help="Override MIN_COOCCURRENCE")
    parser.add_argument("--min-lift", type=float, default=None, help="Override MIN_LIFT")
    parser.add_argument("--top", type=int, default=20, help="How many pairs to print")
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    if not args.csv_path.exists():
        raise SystemExit(f"✗ CSV file not found: {args.csv_path}")

    try:
        output = asyncio.run(_run(args.csv_path, args.min_cooccurrence, args.min_lift, args.top))
    except ConfigurationError as exc:
        print(f"✗ Invalid configuration: {exc}", file=sys.stderr)
        return 2
    except Exception as exc:
        print(f"✗ Analysis failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
