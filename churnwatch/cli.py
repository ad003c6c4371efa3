"""ChurnWatch — Command line entry points.

  churnwatch run-daily [--date YYYY-MM-DD] [--dry-run]
  churnwatch catch-up [--end-date YYYY-MM-DD]
  churnwatch rollup YYYY-MM [--historical] [--data-through YYYY-MM-DD]
  churnwatch reclassify YYYY-MM
  churnwatch extract YYYY-MM-DD [--dry-run]

Every command prints its result as JSON and exits non-zero on failure.
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from churnwatch.analyzer.pipeline import ChurnPipeline
from churnwatch.connectors.warehouse.client import WarehouseClient
from churnwatch.core.logging import get_logger
from churnwatch.core.months import parse_date
from churnwatch.database import engine, init_db
from churnwatch.etl.daily_extractor import extract_day
from churnwatch.etl.monthly_rollup import RollupError
from churnwatch.etl.run_tracker import PipelineAlreadyRunningError
from churnwatch.storage.repository import sql_repository_factory

logger = get_logger("cli")


def _emit(payload: dict) -> None:
    json.dump(payload, fp=sys.stdout, indent=2, sort_keys=True, default=str)
    print()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="churnwatch", description="Daily churn-risk pipeline"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run-daily", help="Run the full pipeline for one date")
    run.add_argument("--date", type=parse_date, help="Processing date (default: yesterday)")
    run.add_argument("--dry-run", action="store_true")

    catch = sub.add_parser("catch-up", help="Fill missing days since the last run")
    catch.add_argument("--end-date", type=parse_date, help="Last day (default: yesterday)")

    rollup = sub.add_parser("rollup", help="Rebuild and classify one month")
    rollup.add_argument("month", help="YYYY-MM")
    rollup.add_argument("--historical", action="store_true", help="Close the month")
    rollup.add_argument("--data-through", type=parse_date)

    reclassify = sub.add_parser("reclassify", help="Overwrite a closed month's risk")
    reclassify.add_argument("month", help="YYYY-MM")

    extract = sub.add_parser("extract", help="Extract the four daily metrics only")
    extract.add_argument("date", type=parse_date)
    extract.add_argument("--dry-run", action="store_true")

    return parser


async def _dispatch(args: argparse.Namespace, pipeline: ChurnPipeline) -> int:
    if args.command == "run-daily":
        summary = await pipeline.run_daily(args.date, dry_run=args.dry_run)
        _emit(summary.model_dump(mode="json"))
        return 0 if summary.success else 1

    if args.command == "catch-up":
        summary = await pipeline.catch_up(args.end_date)
        _emit(summary.model_dump(mode="json"))
        return 0 if summary.success else 1

    if args.command == "rollup":
        result = pipeline.process_month(
            args.month, historical=args.historical, data_through=args.data_through
        )
        _emit(result.model_dump(mode="json"))
        return 0

    if args.command == "reclassify":
        result = pipeline.reclassify_historical(args.month)
        _emit(result.model_dump(mode="json"))
        return 0

    with pipeline.tracker.exclusive(f"extract {args.date}"):
        results = await extract_day(
            pipeline.source, pipeline.repositories, args.date, dry_run=args.dry_run
        )
    _emit({name: r.model_dump() for name, r in results.items()})
    return 0 if all(r.error is None for r in results.values()) else 1


async def _run(args: argparse.Namespace) -> int:
    client = WarehouseClient()
    try:
        return await _dispatch(args, ChurnPipeline(client, engine, sql_repository_factory(engine)))
    finally:
        await client.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the `churnwatch` console script."""
    args = _build_parser().parse_args(argv)
    init_db()
    try:
        return asyncio.run(_run(args))
    except PipelineAlreadyRunningError as e:
        logger.error(str(e))
        return 2
    except (RollupError, ValueError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
