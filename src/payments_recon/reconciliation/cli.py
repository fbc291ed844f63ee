#!/usr/bin/env python3
"""Command-line interface for reconciliation tools.

Usage:
    payments-recon reconcile --channel btn-1 --start 2026-03-01 --end 2026-03-07
    payments-recon reconcile --channel btn-1 --start 2026-03-01 --end 2026-03-07 --apply --batch-size 50
    payments-recon next-run --frequency weekly --day-of-week 3 --hour 9
    payments-recon run-due
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..database import (
    ScheduledReconciliationRepository,
    create_async_engine,
    create_tables,
    get_async_session_factory,
    session_scope,
)
from ..errors import ReconciliationError
from ..timeutils import utc_now
from .adapters import parse_datetime
from .models import ReconciliationRequest, RunStatus
from .schedule import ScheduleConfig, next_run
from .service import ReconciliationService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DIFFERENCES = 1
EXIT_FAILED = 2


def parse_cli_datetime(value: str, end_of_day: bool = False) -> datetime:
    """Parse a CLI date or datetime argument.

    A bare date used as the end of a window covers the whole day.

    Raises:
        ReconciliationError: If the value cannot be parsed.
    """
    parsed = parse_datetime(value)
    if end_of_day and len(value.strip()) <= 10:
        parsed = parsed + timedelta(days=1) - timedelta(seconds=1)
    return parsed


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def reconcile_async(
    request: ReconciliationRequest,
    include_details: bool = False,
    database_url: Optional[str] = None,
) -> int:
    """Run one reconciliation and print its report.

    Returns:
        0 when the ledgers agree or all differences were applied, 1 when
        differences remain, 2 when the run failed.
    """
    engine = create_async_engine(database_url=database_url)
    try:
        await create_tables(engine)
        async with session_scope(get_async_session_factory(engine)) as session:
            report = await ReconciliationService(session).run_reconciliation(request)
    except (ReconciliationError, SQLAlchemyError) as e:
        logger.error(f"Reconciliation failed: {e}")
        return EXIT_FAILED
    finally:
        await engine.dispose()

    _print_json(report.to_full_dict() if include_details else report.to_summary_dict())

    if report.status != RunStatus.SUCCESS:
        logger.warning(f"Reconciliation finished with status {report.status.value}")
        return EXIT_DIFFERENCES
    if not request.apply and report.diff is not None and not report.diff.is_clean:
        logger.warning(
            f"Ledgers differ: {report.total_missing} missing, "
            f"{report.total_mismatched} mismatched"
        )
        return EXIT_DIFFERENCES
    return EXIT_OK


async def run_due_async(now: Optional[datetime] = None, database_url: Optional[str] = None) -> int:
    """Run every active schedule whose next run has passed.

    Each schedule runs in its own transaction; a failure does not stop the
    others.
    """
    now = now or utc_now()
    engine = create_async_engine(database_url=database_url)
    factory = get_async_session_factory(engine)
    failures = 0
    try:
        await create_tables(engine)
        async with session_scope(factory) as session:
            due_ids = [s.id for s in await ScheduledReconciliationRepository(session).list_due(now)]

        logger.info(f"{len(due_ids)} scheduled reconciliation(s) due")
        for schedule_id in due_ids:
            try:
                async with session_scope(factory) as session:
                    report = await ReconciliationService(session).run_scheduled(schedule_id, now=now)
                _print_json(report.to_summary_dict())
            except (ReconciliationError, SQLAlchemyError) as e:
                failures += 1
                logger.error(f"Schedule {schedule_id} failed: {e}")
    finally:
        await engine.dispose()

    return EXIT_FAILED if failures else EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="payments-recon",
        description="Reconcile the local payments ledger against the processor's ledger.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    reconcile_parser = subparsers.add_parser("reconcile", help="Run a reconciliation job")
    reconcile_parser.add_argument("--channel", "-c", required=True, help="Payment channel ID")
    reconcile_parser.add_argument("--organization", help="Organization ID")
    reconcile_parser.add_argument(
        "--start", "-s",
        required=True,
        help="Start date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)",
    )
    reconcile_parser.add_argument(
        "--end", "-e",
        required=True,
        help="End date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)",
    )
    reconcile_parser.add_argument(
        "--provider", "-p",
        default="clicpago",
        help="Remote ledger provider (default: clicpago)",
    )
    reconcile_parser.add_argument(
        "--apply",
        action="store_true",
        help="Write the differences to the local ledger",
    )
    reconcile_parser.add_argument(
        "--batch-size",
        type=int,
        help="Apply in batches of this many records",
    )
    reconcile_parser.add_argument(
        "--details",
        action="store_true",
        help="Include the diff and apply outcomes in the output",
    )

    next_run_parser = subparsers.add_parser("next-run", help="Compute a schedule's next run time")
    next_run_parser.add_argument(
        "--frequency", "-f",
        required=True,
        choices=["daily", "weekly", "monthly"],
    )
    next_run_parser.add_argument("--day-of-week", type=int, help="0 = Sunday ... 6 = Saturday")
    next_run_parser.add_argument("--day-of-month", type=int, help="1-31")
    next_run_parser.add_argument("--hour", type=int, default=0)
    next_run_parser.add_argument("--minute", type=int, default=0)
    next_run_parser.add_argument("--now", help="Reference date/time (default: current UTC time)")

    run_due_parser = subparsers.add_parser("run-due", help="Run all scheduled reconciliations that are due")
    run_due_parser.add_argument("--now", help="Reference date/time (default: current UTC time)")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return EXIT_DIFFERENCES

    if parsed_args.command == "reconcile":
        try:
            start_time = parse_cli_datetime(parsed_args.start)
            end_time = parse_cli_datetime(parsed_args.end, end_of_day=True)
            request = ReconciliationRequest(
                payment_channel_id=parsed_args.channel,
                organization_id=parsed_args.organization,
                start_time=start_time,
                end_time=end_time,
                provider=parsed_args.provider,
                apply=parsed_args.apply,
                batch_size=parsed_args.batch_size,
            )
        except (ReconciliationError, ValueError) as e:
            logger.error(str(e))
            return EXIT_DIFFERENCES

        return asyncio.run(reconcile_async(request, include_details=parsed_args.details))

    if parsed_args.command == "next-run":
        try:
            config = ScheduleConfig(
                frequency=parsed_args.frequency,
                day_of_week=parsed_args.day_of_week,
                day_of_month=parsed_args.day_of_month,
                hour=parsed_args.hour,
                minute=parsed_args.minute,
            )
            now = parse_cli_datetime(parsed_args.now) if parsed_args.now else None
        except (ReconciliationError, ValueError) as e:
            logger.error(str(e))
            return EXIT_DIFFERENCES

        print(next_run(config, now).isoformat())
        return EXIT_OK

    if parsed_args.command == "run-due":
        try:
            now = parse_cli_datetime(parsed_args.now) if parsed_args.now else None
        except ReconciliationError as e:
            logger.error(str(e))
            return EXIT_DIFFERENCES
        return asyncio.run(run_due_async(now))

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
