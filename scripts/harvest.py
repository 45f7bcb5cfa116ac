"""CLI entrypoint for scheduled batch harvests and task administration."""
from __future__ import annotations

import argparse
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from harvester.collect.browser import BrowserCollectorSession
from harvester.config import (
    get_batch_settings,
    get_browser_settings,
    get_database_settings,
    get_schedule_settings,
)
from harvester.data.records import DATA_TYPE_POSTS, DATA_TYPES, normalize_handle
from harvester.data.store import FREQUENCY_ALL, HarvestStore, create_store_engine, get_store
from harvester.errors import HarvestError
from harvester.logging_utils import setup_harvest_logging
from harvester.runner import BatchRunner
from harvester.schedule.rate import FREQUENCY_TIERS

LOGGER = logging.getLogger("harvester.cli")

TaskSpec = Tuple[str, str, Optional[int]]


def parse_task_spec(raw: str) -> TaskSpec:
    """Parse ``HANDLE:TYPE[:N]`` into ``(handle, data_type, max_count)``."""

    parts = raw.split(":")
    if len(parts) not in (2, 3):
        raise argparse.ArgumentTypeError(f"expected HANDLE:TYPE[:N], got '{raw}'")
    handle = normalize_handle(parts[0])
    data_type = parts[1].strip().lower()
    if not handle:
        raise argparse.ArgumentTypeError(f"missing handle in '{raw}'")
    if data_type not in DATA_TYPES:
        raise argparse.ArgumentTypeError(f"unknown data type '{parts[1]}' (choose from {', '.join(DATA_TYPES)})")
    max_count = None
    if len(parts) == 3 and parts[2].strip():
        try:
            max_count = int(parts[2])
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"max count must be an integer in '{raw}'") from exc
    return handle, data_type, max_count


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Collect due profile tasks and merge them into the entity store",
        epilog="Administrative flags (--register, --disable, --init-tiers, --list-stale, --reset-stale) run and exit without a batch.",
    )
    parser.add_argument(
        "--frequency",
        choices=(FREQUENCY_ALL,) + FREQUENCY_TIERS,
        default=FREQUENCY_ALL,
        help="Only run tasks in this frequency tier (default: all).",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Maximum number of entities sampled for this batch (default: BATCH_SAMPLE_SIZE or 50).",
    )
    parser.add_argument(
        "--only",
        type=str,
        default=None,
        help="Comma-separated handles to restrict the batch to.",
    )
    parser.add_argument(
        "--skip-completed",
        action="store_true",
        help="Skip tasks whose last run completed.",
    )
    parser.add_argument(
        "--single",
        type=str,
        default=None,
        metavar="HANDLE",
        help="Collect and merge one handle without touching its task.",
    )
    parser.add_argument(
        "--type",
        choices=DATA_TYPES,
        default=DATA_TYPE_POSTS,
        help="Data type for --single (default: posts).",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=None,
        help="Maximum records for --single.",
    )
    parser.add_argument(
        "--register",
        type=parse_task_spec,
        action="append",
        default=[],
        metavar="HANDLE:TYPE[:N]",
        help="Create or reactivate a task (repeatable).",
    )
    parser.add_argument(
        "--disable",
        type=parse_task_spec,
        action="append",
        default=[],
        metavar="HANDLE:TYPE",
        help="Disable a task without deleting it (repeatable).",
    )
    parser.add_argument(
        "--init-tiers",
        action="store_true",
        help="Assign the medium tier to tasks without one and make them due now.",
    )
    parser.add_argument(
        "--list-stale",
        action="store_true",
        help="List tasks stuck in running longer than STALE_TASK_MINUTES.",
    )
    parser.add_argument(
        "--reset-stale",
        action="store_true",
        help="Return stale running tasks to pending. Only use when no other run is active.",
    )
    parser.add_argument(
        "--stop-on-error",
        action="store_true",
        help="Stop the batch at the first failed task and exit non-zero.",
    )
    parser.add_argument(
        "--report",
        type=Path,
        default=None,
        help="Where to write the JSON batch report (default: BATCH_REPORT_PATH).",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Console log level (default: INFO).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only show warnings and errors on the console.",
    )
    return parser.parse_args(argv)


def has_admin_action(args: argparse.Namespace) -> bool:
    return bool(args.register or args.disable or args.init_tiers or args.list_stale or args.reset_stale)


def administer(store: HarvestStore, args: argparse.Namespace) -> int:
    """Apply task administration flags; returns the process exit code."""

    for handle, data_type, max_count in args.register:
        task_id = store.upsert_task(handle, data_type, max_count)
        LOGGER.info("Registered @%s %s (task %s, max=%s)", handle, data_type, task_id, max_count)

    for handle, data_type, _ in args.disable:
        if store.set_task_enabled(handle, data_type, False):
            LOGGER.info("Disabled @%s %s", handle, data_type)
        else:
            LOGGER.warning("No task for @%s %s", handle, data_type)

    if args.init_tiers:
        updated = store.initialize_frequency_tiers()
        LOGGER.info("Initialized frequency tier for %s task(s)", updated)

    if args.list_stale or args.reset_stale:
        schedule_settings = get_schedule_settings()
        stale = store.find_stale_running_tasks(timedelta(minutes=schedule_settings.stale_after_minutes))
        for task in stale:
            LOGGER.info("Stale: task %s @%s %s running since %s", task.id, task.handle, task.data_type, task.last_run_at)
        if not stale:
            LOGGER.info("No stale running tasks")
        if args.reset_stale and stale:
            reset = store.reset_running_tasks([task.id for task in stale])
            LOGGER.info("Reset %s stale task(s) to pending", reset)
    return 0


def _split_handles(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


def run(args: argparse.Namespace) -> int:
    store = get_store(create_store_engine(get_database_settings()))
    if has_admin_action(args):
        return administer(store, args)

    batch_settings = get_batch_settings()
    with BrowserCollectorSession(get_browser_settings()) as session:
        runner = BatchRunner(
            store,
            session,
            batch_settings=batch_settings,
            schedule_settings=get_schedule_settings(),
        )
        if args.single:
            result = runner.run_single(args.single, args.type, args.count)
            LOGGER.info(
                "Single run @%s %s: total=%s new=%s updated=%s discarded=%s (stored: %s)",
                normalize_handle(args.single),
                args.type,
                result.total,
                result.new,
                result.updated,
                result.discarded,
                runner.collection_stats(args.single, args.type),
            )
            return 0

        report = runner.run_batch(
            args.frequency,
            args.batch_size,
            only_entities=_split_handles(args.only),
            skip_completed=args.skip_completed,
            continue_on_error=False if args.stop_on_error else None,
        )
    path = report.write_json(args.report or batch_settings.report_path)
    LOGGER.info("Report written to %s", path)
    return report.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    console_log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    if args.quiet:
        console_log_level = logging.WARN
    setup_harvest_logging(console_level=console_log_level, quiet=args.quiet)

    try:
        return run(args)
    except HarvestError as exc:
        LOGGER.error("%s [%s]", exc.message, exc.error_code)
        return 1
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
