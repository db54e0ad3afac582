#!/usr/bin/env python3
"""
Run a backfill job from the command line.

Default is a dry run: the job reports what it would change without writing.

Examples:
    python -m scripts.run_backfill --list
    python -m scripts.run_backfill orders
    python -m scripts.run_backfill orders --apply --limit 500
    python -m scripts.run_backfill order-stripe --option kind=checkout --apply
    python -m scripts.run_backfill order-details --resume --apply
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from app.core.config import get_settings
from app.core.logging_config import setup_logging
from app.core.redis_client import close_redis
from app.db.sanity_client import close_sanity_client
from app.services.backfills import BACKFILL_JOBS, get_backfill_job, list_backfill_jobs
from app.utils.error_handler import AppException

logger = logging.getLogger(__name__)
console = Console()


def parse_option(raw: str) -> tuple:
    """
    Parse a key=value option.

    Raises:
        argparse.ArgumentTypeError: When the value has no '='
    """
    key, separator, value = raw.partition("=")
    if not separator or not key.strip():
        raise argparse.ArgumentTypeError(f"Invalid option '{raw}', expected key=value")
    return key.strip(), value.strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run an idempotent backfill over Sanity documents (dry run by default)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("job", nargs="?", choices=sorted(BACKFILL_JOBS), help="Backfill job name")
    parser.add_argument("--list", action="store_true", help="List available jobs and exit")
    parser.add_argument("--apply", action="store_true", help="Write changes (default is dry run)")
    parser.add_argument("--limit", type=int, help="Maximum number of documents to process")
    parser.add_argument("--resume", action="store_true", help="Resume from the last checkpoint")
    parser.add_argument(
        "--option",
        action="append",
        type=parse_option,
        default=[],
        metavar="KEY=VALUE",
        help="Job-specific option, may be repeated (e.g. --option kind=checkout)",
    )
    return parser


async def run(job_name: str, apply: bool, limit: Optional[int], resume: bool, options: Dict[str, Any]) -> Dict[str, Any]:
    """Run one job and close the shared clients afterwards."""
    job = get_backfill_job(job_name)
    try:
        return await job.run(dry_run=not apply, limit=limit, resume=resume, **options)
    finally:
        await close_sanity_client()
        await close_redis()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point.

    Returns:
        int: 0 on success, 1 when the job fails, 2 on usage errors
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list:
        table = Table(title="Backfill jobs")
        table.add_column("Job", style="cyan")
        table.add_column("Page size", justify="right")
        table.add_column("Description")
        for job in list_backfill_jobs():
            table.add_row(job["name"], str(job["pageSize"]), job["description"])
        console.print(table)
        return 0
    if not args.job:
        parser.print_usage(sys.stderr)
        return 2

    setup_logging()
    if not get_settings().sanity_configured:
        logger.error("❌ Sanity is not configured (SANITY_PROJECT_ID / SANITY_DATASET / SANITY_API_TOKEN)")
        return 2

    try:
        result = asyncio.run(run(args.job, args.apply, args.limit, args.resume, dict(args.option)))
    except AppException as e:
        console.print_json(data={"ok": False, "job": args.job, "error": e.message})
        return 1

    console.print_json(json.dumps(result, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
