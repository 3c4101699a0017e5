"""
Scheduled auto reconciliation: start a batch for every business with an
active matching rule and wait for the batches to finish.

Usage:
    bankrecon-auto-run [--hours N | --start ISO --end ISO]

Examples:
    # Trailing 24 hours (RECON_AUTO_RUN_WINDOW_HOURS)
    bankrecon-auto-run

    # Explicit window
    bankrecon-auto-run --start 2024-06-01T00:00:00 --end 2024-07-01T00:00:00
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timedelta

from bankrecon.config import settings
from bankrecon.db.init_db import init_db
from bankrecon.logging_config import configure_logging
from bankrecon.schemas.batch import BatchWindow
from bankrecon.services.orchestrator import BatchOrchestrator
from bankrecon.utils.dates import utcnow

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run auto reconciliation for every business with an active matching rule.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--hours",
        type=int,
        default=settings.auto_run_window_hours,
        help="Size of the trailing window in hours (default: %(default)s).",
    )
    parser.add_argument("--start", type=datetime.fromisoformat, default=None, help="Window start (ISO 8601).")
    parser.add_argument("--end", type=datetime.fromisoformat, default=None, help="Window end (ISO 8601).")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for each batch (default: no limit).",
    )
    return parser.parse_args(argv)


def window_from_args(args: argparse.Namespace) -> BatchWindow:
    end = args.end or utcnow()
    start = args.start or end - timedelta(hours=args.hours)
    return BatchWindow(start_date=start, end_date=end)


def main(argv: list[str] | None = None, orchestrator: BatchOrchestrator | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(settings.log_level)
    if orchestrator is None:
        init_db()
        orchestrator = BatchOrchestrator()

    try:
        result = orchestrator.run_for_all_businesses(window_from_args(args))
        failed = result.errors
        for batch in result.batches:
            try:
                orchestrator.wait(batch.id, timeout=args.timeout)
            except Exception:
                logger.exception("Auto reconciliation batch failed", extra={"batch_id": batch.id})
                failed += 1
    finally:
        orchestrator.runner.shutdown(wait=True)

    print(f"businesses={result.total} started={result.processed} errors={failed}")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
