#!/usr/bin/env python3
"""
Ranking Batch Script

Run one collection pass over all active keywords. Meant for cron.

Usage:
    python scripts/run_batch.py
    python scripts/run_batch.py --init-db --report-card last30Days
    python scripts/run_batch.py --output stats.json -v
"""

import asyncio
import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from src.collector import BatchAlreadyRunningError
from src.database import init_db, get_db_context
from src.services import rankings
from src.utils.config import get_settings


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else get_settings().LOG_LEVEL.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
        ]
    )
    # Quiet down chatty loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run(output_file: str = None, report_period: str = None) -> int:
    """Run the batch; returns the process exit code."""
    try:
        collector = rankings.get_collector()
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    try:
        stats = await rankings.run_ranking_batch(collector=collector)
    except BatchAlreadyRunningError as e:
        print(f"ERROR: {e}")
        return 2
    finally:
        await collector.fetcher.client.close()

    print(f"\n{'='*60}")
    print("RANKING BATCH COMPLETE")
    print(f"{'='*60}")
    print(f"Keywords:        {stats.total}")
    print(f"Succeeded:       {stats.succeeded}")
    print(f"Failed:          {stats.failed}")
    print(f"Circuit-broken:  {stats.circuit_broken}")
    print(f"Skipped:         {stats.skipped}")
    print(f"API calls:       {stats.api_calls}")
    for change in stats.significant_changes:
        print(
            f"  {change['keyword']}: {change['previous_position']} -> "
            f"{change['current_position']} ({change['change']:+d})"
        )
    print(f"{'='*60}")

    if report_period:
        with get_db_context() as db:
            card = rankings.build_report_card(db, report_period)
        print(f"Report card ({card.period}): {card.overall_grade} ({card.overall_score})")
        print(f"Average position: {card.metrics['average_position']}")

    if output_file:
        output_path = Path(output_file)
        with open(output_path, "w") as f:
            json.dump(stats.to_dict(), f, indent=2, default=str)
        print(f"Stats saved to: {output_path}")

    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Collect search rankings for all active keywords"
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create database tables before running"
    )
    parser.add_argument(
        "--report-card",
        metavar="PERIOD",
        help="Print the report card for PERIOD after the batch (e.g. last30Days)"
    )
    parser.add_argument(
        "--output", "-o",
        help="Save batch stats to JSON file"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging"
    )

    args = parser.parse_args()

    load_dotenv()
    setup_logging(args.verbose)

    if args.init_db:
        init_db()

    sys.exit(asyncio.run(run(output_file=args.output, report_period=args.report_card)))


if __name__ == "__main__":
    main()
