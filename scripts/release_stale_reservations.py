#!/usr/bin/env python3
"""
Release stale credit reservations.

A reservation normally ends in finalize (call completed) or release (call
never connected). If the completion webhook is lost, the hold stays active and
keeps the funds out of the available balance. This sweep returns holds older
than a cutoff to available. Run it from cron or by hand.

Usage:
    # Release reservations older than STALE_RESERVATION_MINUTES (default 60)
    python3 scripts/release_stale_reservations.py

    # Custom cutoff
    python3 scripts/release_stale_reservations.py --minutes 180

    # Dry run (list only)
    python3 scripts/release_stale_reservations.py --dry-run
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta

from creditguard.config import settings
from creditguard.db.session import close_engines, get_write_session
from creditguard.observability import get_logger, setup_logging
from creditguard.services.finalization import FinalizationManager

logger = get_logger("release_stale_reservations")


async def sweep(older_than: timedelta, dry_run: bool) -> int:
    """Release (or list, on dry run) stale reservations. Returns how many."""
    try:
        async with get_write_session() as session:
            manager = FinalizationManager(session)

            if dry_run:
                stale = await manager.list_stale_reservations(older_than)
                for reservation_id, account_id in stale:
                    logger.info(
                        "stale_reservation_found",
                        reservation_id=str(reservation_id),
                        account_id=account_id,
                    )
                return len(stale)

            released = await manager.release_stale_reservations(older_than)
            return len(released)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Release credit reservations that were never finalized",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Release holds older than an hour
  python3 scripts/release_stale_reservations.py --minutes 60

  # Show what would be released
  python3 scripts/release_stale_reservations.py --dry-run --verbose
        """,
    )
    parser.add_argument(
        "--minutes",
        type=int,
        default=settings.stale_reservation_minutes,
        help=f"Age cutoff in minutes (default: {settings.stale_reservation_minutes})",
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Don't release, just list stale reservations"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    setup_logging()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.minutes <= 0:
        logger.error("invalid_cutoff", minutes=args.minutes)
        sys.exit(1)

    count = asyncio.run(sweep(timedelta(minutes=args.minutes), dry_run=args.dry_run))
    logger.info(
        "stale_sweep_finished",
        dry_run=args.dry_run,
        minutes=args.minutes,
        count=count,
    )
    sys.exit(0)


if __name__ == "__main__":
    main()
