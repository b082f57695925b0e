"""Main entry point for the scheduled gamification rollovers

Usage:
    python -m src.main daily [YYYY-MM-DD]
    python -m src.main weekly [YYYY-MM-DD]

When CRON_SECRET is set, the scheduler must pass the same value in
ROLLOVER_SECRET or the job exits with status 3 before touching the database.
"""
import asyncio
import hmac
import logging
import os
import sys
from datetime import date
from typing import Optional

from src.config import CRON_SECRET, LOG_LEVEL, validate_config
from src.db.connection import db
from src.db.queries import PostgresGamificationStore
from src.exceptions import ValidationError
from src.gamification.rollover import run_daily_reset, run_weekly_group_reset
from src.gamification.store import GamificationStore
from src.models.gamification import RolloverReport
from src.services.container import init_container
from src.utils.datetime_helpers import parse_iso_date

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=getattr(logging, LOG_LEVEL)
)

logger = logging.getLogger(__name__)

ROLLOVER_JOBS = ("daily", "weekly")
EXIT_UNAUTHORIZED = 3


def authorize_rollover(provided_secret: Optional[str]) -> bool:
    """
    Check a scheduler-supplied secret against CRON_SECRET

    An empty CRON_SECRET disables the check (local runs).
    """
    if not CRON_SECRET:
        return True
    return hmac.compare_digest(provided_secret or "", CRON_SECRET)


async def run_rollover(job: str, store: GamificationStore, today: date) -> RolloverReport:
    """
    Run one rollover job against a store

    Args:
        job: 'daily' or 'weekly'
        store: Gamification store
        today: Date the job runs for

    Returns:
        RolloverReport from the job
    """
    if job == "daily":
        return await run_daily_reset(store, today)
    if job == "weekly":
        return await run_weekly_group_reset(store, today)
    raise ValidationError(f"Unknown rollover job: {job}", field="job", value=job)


async def main(argv: list[str]) -> int:
    """Main application entry point"""
    if not argv or argv[0] not in ROLLOVER_JOBS:
        logger.error(f"Usage: python -m src.main {{{'|'.join(ROLLOVER_JOBS)}}} [YYYY-MM-DD]")
        return 2

    job = argv[0]
    if not authorize_rollover(os.getenv("ROLLOVER_SECRET")):
        logger.error(f"Refusing {job} rollover: ROLLOVER_SECRET does not match CRON_SECRET")
        return EXIT_UNAUTHORIZED

    try:
        # Validate configuration
        logger.info("Validating configuration...")
        validate_config()

        # Initialize database
        logger.info("Initializing database connection pool...")
        await db.init_pool()

        container = init_container(PostgresGamificationStore(db))
        today = parse_iso_date(argv[1]) if len(argv) > 1 else container.clock.today()

        logger.info(f"Running {job} rollover for {today}")
        report = await run_rollover(job, container.store, today)

        if not report.ok:
            logger.warning(f"{job} rollover finished with {len(report.errors)} errors")
            return 1
        return 0

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        logger.info("Closing database connection...")
        await db.close_pool()

        logger.info("Shutdown complete")


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
