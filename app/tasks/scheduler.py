# app/tasks/scheduler.py
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.core.config import Settings
from app.services.escrow_service import EscrowService
from app.tasks.payouts import integrity_check_job, payout_sweep_job

logger = logging.getLogger(__name__)


def build_scheduler(escrow: EscrowService, config: Settings) -> AsyncIOScheduler:
    """
    Background jobs:
      - payout sweep for COMPLETED orders not yet paid out
      - wallet integrity check (negative balances)
    """
    scheduler = AsyncIOScheduler(timezone=config.TZ)

    scheduler.add_job(
        payout_sweep_job,
        "interval",
        seconds=config.PAYOUT_SWEEP_SECONDS,
        args=[escrow],
        id="payout_sweep",
        replace_existing=True,
        coalesce=True,          # merge piled-up triggers
        max_instances=1,        # never pay out the same batch twice in parallel
        misfire_grace_time=10,
    )

    scheduler.add_job(
        integrity_check_job,
        "interval",
        seconds=config.INTEGRITY_CHECK_SECONDS,
        args=[escrow],
        id="wallet_integrity",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=30,
    )
    return scheduler


def start_scheduler(scheduler: AsyncIOScheduler) -> None:
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def stop_scheduler(scheduler: AsyncIOScheduler) -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
