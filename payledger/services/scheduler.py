"""Background jobs using APScheduler — monthly credit drip for yearly subscribers."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from payledger.payments.credits import CreditManager

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_yearly_allocation(credits: CreditManager) -> int:
    """Grant the next month of credits to every yearly subscriber who is due."""
    logger.info("Yearly allocation run starting...")
    try:
        allocated = await credits.allocate_due_yearly_credits()
    except Exception:
        logger.exception("Yearly allocation run failed")
        return 0
    logger.info("Yearly allocation run complete: %d users allocated", allocated)
    return allocated


def start_scheduler(credits: CreditManager, interval_hours: int = 6, first_run: Optional[datetime] = None):
    """Start the background scheduler for the yearly allocation job."""
    # next_run_time=None would add the job paused
    extra = {"next_run_time": first_run} if first_run is not None else {}
    scheduler.add_job(
        scheduled_yearly_allocation,
        trigger=IntervalTrigger(hours=interval_hours),
        args=[credits],
        id="yearly_credit_allocation",
        name="Yearly subscription monthly credit allocation",
        replace_existing=True,
        **extra,
    )
    scheduler.start()
    logger.info("Scheduler started — yearly allocation every %dh", interval_hours)


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
