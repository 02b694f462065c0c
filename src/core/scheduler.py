"""Optional in-process scheduler for deployments without an external cron."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.core.config import settings
from src.core.database.session import async_session
from src.core.exceptions import ConfigurationError
from src.modules.billing_jobs.service import BillingJobRunner

logger = logging.getLogger(__name__)

BILLING_JOB_ID = "billing-daily"
RECONCILE_JOB_ID = "mpesa-auto-verify"


async def run_daily_billing() -> None:
    try:
        async with async_session() as session:
            await BillingJobRunner(session).run_monthly()
    except Exception:
        logger.exception("Scheduled billing run failed")


async def run_reconciliation() -> None:
    """Per-organization frequency is enforced by the cycle's last_status_check filter."""
    try:
        async with async_session() as session:
            await BillingJobRunner(session).auto_verify_mpesa()
    except ConfigurationError as exc:
        logger.error("Scheduled M-Pesa auto-verify skipped: %s", exc.message)
    except Exception:
        logger.exception("Scheduled M-Pesa auto-verify failed")


def create_scheduler() -> AsyncIOScheduler:
    # max_instances=1: an overrunning cycle finishes and the next tick is dropped
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_daily_billing,
        trigger=CronTrigger(hour=settings.scheduler_billing_hour_utc, minute=0),
        id=BILLING_JOB_ID,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=3600,
        replace_existing=True,
    )
    scheduler.add_job(
        run_reconciliation,
        trigger=IntervalTrigger(seconds=settings.scheduler_poll_interval_seconds),
        id=RECONCILE_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
