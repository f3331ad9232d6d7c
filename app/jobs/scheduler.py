"""APScheduler setup and job registration."""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.config import settings
from app.jobs.expired_ballots import expired_ballot_cleanup

scheduler = AsyncIOScheduler(timezone=settings.timezone)


def register_jobs() -> None:
    """Register all periodic jobs if not already present."""
    interval = min(settings.expired_ballot_cleanup_minutes, 59)
    if interval > 0 and scheduler.get_job("expired_ballot_cleanup") is None:
        scheduler.add_job(
            expired_ballot_cleanup,
            CronTrigger(minute=f"*/{interval}", timezone=settings.timezone),
            id="expired_ballot_cleanup",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
