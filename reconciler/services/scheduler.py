"""Internal task scheduler using APScheduler.

Runs the daily dunning sweep within the FastAPI process.
Uses PostgreSQL advisory locks to prevent duplicate execution when
multiple instances are running.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import text

from reconciler.config import settings
from reconciler.core.database import async_session_maker, direct_session_maker

logger = logging.getLogger(__name__)

# Advisory lock IDs (arbitrary unique integers, one per job)
DUNNING_SWEEP_LOCK_ID = 734101


@asynccontextmanager
async def advisory_lock(lock_id: int) -> AsyncIterator[bool]:
    """
    Acquire a PostgreSQL advisory lock for the duration of the context.

    Advisory locks are session-level and automatically released when the
    session ends. pg_try_advisory_lock() returns immediately; if another
    process holds the lock we skip.
    """
    async with direct_session_maker() as session:
        result = await session.execute(
            text("SELECT pg_try_advisory_lock(:lock_id)"),
            {"lock_id": lock_id},
        )
        acquired = result.scalar()

        if not acquired:
            yield False
            return

        try:
            yield True
        finally:
            await session.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": lock_id},
            )
            await session.commit()


async def run_dunning_sweep_job() -> dict[str, Any] | None:
    """
    Execute the dunning sweep with advisory lock protection.

    Returns the report dict if executed, None if skipped (lock held by another instance).
    """
    async with advisory_lock(DUNNING_SWEEP_LOCK_ID) as acquired:
        if not acquired:
            logger.info("[scheduler] Dunning-sweep: skipped (another instance is running)")
            return None

        logger.info("[scheduler] Dunning-sweep: starting")

        try:
            from reconciler.services.billing.dunning_sweep import run_dunning_sweep

            async with async_session_maker() as db:
                report = await run_dunning_sweep(db)
                await db.commit()

            logger.info(
                f"[scheduler] Dunning-sweep: completed "
                f"({report.workspaces_checked} checked, "
                f"{report.emails_sent} emails sent, "
                f"{report.errors} errors, "
                f"{report.duration_seconds}s)"
            )
            return asdict(report)

        except Exception as e:
            logger.exception(f"[scheduler] Dunning-sweep: failed with error: {e}")
            return None


class Scheduler:
    """Manages the APScheduler instance and job registration."""

    def __init__(self) -> None:
        self._scheduler: AsyncIOScheduler | None = None

    def start(self) -> None:
        """Start the scheduler and register jobs."""
        if not settings.scheduler_enabled:
            logger.info("[scheduler] Disabled via SCHEDULER_ENABLED=false")
            return

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            run_dunning_sweep_job,
            trigger=CronTrigger(hour=settings.dunning_sweep_hour, minute=0),
            id="dunning_sweep",
            name="Dunning Recovery Email Sweep",
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            f"[scheduler] Started with dunning-sweep at {settings.dunning_sweep_hour:02d}:00 UTC"
        )

    def stop(self) -> None:
        """Gracefully shut down the scheduler."""
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            logger.info("[scheduler] Stopped")


scheduler = Scheduler()
