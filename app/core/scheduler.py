"""
Wellness Router Scheduler
=========================

APScheduler-based background maintenance for the chat core:
- hourly: expire sessions past their expiry
- 02:00 UTC: refresh diet-plan progress and phase transitions
- 06:00 UTC: precompute smart-cache answers for users with metrics
- Sunday 03:00 UTC: drop stale smart-cache entries

Usage:
    from app.core.scheduler import WellnessScheduler
    scheduler = WellnessScheduler(engine)
    await scheduler.start()
    # ... on shutdown ...
    await scheduler.shutdown()
"""
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)


async def run_session_cleanup(engine) -> None:
    try:
        expired = await engine.sessions.cleanup_expired_sessions()
        idle = engine.routing.rate_limiter.cleanup()
        logger.info(
            f"🧹 Session cleanup complete: {expired} sessions expired, "
            f"{idle} idle rate-limit histories dropped"
        )
    except Exception as e:
        logger.error(f"❌ Session cleanup failed: {e}", exc_info=True)


async def run_diet_plan_progress(engine) -> None:
    """Advance every current diet plan to today's day/phase."""
    try:
        start_time = datetime.utcnow()
        updated = await engine.diet_plans.update_all_progress()
        duration_ms = (datetime.utcnow() - start_time).total_seconds() * 1000
        logger.info(f"📅 Diet plan progress: {updated} plans updated, took {duration_ms:.1f}ms")
    except Exception as e:
        logger.error(f"❌ Diet plan progress failed: {e}", exc_info=True)


async def run_cache_precompute(engine) -> None:
    try:
        count = engine.smart_cache.precompute_all()
        logger.info(f"⚡ Smart cache precompute: {count} answers ready")
    except Exception as e:
        logger.error(f"❌ Smart cache precompute failed: {e}", exc_info=True)


async def run_cache_cleanup(engine) -> None:
    try:
        removed = engine.smart_cache.cleanup_stale_entries()
        logger.info(f"🧹 Smart cache cleanup: {removed} stale entries removed")
    except Exception as e:
        logger.error(f"❌ Smart cache cleanup failed: {e}", exc_info=True)


class WellnessScheduler:
    """
    APScheduler wrapper for the chat core's maintenance jobs.

    Designed for FastAPI lifespan integration.
    """

    def __init__(self, engine):
        self.engine = engine
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._started = False

    async def start(self) -> None:
        """Initialize and start the scheduler."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            run_session_cleanup,
            trigger=CronTrigger(minute=0, timezone="UTC"),
            args=[self.engine],
            id="session_cleanup",
            name="Expired Session Cleanup",
            replace_existing=True,
        )
        self._scheduler.add_job(
            run_diet_plan_progress,
            trigger=CronTrigger(hour=2, minute=0, timezone="UTC"),
            args=[self.engine],
            id="diet_plan_progress",
            name="Diet Plan Progress",
            replace_existing=True,
        )
        self._scheduler.add_job(
            run_cache_precompute,
            trigger=CronTrigger(hour=6, minute=0, timezone="UTC"),
            args=[self.engine],
            id="smart_cache_precompute",
            name="Smart Cache Precompute",
            replace_existing=True,
        )
        self._scheduler.add_job(
            run_cache_cleanup,
            trigger=CronTrigger(day_of_week="sun", hour=3, minute=0, timezone="UTC"),
            args=[self.engine],
            id="smart_cache_cleanup",
            name="Smart Cache Cleanup",
            replace_existing=True,
        )

        self._scheduler.start()
        self._started = True
        logger.info("🚀 Scheduler started: sessions hourly, diet plans @ 02:00, cache @ 06:00 / Sun 03:00 UTC")

    async def shutdown(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("🛑 Scheduler shutdown complete")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None

    def get_jobs(self) -> list:
        """Get list of scheduled jobs (for testing/debugging)."""
        if self._scheduler:
            return self._scheduler.get_jobs()
        return []
