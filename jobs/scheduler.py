"""
Token job scheduler

Jobs:
1. Status reconciliation sweep (interval, RECONCILIATION_INTERVAL_MINUTES)
2. Scheduled release sweep (interval, RECONCILIATION_INTERVAL_MINUTES)
3. Location release at reopening time, one cron job per location category in the
   business time zone
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.payment_sweeps import (
    process_scheduled_tokens_for_location,
    run_scheduled_release,
    run_status_reconciliation,
)
from services.time_restrictions import CLOSING_WINDOWS, LocationCategory
from utils.datetime_helpers import get_business_timezone

logger = logging.getLogger(__name__)


class TokenScheduler:
    """Background sweeps that make every payment converge without webhooks"""

    def __init__(self, engine, interval_minutes: Optional[int] = None):
        self.engine = engine
        self.interval_minutes = interval_minutes or Config.RECONCILIATION_INTERVAL_MINUTES

        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60,
            },
            timezone='UTC'
        )

    async def status_sweep_job(self):
        try:
            await run_status_reconciliation(self.engine)
        except Exception as e:
            logger.error(f"❌ STATUS_SWEEP_FAILED: {e}", exc_info=True)

    async def release_sweep_job(self):
        try:
            await run_scheduled_release(self.engine)
        except Exception as e:
            logger.error(f"❌ RELEASE_SWEEP_FAILED: {e}", exc_info=True)

    async def location_release_job(self, category: LocationCategory):
        try:
            credited = await process_scheduled_tokens_for_location(self.engine, category)
            logger.info(f"🏪 LOCATION_RELEASE_COMPLETE: {CLOSING_WINDOWS[category].display_name} credited {credited}")
        except Exception as e:
            logger.error(f"❌ LOCATION_RELEASE_FAILED: {category.value}: {e}", exc_info=True)

    def setup_jobs(self):
        """Register the sweeps and the per-location release jobs"""
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        self.scheduler.add_job(
            self.status_sweep_job,
            trigger=IntervalTrigger(
                minutes=self.interval_minutes,
                start_date=datetime.now().replace(second=5, microsecond=0),
            ),
            id="status_reconciliation_sweep",
            name="🔍 Status Reconciliation Sweep",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Status reconciliation sweep scheduled every {self.interval_minutes} minutes")

        self.scheduler.add_job(
            self.release_sweep_job,
            trigger=IntervalTrigger(
                minutes=self.interval_minutes,
                start_date=datetime.now().replace(second=35, microsecond=0),
            ),
            id="scheduled_release_sweep",
            name="⏰ Scheduled Token Release Sweep",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Scheduled release sweep scheduled every {self.interval_minutes} minutes")

        zone = get_business_timezone()
        for category, window in CLOSING_WINDOWS.items():
            self.scheduler.add_job(
                self.location_release_job,
                trigger=CronTrigger(hour=window.reopens_at.hour, minute=window.reopens_at.minute, timezone=zone),
                args=[category],
                id=f"location_release_{category.value}",
                name=f"🏪 {window.display_name} Token Release",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=300,
                replace_existing=True
            )
            logger.info(
                f"✅ {window.display_name} release scheduled daily at "
                f"{window.reopens_at.strftime('%H:%M')} {zone.key}"
            )

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"📋 Active jobs: {[f'{job.name} ({job.id})' for job in self.scheduler.get_jobs()]}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Token job scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        jobs: List[Dict[str, Any]] = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run_time": next_run.isoformat() if next_run else None,
            })
        return {
            "running": self.scheduler.running,
            "interval_minutes": self.interval_minutes,
            "jobs": jobs,
        }


_global_scheduler: Optional[TokenScheduler] = None


def get_token_scheduler_instance(engine=None) -> TokenScheduler:
    """Get the global token scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        if engine is None:
            raise RuntimeError("Token scheduler has not been created; pass the reconciliation engine")
        _global_scheduler = TokenScheduler(engine)
    return _global_scheduler
