"""
Lifecycle job scheduler.

This module provides the timer that drives the lifecycle jobs:
- Discovery of upcoming and recent events
- Sync of live and today's events
- Finalize sweep of stuck events
- Settlement queue processing
- Health checks with automatic repair
- Expired lease cleanup

Every run goes through LifecycleOrchestrator, so a run that finds the job's
lease held by another worker is skipped rather than doubled up.

Scheduler: APScheduler (lightweight, asyncio-native)
"""
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.logging import get_logger
from app.models.enums import JobName
from app.services.lifecycle.job_lock import JobLockManager, resolve_worker_id
from app.services.lifecycle.orchestrator import LifecycleOrchestrator
from app.services.lifecycle.provider import create_provider

logger = get_logger(__name__)

LOCK_CLEANUP_JOB = "lock_cleanup"


async def run_lifecycle_job(job: str, worker_id: str, **options) -> Dict[str, Any]:
    """Run one lifecycle job in a fresh session and provider client."""
    db = SessionLocal()
    try:
        async with create_provider() as provider:
            orchestrator = LifecycleOrchestrator(db, provider, worker_id=worker_id)
            return await orchestrator.run_job(job, **options)
    finally:
        db.close()


def cleanup_expired_locks(worker_id: str) -> int:
    db = SessionLocal()
    try:
        return JobLockManager(db, worker_id=worker_id).cleanup_expired_locks()
    finally:
        db.close()


def _log_summary(summary: Dict[str, Any]) -> None:
    job, status = summary["job"], summary["status"]
    if status == "skipped":
        logger.info(f"⏭️  {job} skipped: {summary['errors'][0] if summary['errors'] else 'lease held'}")
    elif status == "ok":
        logger.info(
            f"✅ {job}: fetched={summary['fetched']} upserted={summary['upserted']} "
            f"finalized={summary['finalized']} enqueued={summary['enqueued']} ({summary['duration_ms']}ms)"
        )
    else:
        first_error = summary.get("first_error") or {}
        logger.warning(
            f"⚠️ {job} {status}: {summary['error_count']} errors, first: {first_error.get('message')}"
        )


class LifecycleScheduler:
    """
    Scheduler for the lifecycle jobs.

    All scheduled jobs are defined here with their intervals; the jobs
    themselves never raise past the orchestrator boundary. Every run uses
    the one worker id resolved when the scheduler is built.
    """

    def __init__(self, worker_id: Optional[str] = None):
        self.worker_id = worker_id or resolve_worker_id()
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting lifecycle scheduler...")

        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,  # Only one instance of each job
                "misfire_grace_time": 60,
            },
        )

        self._schedule_discover()
        self._schedule_sync()
        self._schedule_finalize()
        self._schedule_settle()
        self._schedule_health()
        self._schedule_lock_cleanup()

        self.scheduler.start()
        self.running = True

        logger.info(f"✅ Scheduler started with {len(self.scheduler.get_jobs())} jobs (worker {self.worker_id})")
        self._log_scheduled_jobs()

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=True)
        self.running = False
        logger.info("✅ Scheduler stopped")

    def _schedule_discover(self):
        """
        Schedule: Discover events around now.

        Frequency: Every SCHEDULE_DISCOVER_MINUTES (default 30)
        Purpose: Ingest new fixtures and schedule changes
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=IntervalTrigger(minutes=settings.SCHEDULE_DISCOVER_MINUTES),
            id=JobName.DISCOVER.value,
            name="Discover Events",
            misfire_grace_time=300,
        )
        async def discover_job():
            _log_summary(await run_lifecycle_job(JobName.DISCOVER.value, self.worker_id))

        logger.info(f"📅 Scheduled: Discover (every {settings.SCHEDULE_DISCOVER_MINUTES} minutes)")

    def _schedule_sync(self):
        """
        Schedule: Sync live and today's events.

        Frequency: Every SCHEDULE_SYNC_MINUTES (default 2)
        Purpose: Scores, status changes, completion detection
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=IntervalTrigger(minutes=settings.SCHEDULE_SYNC_MINUTES),
            id=JobName.SYNC.value,
            name="Sync Live Events",
        )
        async def sync_job():
            _log_summary(await run_lifecycle_job(JobName.SYNC.value, self.worker_id))

        logger.info(f"📅 Scheduled: Sync (every {settings.SCHEDULE_SYNC_MINUTES} minutes)")

    def _schedule_finalize(self):
        """
        Schedule: Finalize stuck events.

        Frequency: Every SCHEDULE_FINALIZE_MINUTES (default 15)
        Purpose: Catch completions the sync job missed
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=IntervalTrigger(minutes=settings.SCHEDULE_FINALIZE_MINUTES),
            id=JobName.FINALIZE.value,
            name="Finalize Stuck Events",
            misfire_grace_time=300,
        )
        async def finalize_job():
            _log_summary(await run_lifecycle_job(JobName.FINALIZE.value, self.worker_id))

        logger.info(f"📅 Scheduled: Finalize (every {settings.SCHEDULE_FINALIZE_MINUTES} minutes)")

    def _schedule_settle(self):
        """
        Schedule: Process the settlement queue.

        Frequency: Every SCHEDULE_SETTLE_MINUTES (default 5)
        Purpose: Pay out finalized events; retry failures whose backoff elapsed
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=IntervalTrigger(minutes=settings.SCHEDULE_SETTLE_MINUTES),
            id=JobName.SETTLE.value,
            name="Process Settlements",
        )
        async def settle_job():
            _log_summary(await run_lifecycle_job(JobName.SETTLE.value, self.worker_id))

        logger.info(f"📅 Scheduled: Settle (every {settings.SCHEDULE_SETTLE_MINUTES} minutes)")

    def _schedule_health(self):
        """
        Schedule: Health checks with repair.

        Frequency: Every SCHEDULE_HEALTH_MINUTES (default 10)
        Purpose: Requeue stuck settlements, enqueue orphaned finals
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=IntervalTrigger(minutes=settings.SCHEDULE_HEALTH_MINUTES),
            id=JobName.HEALTH.value,
            name="Health Check & Repair",
        )
        async def health_job():
            _log_summary(await run_lifecycle_job(JobName.HEALTH.value, self.worker_id))

        logger.info(f"📅 Scheduled: Health (every {settings.SCHEDULE_HEALTH_MINUTES} minutes)")

    def _schedule_lock_cleanup(self):
        """
        Schedule: Delete expired job leases.

        Frequency: Hourly at :05
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=CronTrigger(minute=5, timezone="UTC"),
            id=LOCK_CLEANUP_JOB,
            name="Expired Lease Cleanup",
        )
        async def lock_cleanup_job():
            try:
                deleted = cleanup_expired_locks(self.worker_id)
                if deleted:
                    logger.info(f"🧹 Deleted {deleted} expired leases")
            except Exception as e:
                logger.error(f"❌ Lease cleanup failed: {e}")

        logger.info("📅 Scheduled: Lease cleanup (hourly at :05)")

    def _log_scheduled_jobs(self):
        """Log all scheduled jobs for visibility."""
        jobs = self.scheduler.get_jobs()

        logger.info("=" * 60)
        logger.info("SCHEDULED LIFECYCLE JOBS")
        logger.info("=" * 60)

        for job in jobs:
            next_run = job.next_run_time
            next_run_str = next_run.strftime("%Y-%m-%d %H:%M UTC") if next_run else "Pending"
            logger.info(f"  • {job.name}")
            logger.info(f"    ID: {job.id}")
            logger.info(f"    Next run: {next_run_str}")

        logger.info("=" * 60)
        logger.info(f"Total jobs scheduled: {len(jobs)}")
        logger.info("=" * 60)


# Global scheduler instance
_scheduler: Optional[LifecycleScheduler] = None


async def start_scheduler(worker_id: Optional[str] = None):
    """Start the global scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = LifecycleScheduler(worker_id)
        await _scheduler.start()
    return _scheduler


async def stop_scheduler():
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None


def get_scheduler() -> Optional[LifecycleScheduler]:
    """Get the global scheduler instance."""
    return _scheduler
