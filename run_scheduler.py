#!/usr/bin/env python3
"""
Standalone runner for the lifecycle scheduler.

This script runs the lifecycle jobs on their intervals as a background
service. It can be run via systemd, supervisor, or directly. Any number
of runners may be started; job leases keep each job on one worker at a time.

Usage:
    python run_scheduler.py                  # Run in foreground
    python run_scheduler.py --daemon         # Run as daemon
    python run_scheduler.py --trigger sync   # Run one job once and exit
    python run_scheduler.py --list-jobs      # Show the schedule and exit
"""
import argparse
import asyncio
import json
import signal
import sys

from app.core.config import settings
from app.core.logging import configure_logging, get_logger
from app.core.scheduler import LOCK_CLEANUP_JOB, LifecycleScheduler, cleanup_expired_locks, run_lifecycle_job
from app.services.lifecycle.job_lock import resolve_worker_id
from app.services.lifecycle.orchestrator import RUNNABLE_JOBS

configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
logger = get_logger(__name__)

SCHEDULE = [
    ("discover", settings.SCHEDULE_DISCOVER_MINUTES),
    ("sync", settings.SCHEDULE_SYNC_MINUTES),
    ("finalize", settings.SCHEDULE_FINALIZE_MINUTES),
    ("settle", settings.SCHEDULE_SETTLE_MINUTES),
    ("health", settings.SCHEDULE_HEALTH_MINUTES),
]


class SchedulerRunner:
    """Runner for the lifecycle scheduler."""

    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        self.scheduler: LifecycleScheduler = None
        self.shutdown = False

    async def start(self):
        """Start the scheduler and run until shutdown."""
        logger.info("🚀 Starting scheduler runner...")

        self.scheduler = LifecycleScheduler(worker_id=self.worker_id)
        await self.scheduler.start()

        logger.info("✅ Scheduler is now running")
        logger.info("Press Ctrl+C to stop")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._set_shutdown)

        while not self.shutdown:
            await asyncio.sleep(1)

        await self.scheduler.stop()
        logger.info("✅ Scheduler runner stopped")

    def _set_shutdown(self):
        """Set shutdown flag."""
        logger.info("⏹️  Shutdown signal received")
        self.shutdown = True


async def run_trigger_job(job_id: str, worker_id: str) -> bool:
    """Run a single job once, outside the schedule."""
    if job_id == LOCK_CLEANUP_JOB:
        print(f"🧹 Deleted {cleanup_expired_locks(worker_id)} expired leases")
        return True

    if job_id not in RUNNABLE_JOBS:
        print(f"❌ Job '{job_id}' not found. Valid jobs: {', '.join(RUNNABLE_JOBS + (LOCK_CLEANUP_JOB,))}")
        return False

    print(f"🔄 Triggering job: {job_id}")
    summary = await run_lifecycle_job(job_id, worker_id)
    print(json.dumps(summary, indent=2, default=str))
    return summary["status"] in ("ok", "skipped")


def list_jobs():
    """Print the configured schedule."""
    print("=" * 60)
    print("SCHEDULED LIFECYCLE JOBS")
    print("=" * 60)
    print()
    for job, minutes in SCHEDULE:
        print(f"📋 {job}")
        print(f"   Schedule: every {minutes} minutes")
        print()
    print(f"📋 {LOCK_CLEANUP_JOB}")
    print("   Schedule: hourly at :05")
    print()
    print("=" * 60)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run the game lifecycle scheduler")

    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Run as daemon (background process)",
    )

    parser.add_argument(
        "--trigger",
        type=str,
        metavar="JOB_ID",
        help="Run a specific job once and exit",
    )

    parser.add_argument(
        "--list-jobs",
        action="store_true",
        help="List all scheduled jobs and exit",
    )

    args = parser.parse_args()

    if args.list_jobs:
        list_jobs()
        return 0

    worker_id = resolve_worker_id()
    logger.info(f"Worker id: {worker_id}")

    if args.trigger:
        result = asyncio.run(run_trigger_job(args.trigger, worker_id))
        return 0 if result else 1

    if args.daemon:
        # Process supervision (systemd, supervisor) is expected to background the runner
        logger.info("Running in daemon mode (background)")

    runner = SchedulerRunner(worker_id)

    try:
        asyncio.run(runner.start())
    except KeyboardInterrupt:
        logger.info("🛑 Received interrupt, shutting down...")
        return 0
    except Exception as e:
        logger.error(f"❌ Scheduler error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
