"""
Lifecycle orchestrator: runs named jobs under their lease.

Every run gets a run-scoped correlation id, takes the job's lease, and
returns a summary that distinguishes the three outcomes an operator cares
about:

- skipped: another worker holds the lease
- errors / failed: the job ran but recorded errors, or blew up
- ok: the job ran cleanly

Provides:
- run_job(name, **options): one job
- run_full(): discover -> sync -> finalize -> settle -> health
- run_batch(cursor): one league-sized unit per call, resumable via cursor
"""
import time
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core import metrics
from app.core.config import settings
from app.core.logging import get_logger, job_run_context
from app.models.enums import JobName
from app.services.lifecycle.discovery import DiscoveryJob
from app.services.lifecycle.event_store import probe_events_schema
from app.services.lifecycle.exceptions import UnknownJobError
from app.services.lifecycle.finalize import FinalizeJob
from app.services.lifecycle.health import HealthMonitor
from app.services.lifecycle.job_lock import JobLease, JobLockManager
from app.services.lifecycle.provider import SportsDataProvider
from app.services.lifecycle.results import FirstError, JobResult, MultiLeagueJobResult, elapsed_ms
from app.services.lifecycle.settlement import SettlementService
from app.services.lifecycle.sync import SyncJob
from app.utils.timezone import utcnow

logger = get_logger(__name__)

RUNNABLE_JOBS = (
    JobName.DISCOVER.value,
    JobName.SYNC.value,
    JobName.FINALIZE.value,
    JobName.SETTLE.value,
    JobName.HEALTH.value,
)

FULL_RUN_ORDER = RUNNABLE_JOBS

# Steps of the batched runner and the per-call cap each runs with
BATCH_STEPS = (
    JobName.DISCOVER.value,
    JobName.SYNC.value,
    JobName.FINALIZE.value,
    JobName.SETTLE.value,
)
BATCH_LIMITS = {
    JobName.DISCOVER.value: {"max_games_per_league": 50},
    JobName.SYNC.value: {"max_games": 25},
    JobName.FINALIZE.value: {"max_games": 25},
    JobName.SETTLE.value: {"max_items": 25},
}
LEAGUE_SCOPED_STEPS = (JobName.DISCOVER.value, JobName.SYNC.value, JobName.FINALIZE.value)

MAX_SUMMARY_ERRORS = 10


def summarize(job: str, result: MultiLeagueJobResult, run_id: Optional[str] = None) -> Dict[str, Any]:
    """Flat operator summary of a job result."""
    first_error = result.first_error
    return {
        "job": job,
        "run_id": run_id,
        "status": "ok" if result.success else "errors",
        "fetched": result.total_fetched,
        "upserted": result.total_upserted,
        "finalized": result.total_finalized,
        "enqueued": result.total_enqueued,
        "duration_ms": result.duration_ms,
        "has_more": result.has_more,
        "resume_from": result.resume_points(),
        "first_error": asdict(first_error) if first_error else None,
        "errors": result.errors[:MAX_SUMMARY_ERRORS],
        "error_count": len(result.errors),
        "stats": result.stats(),
    }


class LifecycleOrchestrator:
    """
    Usage:
        async with create_provider() as provider:
            orchestrator = LifecycleOrchestrator(db, provider, worker_id=worker_id)
            summary = await orchestrator.run_job("sync", leagues=["nba"])
    """

    def __init__(
        self,
        db: Session,
        provider: SportsDataProvider,
        worker_id: str,
        clock: Callable[[], datetime] = utcnow,
        fee_rate: Optional[float] = None,
    ):
        self.db = db
        self.provider = provider
        self.worker_id = worker_id
        self._clock = clock
        self.fee_rate = settings.PLATFORM_FEE_RATE if fee_rate is None else fee_rate
        self.locks = JobLockManager(db, worker_id=worker_id, clock=clock)

    def settlement_service(self) -> SettlementService:
        return SettlementService(self.db, worker_id=self.worker_id, fee_rate=self.fee_rate, clock=self._clock)

    # ========================================================================
    # Job bodies
    # ========================================================================

    async def _discover(self, lease: JobLease, options: Dict[str, Any]) -> MultiLeagueJobResult:
        job = DiscoveryJob(self.db, self.provider, schema=probe_events_schema(self.db), lease=lease, clock=self._clock)
        return await job.run(
            leagues=options.get("leagues"),
            hours_back=options.get("hours_back") or settings.DISCOVERY_HOURS_BACK,
            hours_forward=options.get("hours_forward") or settings.DISCOVERY_HOURS_FORWARD,
            max_games_per_league=options.get("max_games_per_league") or settings.DISCOVERY_MAX_GAMES_PER_LEAGUE,
            start_date=options.get("start_date"),
        )

    async def _sync(self, lease: JobLease, options: Dict[str, Any]) -> MultiLeagueJobResult:
        job = SyncJob(
            self.db, self.provider, settlement=self.settlement_service(),
            schema=probe_events_schema(self.db), lease=lease, clock=self._clock,
        )
        return await job.run(leagues=options.get("leagues"), max_games=options.get("max_games"))

    async def _finalize(self, lease: JobLease, options: Dict[str, Any]) -> MultiLeagueJobResult:
        job = FinalizeJob(
            self.db, self.provider, settlement=self.settlement_service(),
            schema=probe_events_schema(self.db), lease=lease, clock=self._clock,
        )
        return await job.run(
            leagues=options.get("leagues"),
            stuck_hours=options.get("stuck_hours"),
            max_games=options.get("max_games"),
        )

    async def _settle(self, lease: JobLease, options: Dict[str, Any]) -> MultiLeagueJobResult:
        started = time.monotonic()
        max_items = options.get("max_items") or settings.SETTLEMENT_MAX_ITEMS
        service = self.settlement_service()

        outcomes = service.process_all(max_items=max_items)
        lease.heartbeat()
        remaining = max_items - len(outcomes)
        if remaining > 0:
            outcomes += service.retry_failed(max_items=remaining, respect_backoff=True)

        result = JobResult(league="all")
        for outcome in outcomes:
            result.bump(outcome.status)
            if outcome.status == "failed":
                result.record_error(f"{outcome.game_id}: {outcome.error}", game_id=outcome.game_id)
        result.duration_ms = elapsed_ms(started)

        multi = MultiLeagueJobResult(job=JobName.SETTLE.value, results=[result], duration_ms=result.duration_ms)
        multi.has_more = len(outcomes) >= max_items
        return multi

    async def _health(self, lease: JobLease, options: Dict[str, Any]) -> MultiLeagueJobResult:
        started = time.monotonic()
        monitor = HealthMonitor(self.db, now=self._clock(), worker_id=self.worker_id)
        report = monitor.run_checks()

        result = JobResult(league="all")
        for check in report.checks:
            result.stats[check.name] = check.count
        if options.get("repair", True):
            for key, value in monitor.release_stale_locks().items():
                result.stats[key] = value
            orphans = monitor.enqueue_orphaned_finals()
            result.stats["orphans_found"] = orphans["found"]
            result.enqueued = orphans["enqueued"]
        result.duration_ms = elapsed_ms(started)
        return MultiLeagueJobResult(job=JobName.HEALTH.value, results=[result], duration_ms=result.duration_ms)

    # ========================================================================
    # Runners
    # ========================================================================

    async def run_job(self, job: str, **options) -> Dict[str, Any]:
        """
        Run one named job under its lease.

        Raises:
            UnknownJobError: If ``job`` is not a runnable job name
        """
        job = (job or "").lower()
        body = {
            JobName.DISCOVER.value: self._discover,
            JobName.SYNC.value: self._sync,
            JobName.FINALIZE.value: self._finalize,
            JobName.SETTLE.value: self._settle,
            JobName.HEALTH.value: self._health,
        }.get(job)
        if body is None:
            raise UnknownJobError(f"Unknown job: {job}", {"valid_jobs": list(RUNNABLE_JOBS)})

        started = time.monotonic()
        with job_run_context(job) as run_id:
            logger.info(f"▶️  Job {job} starting (worker {self.worker_id})")
            try:
                run = await self.locks.with_lock(
                    job,
                    lambda lease: body(lease, options),
                    ttl_minutes=settings.JOB_LOCK_TTL_MINUTES,
                )
            except Exception as e:
                duration = time.monotonic() - started
                logger.exception(f"❌ Job {job} failed: {e}")
                metrics.record_job_run(job, "failed", duration)
                summary = summarize(job, MultiLeagueJobResult(job=job, duration_ms=int(duration * 1000)), run_id)
                summary.update({
                    "status": "failed",
                    "first_error": asdict(FirstError.from_exception(e)),
                    "errors": [str(e)],
                    "error_count": 1,
                })
                return summary

            duration = time.monotonic() - started
            if run.skipped:
                logger.info(f"⏭️  {run.error}")
                metrics.record_job_run(job, "skipped", duration)
                summary = summarize(job, MultiLeagueJobResult(job=job, duration_ms=int(duration * 1000)), run_id)
                summary.update({"status": "skipped", "errors": [run.error], "error_count": 1, "locked_by": run.holder})
                return summary

            summary = summarize(job, run.result, run_id)
            metrics.record_job_run(job, summary["status"], duration)
            logger.info(
                f"{'✅' if summary['status'] == 'ok' else '⚠️'} Job {job} {summary['status']}: "
                f"fetched={summary['fetched']} upserted={summary['upserted']} finalized={summary['finalized']} "
                f"enqueued={summary['enqueued']} errors={summary['error_count']} ({summary['duration_ms']}ms)"
            )
            return summary

    async def run_full(self, leagues: Optional[List[str]] = None, **options) -> Dict[str, Any]:
        """Every job in lifecycle order; a failing job does not stop the rest."""
        started = time.monotonic()
        summaries = [await self.run_job(job, leagues=leagues, **options) for job in FULL_RUN_ORDER]
        statuses = {s["status"] for s in summaries}
        if "failed" in statuses:
            status = "failed"
        elif "errors" in statuses:
            status = "errors"
        else:
            status = "ok"
        return {"status": status, "jobs": summaries, "duration_ms": elapsed_ms(started)}

    async def run_batch(
        self,
        cursor: Optional[Dict[str, Any]] = None,
        leagues: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Run one small unit of the lifecycle and say where to resume.

        Args:
            cursor: ``{"step": ..., "league_index": ...}`` from the previous call, or None to start.
                A discover cursor may carry ``start_date`` to continue a capped league.

        Returns:
            Dict with the unit's summary, ``has_more`` and ``next_cursor``
        """
        leagues = [league.lower() for league in (leagues or settings.ENABLED_LEAGUES)]
        cursor = cursor or {}
        step = cursor.get("step") or BATCH_STEPS[0]
        if step not in BATCH_STEPS:
            raise UnknownJobError(f"Unknown batch step: {step}", {"valid_steps": list(BATCH_STEPS)})
        league_index = int(cursor.get("league_index") or 0)

        start_date = cursor.get("start_date") if step == JobName.DISCOVER.value else None

        options = dict(BATCH_LIMITS[step])
        if step in LEAGUE_SCOPED_STEPS:
            if league_index >= len(leagues):
                league_index = 0
            options["leagues"] = [leagues[league_index]]
        if start_date:
            options["start_date"] = start_date
        summary = await self.run_job(step, **options)

        next_cursor: Optional[Dict[str, Any]]
        step_index = BATCH_STEPS.index(step)
        resume_from = (summary.get("resume_from") or {}).get(options.get("leagues", [None])[0])
        if step == JobName.DISCOVER.value and resume_from:
            # Same league again from the first date the cap left unfetched
            next_cursor = {"step": step, "league_index": league_index, "start_date": resume_from}
        elif step in LEAGUE_SCOPED_STEPS and league_index + 1 < len(leagues):
            next_cursor = {"step": step, "league_index": league_index + 1}
        elif step == JobName.SETTLE.value and summary.get("has_more"):
            next_cursor = {"step": step, "league_index": 0}
        elif step_index + 1 < len(BATCH_STEPS):
            next_cursor = {"step": BATCH_STEPS[step_index + 1], "league_index": 0}
        else:
            next_cursor = None

        current = {"step": step, "league_index": league_index}
        if start_date:
            current["start_date"] = start_date
        return {
            "cursor": current,
            "league": options.get("leagues", [None])[0],
            "summary": summary,
            "has_more": next_cursor is not None,
            "next_cursor": next_cursor,
        }
