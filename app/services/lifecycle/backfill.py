"""
Backfill runner: replay past days through the lifecycle.

Walks days oldest to newest and the leagues within each day, upserting
every event, stamping completions and queueing settlement for finalized
events that have markets. A finalize pass runs at the end. The whole run
holds the ``backfill`` lease, extended between units.

Progress is kept on the runner so an operator can poll it and cancel
between units.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.logging import get_logger, job_run_context
from app.models.enums import JobName
from app.services.lifecycle.exceptions import LifecycleError
from app.services.lifecycle.finalize import FinalizeJob
from app.services.lifecycle.job_lock import JobLease, JobLockManager
from app.services.lifecycle.payloads import ProviderEvent, normalize_record
from app.services.lifecycle.provider import create_provider
from app.services.lifecycle.results import JobResult
from app.services.lifecycle.settlement import SettlementService
from app.services.lifecycle.sync import SyncJob
from app.utils.timezone import days_ago, utcnow

logger = get_logger(__name__)

LEAGUE_DELAY_MS = 100
DAY_DELAY_MS = 200
MAX_PROGRESS_ERRORS = 100


class BackfillCanceled(Exception):
    """Raised inside a run when cancel() was requested."""


@dataclass
class BackfillProgress:
    status: str = "idle"  # idle, running, completed, failed, canceled
    days: int = 0
    leagues: List[str] = field(default_factory=list)
    current_day: Optional[str] = None
    days_completed: int = 0
    total_days: int = 0
    current_league: Optional[str] = None
    games_processed: int = 0
    games_upserted: int = 0
    games_finalized: int = 0
    games_enqueued: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_PROGRESS_ERRORS:
            self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "days": self.days,
            "leagues": self.leagues,
            "current_day": self.current_day,
            "days_completed": self.days_completed,
            "total_days": self.total_days,
            "current_league": self.current_league,
            "games_processed": self.games_processed,
            "games_upserted": self.games_upserted,
            "games_finalized": self.games_finalized,
            "games_enqueued": self.games_enqueued,
            "errors": self.errors,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class BackfillRunner:
    """
    Usage:
        runner = get_backfill_runner(worker_id)
        progress = await runner.start(days=7, leagues=["nba", "nhl"])
    """

    def __init__(
        self,
        worker_id: str,
        session_factory: Callable[[], Session] = SessionLocal,
        provider_factory: Callable[[], Any] = create_provider,
        clock: Callable[[], datetime] = utcnow,
        league_delay_ms: int = LEAGUE_DELAY_MS,
        day_delay_ms: int = DAY_DELAY_MS,
    ):
        self.session_factory = session_factory
        self.provider_factory = provider_factory
        self.worker_id = worker_id
        self._clock = clock
        self.league_delay_ms = league_delay_ms
        self.day_delay_ms = day_delay_ms
        self._progress = BackfillProgress()
        self._cancel_requested = False

    @property
    def progress(self) -> BackfillProgress:
        return self._progress

    @property
    def is_running(self) -> bool:
        return self._progress.status == "running"

    def cancel(self) -> bool:
        """Ask a running backfill to stop at the next unit boundary."""
        if not self.is_running:
            return False
        self._cancel_requested = True
        logger.info("🛑 Backfill cancel requested")
        return True

    def _check_cancel(self) -> None:
        if self._cancel_requested:
            raise BackfillCanceled()

    async def _sleep(self, milliseconds: int) -> None:
        if milliseconds > 0:
            await asyncio.sleep(milliseconds / 1000)

    async def start(self, days: int, leagues: Optional[List[str]] = None) -> BackfillProgress:
        """
        Run a backfill to completion (or cancellation).

        Raises:
            ValueError: If days is outside 1..BACKFILL_MAX_DAYS
            LifecycleError: If a backfill is already running in this process
        """
        if days < 1 or days > settings.BACKFILL_MAX_DAYS:
            raise ValueError(f"days must be between 1 and {settings.BACKFILL_MAX_DAYS}")
        if self.is_running:
            raise LifecycleError("Backfill already running", {"progress": self._progress.to_dict()})

        leagues = [league.lower() for league in (leagues or settings.ENABLED_LEAGUES)]
        dates = days_ago(days, self._clock())
        self._cancel_requested = False
        self._progress = BackfillProgress(
            status="running",
            days=days,
            leagues=leagues,
            total_days=len(dates),
            started_at=self._clock(),
        )
        progress = self._progress

        db = self.session_factory()
        try:
            with job_run_context(JobName.BACKFILL.value) as run_id:
                logger.info(f"⏪ Backfill {run_id} starting: {days} days x {len(leagues)} leagues")
                locks = JobLockManager(db, worker_id=self.worker_id, clock=self._clock)
                run = await locks.with_lock(
                    JobName.BACKFILL.value,
                    lambda lease: self._run(db, lease, dates, leagues),
                    ttl_minutes=settings.BACKFILL_LOCK_TTL_MINUTES,
                )
                if run.skipped:
                    progress.status = "failed"
                    progress.add_error(run.error)
                    logger.warning(f"⚠️ {run.error}")
        except BackfillCanceled:
            progress.status = "canceled"
            logger.info(f"🛑 Backfill canceled after {progress.days_completed}/{progress.total_days} days")
        except Exception as e:
            logger.exception(f"❌ Backfill failed: {e}")
            progress.status = "failed"
            progress.add_error(str(e))
        finally:
            progress.completed_at = self._clock()
            db.close()

        logger.info(
            f"⏪ Backfill {progress.status}: processed={progress.games_processed} "
            f"upserted={progress.games_upserted} finalized={progress.games_finalized} "
            f"enqueued={progress.games_enqueued} errors={len(progress.errors)}"
        )
        return progress

    async def _run(self, db: Session, lease: JobLease, dates: List[str], leagues: List[str]) -> None:
        progress = self._progress
        async with self.provider_factory() as provider:
            settlement = SettlementService(db, worker_id=self.worker_id, fee_rate=settings.PLATFORM_FEE_RATE)
            sync = SyncJob(db, provider, settlement=settlement, lease=lease, clock=self._clock)
            store = sync.open_store()

            for day_index, date in enumerate(dates):
                self._check_cancel()
                if day_index:
                    await self._sleep(self.day_delay_ms)
                progress.current_day = date

                for league_index, league in enumerate(leagues):
                    self._check_cancel()
                    if league_index:
                        await self._sleep(self.league_delay_ms)
                    progress.current_league = league
                    await self._backfill_unit(provider, sync, store, league, date)
                    lease.heartbeat()

                progress.days_completed += 1

            self._check_cancel()
            finalize = FinalizeJob(
                db, provider, settlement=settlement, schema=store.schema, lease=lease, clock=self._clock
            )
            final = await finalize.run(leagues=leagues)
            progress.games_finalized += final.total_finalized
            progress.games_enqueued += final.total_enqueued
            for error in final.errors:
                progress.add_error(f"finalize {error}")

        progress.current_league = None
        progress.status = "completed"

    async def _backfill_unit(self, provider, sync: SyncJob, store, league: str, date: str) -> None:
        progress = self._progress
        result = JobResult(league=league)
        try:
            raw_games = await provider.fetch_games_for_date(league, date)
        except Exception as e:
            logger.error(f"❌ Backfill fetch failed for {league} {date}: {e}")
            progress.add_error(f"{league} {date}: {e}")
            return

        events: Dict[str, ProviderEvent] = {}
        for raw in raw_games:
            event = normalize_record(league, raw, now=self._clock())
            if event is not None:
                events[event.external_id] = event

        progress.games_processed += len(events)
        sync.write_events(store, league, list(events.values()), result, require_markets=True)
        progress.games_upserted += result.upserted
        progress.games_finalized += result.finalized
        progress.games_enqueued += result.enqueued
        for error in result.errors:
            progress.add_error(f"{league} {date}: {error}")


# Global runner instance
_runner: Optional[BackfillRunner] = None


def get_backfill_runner(worker_id: str) -> BackfillRunner:
    """The process-wide runner, so progress survives between requests."""
    global _runner
    if _runner is None:
        _runner = BackfillRunner(worker_id)
    return _runner
