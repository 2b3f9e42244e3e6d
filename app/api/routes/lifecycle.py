"""Lifecycle API routes for operating the game lifecycle engine.

Provides endpoints for:
- Running jobs (single, full sequence, resumable batches)
- Inspecting and releasing job leases
- Settlement queue inspection, processing and preview
- Treasury balance and ledger
- Health checks and remediation
- Backfill start / progress / cancel
- Finalize candidate debugging

Every endpoint requires the X-Admin-Token header.
"""
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.auth import require_admin_token
from app.core.config import settings
from app.core.database import get_db
from app.core.logging import get_logger
from app.services.lifecycle.backfill import BackfillRunner, get_backfill_runner
from app.services.lifecycle.exceptions import UnknownJobError
from app.services.lifecycle.finalize import FinalizeJob
from app.services.lifecycle.health import HealthMonitor
from app.services.lifecycle.job_lock import JobLockManager
from app.services.lifecycle.orchestrator import LifecycleOrchestrator
from app.services.lifecycle.provider import SportsDataProvider, create_provider
from app.services.lifecycle.settlement import SettlementService

logger = get_logger(__name__)

router = APIRouter(
    prefix="/lifecycle",
    tags=["lifecycle"],
    dependencies=[Depends(require_admin_token)],
)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class JobRunRequest(BaseModel):
    """Options for a job run; unset fields use the configured defaults."""
    leagues: Optional[List[str]] = None
    hours_back: Optional[int] = Field(None, ge=0, le=240)
    hours_forward: Optional[int] = Field(None, ge=0, le=240)
    max_games_per_league: Optional[int] = Field(None, ge=1, le=5000)
    start_date: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    max_games: Optional[int] = Field(None, ge=1, le=1000)
    stuck_hours: Optional[int] = Field(None, ge=1, le=720)
    max_items: Optional[int] = Field(None, ge=1, le=500)
    repair: bool = True


class BatchCursor(BaseModel):
    step: str = "discover"
    league_index: int = Field(0, ge=0)
    start_date: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")


class BatchRequest(BaseModel):
    cursor: Optional[BatchCursor] = None
    leagues: Optional[List[str]] = None


class BackfillRequest(BaseModel):
    days: int = Field(7, ge=1)
    leagues: Optional[List[str]] = None


# ============================================================================
# DEPENDENCIES
# ============================================================================

async def get_provider() -> AsyncGenerator[SportsDataProvider, None]:
    """Dependency to get a provider client for the duration of a request."""
    async with create_provider() as provider:
        yield provider


def get_worker_id(request: Request) -> str:
    """The worker id resolved once in the app lifespan."""
    return request.app.state.worker_id


def get_orchestrator(
    db: Session = Depends(get_db),
    provider: SportsDataProvider = Depends(get_provider),
    worker_id: str = Depends(get_worker_id),
) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(db, provider, worker_id=worker_id)


def get_settlement_service(
    db: Session = Depends(get_db),
    worker_id: str = Depends(get_worker_id),
) -> SettlementService:
    return SettlementService(db, worker_id=worker_id, fee_rate=settings.PLATFORM_FEE_RATE)


def get_lock_manager(db: Session = Depends(get_db), worker_id: str = Depends(get_worker_id)) -> JobLockManager:
    return JobLockManager(db, worker_id=worker_id)


def get_health_monitor(db: Session = Depends(get_db), worker_id: str = Depends(get_worker_id)) -> HealthMonitor:
    return HealthMonitor(db, worker_id=worker_id)


def get_runner(worker_id: str = Depends(get_worker_id)) -> BackfillRunner:
    return get_backfill_runner(worker_id)


# ============================================================================
# JOBS
# ============================================================================

@router.post("/jobs/batch")
async def run_batch(
    request: BatchRequest,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Run one small unit of the lifecycle.

    Call again with ``next_cursor`` until ``has_more`` is false.
    """
    cursor = request.cursor.model_dump() if request.cursor else None
    try:
        return await orchestrator.run_batch(cursor=cursor, leagues=request.leagues)
    except UnknownJobError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)


@router.post("/jobs/{job}")
async def run_job(
    job: str,
    request: Optional[JobRunRequest] = None,
    orchestrator: LifecycleOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Run a job now: discover, sync, finalize, settle, health, or full.

    Returns:
        Run summary with status ok / errors / skipped / failed
    """
    options = (request or JobRunRequest()).model_dump(exclude_none=True)
    if job == "full":
        return await orchestrator.run_full(**options)
    try:
        return await orchestrator.run_job(job, **options)
    except UnknownJobError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)


# ============================================================================
# LOCKS
# ============================================================================

@router.get("/locks")
async def list_locks(locks: JobLockManager = Depends(get_lock_manager)) -> Dict[str, Any]:
    """Current job leases with expiry information."""
    entries = locks.get_job_locks()
    return {"locks": entries, "count": len(entries)}


@router.delete("/locks/{job_name}")
async def force_release_lock(
    job_name: str,
    locks: JobLockManager = Depends(get_lock_manager),
) -> Dict[str, Any]:
    """Delete a job's lease regardless of owner."""
    released = locks.force_release(job_name)
    if not released:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No lease held for job '{job_name}'")
    return {"job_name": job_name, "released": True}


@router.post("/locks/cleanup")
async def cleanup_locks(locks: JobLockManager = Depends(get_lock_manager)) -> Dict[str, Any]:
    """Delete every expired lease."""
    return {"deleted": locks.cleanup_expired_locks()}


# ============================================================================
# SETTLEMENTS & TREASURY
# ============================================================================

@router.get("/settlements")
async def list_settlements(
    status_filter: Optional[str] = Query(None, alias="status", description="QUEUED, PROCESSING, DONE, FAILED, SKIPPED"),
    league: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    service: SettlementService = Depends(get_settlement_service),
) -> Dict[str, Any]:
    items = service.list_queue(status=status_filter, league=league, limit=limit)
    return {"items": items, "count": len(items), "stats": service.get_queue_stats()}


def _outcome_counts(outcomes) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for outcome in outcomes:
        counts[outcome.status] = counts.get(outcome.status, 0) + 1
    return counts


@router.post("/settlements/process-all")
async def process_all_settlements(
    max_items: int = Query(50, ge=1, le=500),
    service: SettlementService = Depends(get_settlement_service),
) -> Dict[str, Any]:
    """Drain due QUEUED items, oldest first."""
    outcomes = service.process_all(max_items=max_items)
    return {
        "processed": len(outcomes),
        "summary": _outcome_counts(outcomes),
        "results": [o.to_dict() for o in outcomes],
    }


@router.post("/settlements/retry-failed")
async def retry_failed_settlements(
    max_items: int = Query(50, ge=1, le=500),
    respect_backoff: bool = Query(False),
    service: SettlementService = Depends(get_settlement_service),
) -> Dict[str, Any]:
    outcomes = service.retry_failed(max_items=max_items, respect_backoff=respect_backoff)
    return {
        "processed": len(outcomes),
        "summary": _outcome_counts(outcomes),
        "results": [o.to_dict() for o in outcomes],
    }


@router.get("/settlements/preview/{game_id}")
async def preview_settlement(
    game_id: str,
    service: SettlementService = Depends(get_settlement_service),
) -> Dict[str, Any]:
    """Distribution the processor would write for an event, without writing."""
    preview = service.preview(game_id)
    if not preview.get("found"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Event {game_id} not found")
    return preview


@router.post("/settlements/{item_id}/process")
async def process_settlement(
    item_id: str,
    service: SettlementService = Depends(get_settlement_service),
) -> Dict[str, Any]:
    outcome = service.process_item(item_id)
    if outcome.status == "not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Settlement item {item_id} not found")
    return outcome.to_dict()


@router.get("/treasury")
async def get_treasury(
    limit: int = Query(50, ge=1, le=500),
    service: SettlementService = Depends(get_settlement_service),
) -> Dict[str, Any]:
    return {"balance": service.get_treasury_balance(), "ledger": service.get_treasury_ledger(limit=limit)}


# ============================================================================
# HEALTH
# ============================================================================

@router.get("/health")
async def lifecycle_health(monitor: HealthMonitor = Depends(get_health_monitor)) -> Dict[str, Any]:
    return monitor.run_checks().to_dict()


@router.post("/health/release-stale-locks")
async def release_stale_locks(monitor: HealthMonitor = Depends(get_health_monitor)) -> Dict[str, Any]:
    return monitor.release_stale_locks()


@router.post("/health/enqueue-orphans")
async def enqueue_orphans(monitor: HealthMonitor = Depends(get_health_monitor)) -> Dict[str, Any]:
    return monitor.enqueue_orphaned_finals()


# ============================================================================
# BACKFILL
# ============================================================================

@router.post("/backfill", status_code=status.HTTP_202_ACCEPTED)
async def start_backfill(
    request: BackfillRequest,
    background_tasks: BackgroundTasks,
    runner: BackfillRunner = Depends(get_runner),
) -> Dict[str, Any]:
    """
    Start a backfill in the background.

    Poll GET /backfill for progress.
    """
    if request.days > settings.BACKFILL_MAX_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"days must be between 1 and {settings.BACKFILL_MAX_DAYS}",
        )
    if runner.is_running:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Backfill already running")

    background_tasks.add_task(runner.start, request.days, request.leagues)
    logger.info(f"Backfill scheduled: days={request.days} leagues={request.leagues or 'all'}")
    return {"message": "Backfill started", "days": request.days, "leagues": request.leagues}


@router.get("/backfill")
async def get_backfill_progress(runner: BackfillRunner = Depends(get_runner)) -> Dict[str, Any]:
    return runner.progress.to_dict()


@router.post("/backfill/cancel")
async def cancel_backfill(runner: BackfillRunner = Depends(get_runner)) -> Dict[str, Any]:
    if not runner.cancel():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No backfill running")
    return {"message": "Cancel requested", "progress": runner.progress.to_dict()}


# ============================================================================
# FINALIZE DEBUG
# ============================================================================

@router.get("/finalize/candidates")
async def finalize_candidates(
    league: str = Query(..., description="League to inspect"),
    stuck_hours: int = Query(4, ge=1, le=720),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    provider: SportsDataProvider = Depends(get_provider),
    settlement: SettlementService = Depends(get_settlement_service),
) -> Dict[str, Any]:
    """Stuck events and what the provider currently says about them; writes nothing."""
    job = FinalizeJob(db, provider, settlement=settlement)
    try:
        return await job.get_candidates(league, stuck_hours=stuck_hours, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
