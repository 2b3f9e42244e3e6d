"""
Lifecycle health checks and remediation.

Checks (each reports ok / warning / critical, a count and up to five sample rows):
- live_overdue: LIVE events well past any plausible end
- scheduled_stale: SCHEDULED events that should have started long ago
- final_not_enqueued: finalized events with markets but no settlement item
- queue_backlog: QUEUED settlement items waiting too long
- queue_failed: FAILED settlement items
- queue_stuck_processing: PROCESSING items whose worker likely died

Remediation:
- release_stale_locks(): requeue stuck items, drop their workers' leases and expired leases
- enqueue_orphaned_finals(): queue settlement for finalized events that were missed
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core import metrics
from app.core.config import settings
from app.core.logging import get_logger
from app.models import SettlementQueueItem
from app.models.enums import LifecycleState, QueueStatus
from app.repositories import MarketRepository, SettlementQueueRepository
from app.services.lifecycle.event_store import EventStore, StoredEvent, probe_events_schema
from app.services.lifecycle.job_lock import JobLockManager
from app.services.lifecycle.settlement import SettlementService
from app.utils.timezone import utcnow

logger = get_logger(__name__)

SAMPLE_SIZE = 5

_SEVERITY = {"ok": 0, "warning": 1, "critical": 2}


@dataclass
class HealthCheck:
    name: str
    status: str = "ok"
    count: int = 0
    message: str = ""
    sample: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class HealthReport:
    status: str
    checked_at: datetime
    checks: List[HealthCheck] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == "ok"

    def check(self, name: str) -> Optional[HealthCheck]:
        return next((c for c in self.checks if c.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "checked_at": self.checked_at.isoformat(),
            "checks": [asdict(c) for c in self.checks],
        }


def _event_sample(events: List[StoredEvent]) -> List[Dict[str, Any]]:
    return [
        {
            "id": e.id,
            "league": e.league,
            "external_id": e.external_id,
            "status_norm": e.status_norm,
            "starts_at": e.starts_at.isoformat() if e.starts_at else None,
            "finalized_at": e.finalized_at.isoformat() if e.finalized_at else None,
        }
        for e in events
    ]


def _queue_sample(items: List[SettlementQueueItem]) -> List[Dict[str, Any]]:
    return [
        {
            "id": i.id,
            "game_id": i.game_id,
            "league": i.league,
            "status": i.status,
            "attempts": i.attempts,
            "last_error": i.last_error,
            "locked_by": i.locked_by,
            "created_at": i.created_at.isoformat() if i.created_at else None,
        }
        for i in items
    ]


class HealthMonitor:
    """
    Usage:
        monitor = HealthMonitor(db, worker_id=worker_id)
        report = monitor.run_checks()
        if not report.healthy:
            monitor.release_stale_locks()
            monitor.enqueue_orphaned_finals()
    """

    def __init__(self, db: Session, worker_id: str, now: Optional[datetime] = None):
        self.db = db
        self._now = now
        self.worker_id = worker_id
        self.queue = SettlementQueueRepository(db)
        self.markets = MarketRepository(db)

    def now(self) -> datetime:
        return self._now or utcnow()

    def _store(self) -> EventStore:
        return EventStore(self.db, probe_events_schema(self.db))

    # ========================================================================
    # Checks
    # ========================================================================

    def _overdue_check(self, store: EventStore, name: str, state: LifecycleState, hours: int) -> HealthCheck:
        cutoff = self.now() - timedelta(hours=hours)
        check = HealthCheck(name=name)
        check.count = store.count_by_status([state.value], cutoff)
        if check.count:
            check.status = "warning"
            check.sample = _event_sample(store.find_by_status([state.value], cutoff, SAMPLE_SIZE))
            check.message = f"{check.count} {state.value} events started more than {hours}h ago"
        else:
            check.message = f"No {state.value} events older than {hours}h"
        return check

    def check_final_not_enqueued(self, store: EventStore) -> HealthCheck:
        check = HealthCheck(name="final_not_enqueued", count=store.count_orphaned_finals())
        if check.count:
            check.status = "critical"
            check.sample = _event_sample(store.find_orphaned_finals(SAMPLE_SIZE))
            check.message = f"{check.count} finalized events with markets have no settlement item"
        else:
            check.message = "Every finalized event with markets is queued"
        return check

    def check_queue_backlog(self) -> HealthCheck:
        minutes = settings.HEALTH_QUEUE_BACKLOG_MINUTES
        cutoff = self.now() - timedelta(minutes=minutes)
        criteria = (
            SettlementQueueItem.status == QueueStatus.QUEUED.value,
            SettlementQueueItem.created_at < cutoff,
        )
        check = HealthCheck(name="queue_backlog", count=self.queue.count(*criteria))
        if check.count:
            check.status = "warning"
            check.sample = _queue_sample(
                self.queue.query().filter(*criteria).order_by(SettlementQueueItem.created_at).limit(SAMPLE_SIZE).all()
            )
            check.message = f"{check.count} items queued for more than {minutes} minutes"
        else:
            check.message = "Queue is draining"
        return check

    def check_queue_failed(self) -> HealthCheck:
        threshold = settings.HEALTH_QUEUE_FAILED_CRITICAL
        check = HealthCheck(
            name="queue_failed",
            count=self.queue.count(SettlementQueueItem.status == QueueStatus.FAILED.value),
        )
        if check.count:
            check.status = "critical" if check.count >= threshold else "warning"
            check.sample = _queue_sample(self.queue.failed_items(limit=SAMPLE_SIZE))
            check.message = f"{check.count} settlement items failed"
        else:
            check.message = "No failed settlements"
        return check

    def check_queue_stuck_processing(self) -> HealthCheck:
        minutes = settings.HEALTH_PROCESSING_STALE_MINUTES
        stuck = self.queue.stale_processing(self.now() - timedelta(minutes=minutes))
        check = HealthCheck(name="queue_stuck_processing", count=len(stuck))
        if stuck:
            check.status = "warning"
            check.sample = _queue_sample(stuck[:SAMPLE_SIZE])
            check.message = f"{len(stuck)} items PROCESSING for more than {minutes} minutes"
        else:
            check.message = "No stuck settlements"
        return check

    def run_checks(self) -> HealthReport:
        """Run every check; overall status is the worst individual status."""
        store = self._store()
        checks = [
            self._overdue_check(store, "live_overdue", LifecycleState.LIVE, settings.HEALTH_LIVE_MAX_HOURS),
            self._overdue_check(
                store, "scheduled_stale", LifecycleState.SCHEDULED, settings.HEALTH_SCHEDULED_STALE_HOURS
            ),
            self.check_final_not_enqueued(store),
            self.check_queue_backlog(),
            self.check_queue_failed(),
            self.check_queue_stuck_processing(),
        ]
        status = max((c.status for c in checks), key=_SEVERITY.__getitem__)
        report = HealthReport(status=status, checked_at=self.now(), checks=checks)
        metrics.update_health_metrics(checks)

        if report.healthy:
            logger.info("✅ Lifecycle health: ok")
        else:
            problems = ", ".join(f"{c.name}={c.count}" for c in checks if c.status != "ok")
            logger.warning(f"⚠️ Lifecycle health: {status} ({problems})")
        return report

    # ========================================================================
    # Remediation
    # ========================================================================

    def release_stale_locks(self) -> Dict[str, int]:
        """
        Requeue stuck PROCESSING items and clear leases left by their workers.

        Returns:
            Counts of items reset, leases released and expired leases deleted
        """
        now = self.now()
        stuck = self.queue.stale_processing(now - timedelta(minutes=settings.HEALTH_PROCESSING_STALE_MINUTES))
        workers = sorted({i.locked_by for i in stuck if i.locked_by})

        for item in stuck:
            item.status = QueueStatus.QUEUED.value
            item.locked_by = None
            item.locked_at = None
            item.next_attempt_at = now
            item.updated_at = now
        self.db.commit()

        locks = JobLockManager(self.db, worker_id=self.worker_id, clock=self.now)
        released = locks.release_held_by(workers)
        expired = locks.cleanup_expired_locks()

        if stuck or released or expired:
            logger.warning(
                f"⚠️ Released stale work: items_reset={len(stuck)} leases_released={released} "
                f"expired_leases={expired}"
            )
        return {"items_reset": len(stuck), "leases_released": released, "expired_leases_deleted": expired}

    def enqueue_orphaned_finals(self, limit: int = 100) -> Dict[str, int]:
        """Queue settlement for finalized events with markets that were never enqueued."""
        orphans = self._store().find_orphaned_finals(limit)
        settlement = SettlementService(self.db, worker_id=self.worker_id)
        enqueued = sum(1 for event in orphans if settlement.enqueue_for_event(event))
        if orphans:
            logger.info(f"📥 Orphan sweep: found={len(orphans)} enqueued={enqueued}")
        return {"found": len(orphans), "enqueued": enqueued}
