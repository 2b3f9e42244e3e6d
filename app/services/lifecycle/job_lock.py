"""
Named-job mutual exclusion via lease rows in ``job_locks``.

Every lifecycle job runs under a lease keyed by its name. A lease carries
``expires_at``; a crashed worker's lease simply expires. Long jobs keep
their lease alive through ``JobLease.heartbeat()`` between units of work.

Worker identity is an explicit constructor argument, generated once per
process with ``resolve_worker_id()`` at startup.

Usage:
    locks = JobLockManager(db, worker_id=worker_id)
    run = await locks.with_lock("sync", run_sync, ttl_minutes=5)
    if run.skipped:
        logger.info(run.error)
"""
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging import get_logger
from app.models import JobLock
from app.services.lifecycle.sql import upsert_insert
from app.utils.timezone import utcnow

logger = get_logger(__name__)

DEFAULT_TTL_MINUTES = 5


def generate_worker_id() -> str:
    """Process-unique worker identity: host, pid and a random suffix."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def resolve_worker_id() -> str:
    """``WORKER_ID`` from settings, else a fresh id. Call once at process startup."""
    return settings.WORKER_ID or generate_worker_id()


@dataclass
class LockResult:
    acquired: bool
    holder: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class LockedRun:
    """Result of ``with_lock``: either skipped (someone else holds it) or the function's result."""

    skipped: bool
    result: Any = None
    error: Optional[str] = None
    holder: Optional[str] = None


class JobLease:
    """Handle given to a locked function for keeping its lease alive."""

    def __init__(self, manager: "JobLockManager", job_name: str, ttl_minutes: int):
        self.manager = manager
        self.job_name = job_name
        self.ttl_minutes = ttl_minutes
        self.renewed_at = manager.now()

    def heartbeat(self) -> bool:
        """
        Extend the lease once half its TTL has elapsed.

        Returns:
            False if the lease could not be extended (it is no longer ours)
        """
        now = self.manager.now()
        if now - self.renewed_at < timedelta(minutes=self.ttl_minutes) / 2:
            return True
        extended = self.manager.extend(self.job_name, self.ttl_minutes)
        if extended:
            self.renewed_at = now
        else:
            logger.warning(f"⚠️ Lost lease for job '{self.job_name}' (worker {self.manager.worker_id})")
        return extended


class JobLockManager:
    """Acquire, extend and release TTL leases for named jobs."""

    def __init__(self, db: Session, worker_id: str, clock: Callable[[], datetime] = utcnow):
        if not worker_id:
            raise ValueError("worker_id is required")
        self.db = db
        self.worker_id = worker_id
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def _read(self, job_name: str) -> Optional[JobLock]:
        self.db.expire_all()
        return self.db.query(JobLock).filter(JobLock.job_name == job_name).first()

    def acquire(self, job_name: str, ttl_minutes: int = DEFAULT_TTL_MINUTES) -> LockResult:
        """
        Try to take the lease for ``job_name``.

        Expired leases are deleted first. The upsert only overwrites a row
        whose lease has expired, and a re-read confirms which worker owns the
        row, so two interleaved attempts cannot both succeed.
        """
        now = self.now()

        self.db.query(JobLock).filter(
            JobLock.job_name == job_name,
            JobLock.expires_at < now,
        ).delete(synchronize_session=False)
        self.db.commit()

        current = self._read(job_name)
        if current is not None and current.expires_at >= now:
            return LockResult(acquired=False, holder=current.locked_by, expires_at=current.expires_at)

        table = JobLock.__table__
        expires_at = now + timedelta(minutes=ttl_minutes)
        values = {
            "job_name": job_name,
            "locked_at": now,
            "expires_at": expires_at,
            "locked_by": self.worker_id,
            "meta": {"started_at": now.isoformat()},
        }
        stmt = upsert_insert(self.db, table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.job_name],
            set_={k: v for k, v in values.items() if k != "job_name"},
            where=table.c.expires_at < now,
        )
        self.db.execute(stmt)
        self.db.commit()

        current = self._read(job_name)
        if current is None or current.locked_by != self.worker_id:
            holder = current.locked_by if current else None
            logger.info(f"🔒 Lost race for job '{job_name}' to {holder}")
            return LockResult(acquired=False, holder=holder, expires_at=current.expires_at if current else None)

        logger.debug(f"🔓 Acquired lease for job '{job_name}' until {expires_at.isoformat()}")
        return LockResult(acquired=True, holder=self.worker_id, expires_at=expires_at)

    def release(self, job_name: str, only_if_owner: bool = False) -> bool:
        """
        Delete the lease row for ``job_name``.

        Args:
            only_if_owner: Restrict the delete to a lease held by this worker
        """
        query = self.db.query(JobLock).filter(JobLock.job_name == job_name)
        if only_if_owner:
            query = query.filter(JobLock.locked_by == self.worker_id)
        deleted = query.delete(synchronize_session=False)
        self.db.commit()
        return deleted > 0

    def extend(self, job_name: str, additional_minutes: int = DEFAULT_TTL_MINUTES) -> bool:
        """Push ``expires_at`` to now + additional_minutes, only for a lease this worker holds."""
        updated = (
            self.db.query(JobLock)
            .filter(JobLock.job_name == job_name, JobLock.locked_by == self.worker_id)
            .update(
                {JobLock.expires_at: self.now() + timedelta(minutes=additional_minutes)},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    def force_release(self, job_name: str) -> int:
        """Administrative delete, ignoring ownership."""
        deleted = self.db.query(JobLock).filter(JobLock.job_name == job_name).delete(synchronize_session=False)
        self.db.commit()
        if deleted:
            logger.warning(f"⚠️ Force-released lease for job '{job_name}'")
        return deleted

    def release_held_by(self, worker_ids: List[str]) -> int:
        """Delete every lease held by the given workers (crashed-worker cleanup)."""
        if not worker_ids:
            return 0
        deleted = (
            self.db.query(JobLock)
            .filter(JobLock.locked_by.in_(worker_ids))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    def cleanup_expired_locks(self) -> int:
        deleted = self.db.query(JobLock).filter(JobLock.expires_at < self.now()).delete(synchronize_session=False)
        self.db.commit()
        return deleted

    def get_job_locks(self) -> List[Dict[str, Any]]:
        """All leases, newest first, with expiry information for monitoring."""
        now = self.now()
        self.db.expire_all()
        locks = self.db.query(JobLock).order_by(JobLock.locked_at.desc()).all()
        return [
            {
                "job_name": lock.job_name,
                "locked_by": lock.locked_by,
                "locked_at": lock.locked_at.isoformat(),
                "expires_at": lock.expires_at.isoformat(),
                "is_expired": lock.expires_at < now,
                "seconds_remaining": max(0, int((lock.expires_at - now).total_seconds())),
                "meta": lock.meta or {},
            }
            for lock in locks
        ]

    async def with_lock(
        self,
        job_name: str,
        fn: Callable[[JobLease], Awaitable[Any]],
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
    ) -> LockedRun:
        """
        Run ``fn`` while holding the lease for ``job_name``.

        Returns a skipped LockedRun without calling ``fn`` when another worker
        holds the lease. The lease is released on every exit path; exceptions
        from ``fn`` propagate after release.
        """
        lock = self.acquire(job_name, ttl_minutes)
        if not lock.acquired:
            return LockedRun(
                skipped=True,
                holder=lock.holder,
                error=f"Job {job_name} is already running (locked by {lock.holder})",
            )

        lease = JobLease(self, job_name, ttl_minutes)
        try:
            result = await fn(lease)
            return LockedRun(skipped=False, result=result)
        finally:
            if not self.db.is_active:
                self.db.rollback()
            self.release(job_name, only_if_owner=True)
