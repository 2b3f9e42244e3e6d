"""Tests for named-job leases.

Test Strategy:
1. Test acquire() mutual exclusion, takeover after expiry and a lost upsert race
2. Test release(), extend(), force_release() and cleanup_expired_locks()
3. Test get_job_locks() monitoring view
4. Test with_lock() skip / run / release-on-error behavior
5. Test JobLease.heartbeat() extension after half the TTL

Each test follows the pattern:
- Given: Lease rows in an in-memory database and a controllable clock
- When: A JobLockManager method is called
- Then: Correct result and job_locks contents
"""
import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.orm import Session

sys.path.insert(0, str(Path(__file__).parent.parent))
from conftest import NOW, MutableClock, create_lock

from app.models import JobLock
from app.services.lifecycle.job_lock import JobLockManager, generate_worker_id


def _locks(db: Session, worker_id: str, clock) -> JobLockManager:
    return JobLockManager(db, worker_id=worker_id, clock=clock)


class TestAcquire:
    """Tests for lease acquisition."""

    def test_acquire_free_lease(self, db_session: Session):
        """Should take a free lease and record owner, expiry and started_at."""
        clock = MutableClock()
        result = _locks(db_session, "worker-a", clock).acquire("sync", ttl_minutes=5)

        assert result.acquired is True
        assert result.holder == "worker-a"
        assert result.expires_at == NOW + timedelta(minutes=5)

        row = db_session.query(JobLock).filter(JobLock.job_name == "sync").one()
        assert row.locked_by == "worker-a"
        assert row.meta["started_at"] == NOW.isoformat()

    def test_second_worker_is_denied(self, db_session: Session):
        """Should refuse a live lease to another worker and name the holder."""
        clock = MutableClock()
        _locks(db_session, "worker-a", clock).acquire("sync")

        result = _locks(db_session, "worker-b", clock).acquire("sync")

        assert result.acquired is False
        assert result.holder == "worker-a"
        assert db_session.query(JobLock).one().locked_by == "worker-a"

    def test_expired_lease_is_taken_over(self, db_session: Session):
        """Should let another worker take a lease once it has expired."""
        clock = MutableClock()
        _locks(db_session, "worker-a", clock).acquire("sync", ttl_minutes=5)
        clock.advance(minutes=6)

        result = _locks(db_session, "worker-b", clock).acquire("sync", ttl_minutes=5)

        assert result.acquired is True
        assert db_session.query(JobLock).one().locked_by == "worker-b"

    def test_competitor_commits_between_read_and_upsert(self, db_session: Session, session_factory, monkeypatch):
        """Should lose to a lease another worker committed after the free-lease check."""
        clock = MutableClock()
        locks = _locks(db_session, "worker-a", clock)
        original_read = locks._read
        reads = []

        def read_then_compete(job_name):
            reads.append(job_name)
            if len(reads) > 1:
                return original_read(job_name)
            # The check saw no lease; worker-b commits one before our upsert runs
            competitor = session_factory()
            try:
                create_lock(competitor, job_name, "worker-b", expires_at=NOW + timedelta(minutes=5))
            finally:
                competitor.close()
            return None

        monkeypatch.setattr(locks, "_read", read_then_compete)

        result = locks.acquire("sync", ttl_minutes=5)

        assert result.acquired is False
        assert result.holder == "worker-b"
        assert result.expires_at == NOW + timedelta(minutes=5)
        db_session.expire_all()
        row = db_session.query(JobLock).one()
        assert row.locked_by == "worker-b"
        assert row.locked_at == NOW


    def test_leases_are_per_job_name(self, db_session: Session):
        """Should keep different job names independent."""
        clock = MutableClock()
        assert _locks(db_session, "worker-a", clock).acquire("sync").acquired is True
        assert _locks(db_session, "worker-b", clock).acquire("discover").acquired is True

    def test_worker_id_required(self, db_session: Session):
        """Should refuse to build a manager without a worker identity."""
        with pytest.raises(ValueError):
            JobLockManager(db_session, worker_id="")

    def test_generated_worker_ids_are_unique(self):
        """Should generate a distinct identity per call."""
        assert generate_worker_id() != generate_worker_id()


class TestReleaseAndExtend:
    """Tests for release, extend and administrative cleanup."""

    def test_release(self, db_session: Session):
        """Should delete the lease row."""
        locks = _locks(db_session, "worker-a", MutableClock())
        locks.acquire("sync")

        assert locks.release("sync") is True
        assert db_session.query(JobLock).count() == 0
        assert locks.release("sync") is False

    def test_release_only_if_owner(self, db_session: Session):
        """Should leave another worker's lease alone when restricted to owner."""
        clock = MutableClock()
        _locks(db_session, "worker-a", clock).acquire("sync")

        assert _locks(db_session, "worker-b", clock).release("sync", only_if_owner=True) is False
        assert db_session.query(JobLock).count() == 1

    def test_extend_by_owner(self, db_session: Session):
        """Should push expires_at forward for the owning worker."""
        clock = MutableClock()
        locks = _locks(db_session, "worker-a", clock)
        locks.acquire("backfill", ttl_minutes=5)
        clock.advance(minutes=3)

        assert locks.extend("backfill", additional_minutes=10) is True
        db_session.expire_all()
        assert db_session.query(JobLock).one().expires_at == NOW + timedelta(minutes=13)

    def test_extend_by_other_worker_fails(self, db_session: Session):
        """Should not let a non-owner extend a lease."""
        clock = MutableClock()
        _locks(db_session, "worker-a", clock).acquire("backfill", ttl_minutes=5)

        assert _locks(db_session, "worker-b", clock).extend("backfill", 10) is False
        db_session.expire_all()
        assert db_session.query(JobLock).one().expires_at == NOW + timedelta(minutes=5)

    def test_force_release_ignores_owner(self, db_session: Session):
        """Should delete any worker's lease administratively."""
        clock = MutableClock()
        _locks(db_session, "worker-a", clock).acquire("sync")

        assert _locks(db_session, "admin", clock).force_release("sync") == 1
        assert _locks(db_session, "admin", clock).force_release("sync") == 0

    def test_cleanup_expired_locks(self, db_session: Session):
        """Should delete only expired leases."""
        create_lock(db_session, "sync", "worker-a", expires_at=NOW - timedelta(minutes=1))
        create_lock(db_session, "discover", "worker-b", expires_at=NOW - timedelta(hours=2))
        create_lock(db_session, "finalize", "worker-c", expires_at=NOW + timedelta(minutes=4))

        deleted = _locks(db_session, "janitor", MutableClock()).cleanup_expired_locks()

        assert deleted == 2
        assert [lock.job_name for lock in db_session.query(JobLock).all()] == ["finalize"]

    def test_release_held_by(self, db_session: Session):
        """Should delete every lease held by the given workers."""
        create_lock(db_session, "sync", "dead-worker", expires_at=NOW + timedelta(minutes=3))
        create_lock(db_session, "discover", "alive-worker", expires_at=NOW + timedelta(minutes=3))

        locks = _locks(db_session, "janitor", MutableClock())
        assert locks.release_held_by(["dead-worker"]) == 1
        assert locks.release_held_by([]) == 0
        assert db_session.query(JobLock).one().locked_by == "alive-worker"


class TestGetJobLocks:
    """Tests for the monitoring view."""

    def test_lists_leases_with_expiry_flags(self, db_session: Session):
        """Should list leases newest first with is_expired and seconds_remaining."""
        create_lock(db_session, "sync", "worker-a", expires_at=NOW - timedelta(minutes=1))
        create_lock(db_session, "discover", "worker-b", expires_at=NOW + timedelta(minutes=2))

        entries = _locks(db_session, "viewer", MutableClock()).get_job_locks()

        assert [e["job_name"] for e in entries] == ["discover", "sync"]
        assert entries[0]["is_expired"] is False
        assert entries[0]["seconds_remaining"] == 120
        assert entries[1]["is_expired"] is True
        assert entries[1]["seconds_remaining"] == 0


class TestWithLock:
    """Tests for scoped lease acquisition."""

    @pytest.mark.asyncio
    async def test_runs_and_releases(self, db_session: Session):
        """Should run the function and release the lease afterwards."""
        locks = _locks(db_session, "worker-a", MutableClock())

        async def work(lease):
            assert db_session.query(JobLock).count() == 1
            return "done"

        run = await locks.with_lock("sync", work)

        assert run.skipped is False
        assert run.result == "done"
        assert db_session.query(JobLock).count() == 0

    @pytest.mark.asyncio
    async def test_skips_when_held(self, db_session: Session):
        """Should not call the function when another worker holds the lease."""
        clock = MutableClock()
        _locks(db_session, "worker-a", clock).acquire("sync")
        work = AsyncMock()

        run = await _locks(db_session, "worker-b", clock).with_lock("sync", work)

        assert run.skipped is True
        assert run.holder == "worker-a"
        assert run.error == "Job sync is already running (locked by worker-a)"
        work.assert_not_called()
        assert db_session.query(JobLock).one().locked_by == "worker-a"

    @pytest.mark.asyncio
    async def test_releases_on_error(self, db_session: Session):
        """Should release the lease and re-raise when the function fails."""
        locks = _locks(db_session, "worker-a", MutableClock())

        async def work(lease):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await locks.with_lock("sync", work)
        assert db_session.query(JobLock).count() == 0


class TestHeartbeat:
    """Tests for lease keep-alive."""

    @pytest.mark.asyncio
    async def test_heartbeat_extends_after_half_ttl(self, db_session: Session):
        """Should leave the lease alone early and extend it past half its TTL."""
        clock = MutableClock()
        locks = _locks(db_session, "worker-a", clock)

        async def work(lease):
            clock.advance(minutes=2)
            assert lease.heartbeat() is True
            db_session.expire_all()
            assert db_session.query(JobLock).one().expires_at == NOW + timedelta(minutes=10)

            clock.advance(minutes=4)
            assert lease.heartbeat() is True
            db_session.expire_all()
            return db_session.query(JobLock).one().expires_at

        run = await locks.with_lock("backfill", work, ttl_minutes=10)
        assert run.result == NOW + timedelta(minutes=16)

    @pytest.mark.asyncio
    async def test_heartbeat_reports_lost_lease(self, db_session: Session):
        """Should return False once the lease was taken away."""
        clock = MutableClock()
        locks = _locks(db_session, "worker-a", clock)

        async def work(lease):
            locks.force_release("backfill")
            clock.advance(minutes=6)
            return lease.heartbeat()

        run = await locks.with_lock("backfill", work, ttl_minutes=10)
        assert run.result is False
