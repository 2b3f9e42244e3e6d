"""Tests for lifecycle health checks and remediation.

Test Strategy:
1. Test a clean database reports ok on every check
2. Test each check trips on its own condition with the right severity
3. Test orphaned finals are selected in the query, not after a row limit
4. Test release_stale_locks() requeues stuck items and clears leases
5. Test enqueue_orphaned_finals() queues missed finalized events

Each test follows the pattern:
- Given: Events, markets, queue items and leases in a known state
- When: HealthMonitor is run at a fixed time
- Then: Correct check statuses, counts and remediation counts
"""
import sys
from datetime import timedelta
from pathlib import Path

from sqlalchemy.orm import Session

sys.path.insert(0, str(Path(__file__).parent.parent))
from conftest import NOW, create_event, create_lock, create_market, create_queue_item

from app.models import JobLock, SettlementQueueItem
from app.services.lifecycle.health import HealthMonitor

CHECK_NAMES = [
    "live_overdue",
    "scheduled_stale",
    "final_not_enqueued",
    "queue_backlog",
    "queue_failed",
    "queue_stuck_processing",
]


def _monitor(db: Session) -> HealthMonitor:
    return HealthMonitor(db, now=NOW, worker_id="health-worker")


def _orphan(db: Session, external_id: str = "1001"):
    event = create_event(
        db, external_id=external_id, status_norm="FINAL", winner_side="HOME",
        finalized_at=NOW - timedelta(hours=1),
    )
    create_market(db, event)
    return event


class TestRunChecks:
    """Tests for HealthMonitor.run_checks()."""

    def test_clean_state_is_ok(self, db_session: Session):
        """Should report ok on every check for an empty database."""
        report = _monitor(db_session).run_checks()

        assert report.healthy is True
        assert [c.name for c in report.checks] == CHECK_NAMES
        assert all(c.status == "ok" and c.count == 0 for c in report.checks)
        assert report.to_dict()["checked_at"] == NOW.isoformat()

    def test_live_overdue(self, db_session: Session):
        """Should warn about LIVE events that started more than 6h ago."""
        create_event(db_session, external_id="1", status_norm="LIVE", starts_at=NOW - timedelta(hours=7))
        create_event(db_session, external_id="2", status_norm="LIVE", starts_at=NOW - timedelta(hours=2))

        report = _monitor(db_session).run_checks()

        check = report.check("live_overdue")
        assert check.status == "warning"
        assert check.count == 1
        assert check.sample[0]["external_id"] == "1"
        assert report.status == "warning"

    def test_scheduled_stale(self, db_session: Session):
        """Should warn about SCHEDULED events that should have started 3h+ ago."""
        create_event(db_session, status_norm="SCHEDULED", starts_at=NOW - timedelta(hours=5))

        check = _monitor(db_session).run_checks().check("scheduled_stale")
        assert check.status == "warning"
        assert check.count == 1

    def test_final_not_enqueued_is_critical(self, db_session: Session):
        """Should flag finalized events with markets but no queue item as critical."""
        _orphan(db_session)
        unstamped = create_event(db_session, external_id="2", status_norm="FINAL")
        create_market(db_session, unstamped)

        report = _monitor(db_session).run_checks()

        check = report.check("final_not_enqueued")
        assert check.status == "critical"
        assert check.count == 1
        assert report.status == "critical"
        assert report.healthy is False

    def test_orphans_behind_many_open_markets(self, db_session: Session):
        """Should find orphans however many unfinished events also have markets."""
        for n in range(150):
            create_market(db_session, create_event(db_session, external_id=f"open-{n}"))
        orphan = _orphan(db_session)

        monitor = _monitor(db_session)
        check = monitor.run_checks().check("final_not_enqueued")

        assert check.count == 1
        assert [s["id"] for s in check.sample] == [orphan.id]
        assert monitor.enqueue_orphaned_finals() == {"found": 1, "enqueued": 1}

    def test_orphan_count_is_not_capped_by_sample(self, db_session: Session):
        """Should report the full orphan count with a five-row sample."""
        for n in range(7):
            _orphan(db_session, external_id=f"final-{n}")

        check = _monitor(db_session).run_checks().check("final_not_enqueued")

        assert check.count == 7
        assert len(check.sample) == 5

    def test_canceled_orphan_and_queued_event(self, db_session: Session):
        """Should count CANCELED orphans and skip events that already have a queue item."""
        canceled = create_event(
            db_session, external_id="c1", status_norm="CANCELED", finalized_at=NOW - timedelta(hours=2),
        )
        create_market(db_session, canceled)
        queued = _orphan(db_session, external_id="q1")
        create_queue_item(db_session, queued)

        check = _monitor(db_session).run_checks().check("final_not_enqueued")

        assert check.count == 1
        assert check.sample[0]["external_id"] == "c1"


    def test_queue_backlog(self, db_session: Session):
        """Should warn about items QUEUED for more than 30 minutes."""
        create_queue_item(db_session, create_event(db_session, external_id="1"), created_at=NOW - timedelta(minutes=45))
        create_queue_item(db_session, create_event(db_session, external_id="2"), created_at=NOW - timedelta(minutes=5))

        check = _monitor(db_session).run_checks().check("queue_backlog")
        assert check.status == "warning"
        assert check.count == 1

    def test_queue_failed_severity(self, db_session: Session):
        """Should warn on a few failures and go critical at five."""
        for index in range(4):
            create_queue_item(db_session, create_event(db_session, external_id=str(index)), status="FAILED")
        assert _monitor(db_session).run_checks().check("queue_failed").status == "warning"

        create_queue_item(db_session, create_event(db_session, external_id="4"), status="FAILED")
        check = _monitor(db_session).run_checks().check("queue_failed")
        assert check.status == "critical"
        assert check.count == 5
        assert len(check.sample) == 5

    def test_queue_stuck_processing(self, db_session: Session):
        """Should warn about items PROCESSING for more than 15 minutes."""
        create_queue_item(
            db_session, create_event(db_session), status="PROCESSING",
            locked_by="dead-worker", locked_at=NOW - timedelta(minutes=20),
        )

        check = _monitor(db_session).run_checks().check("queue_stuck_processing")
        assert check.status == "warning"
        assert check.sample[0]["locked_by"] == "dead-worker"


class TestRemediation:
    """Tests for release_stale_locks() and enqueue_orphaned_finals()."""

    def test_release_stale_locks(self, db_session: Session):
        """Should requeue stuck items and drop their workers' and expired leases."""
        item = create_queue_item(
            db_session, create_event(db_session), status="PROCESSING",
            locked_by="dead-worker", locked_at=NOW - timedelta(minutes=20),
        )
        create_lock(db_session, "sync", "dead-worker", expires_at=NOW + timedelta(minutes=10))
        create_lock(db_session, "discover", "gone-worker", expires_at=NOW - timedelta(minutes=1))
        create_lock(db_session, "finalize", "alive-worker", expires_at=NOW + timedelta(minutes=3))

        counts = _monitor(db_session).release_stale_locks()

        assert counts == {"items_reset": 1, "leases_released": 1, "expired_leases_deleted": 1}
        db_session.expire_all()
        reset = db_session.get(SettlementQueueItem, item.id)
        assert reset.status == "QUEUED"
        assert reset.locked_by is None
        assert reset.next_attempt_at == NOW
        assert [lock.job_name for lock in db_session.query(JobLock).all()] == ["finalize"]

    def test_release_with_nothing_stale(self, db_session: Session):
        """Should report zero counts when nothing is stuck."""
        assert _monitor(db_session).release_stale_locks() == {
            "items_reset": 0, "leases_released": 0, "expired_leases_deleted": 0,
        }

    def test_enqueue_orphaned_finals(self, db_session: Session):
        """Should queue settlement for every orphaned finalized event."""
        event = _orphan(db_session)

        counts = _monitor(db_session).enqueue_orphaned_finals()

        assert counts == {"found": 1, "enqueued": 1}
        item = db_session.query(SettlementQueueItem).one()
        assert item.game_id == event.id
        assert item.outcome == "HOME"
        assert _monitor(db_session).enqueue_orphaned_finals() == {"found": 0, "enqueued": 0}
