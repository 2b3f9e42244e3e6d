"""Tests for the discovery job.

Test Strategy:
1. Test a window of dates is fetched and upserted per league
2. Test per-date fetch errors are recorded without aborting the league
3. Test finalized events are never rewritten
4. Test re-runs are idempotent, the per-league cap and resuming from start_date
5. Test batch and lookup failures and the row-by-row retry for small batches

Each test follows the pattern:
- Given: A fake provider with games for a date window
- When: DiscoveryJob.run() or upsert_batches() is called
- Then: Correct rows in the events table and result counters
"""
import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

sys.path.insert(0, str(Path(__file__).parent.parent))
from conftest import NOW, american_game, create_event, fixed_clock

from app.models import Event
from app.services.lifecycle.discovery import DiscoveryJob
from app.services.lifecycle.event_store import DEFAULT_EVENT_COLUMNS, schema_info_from_columns
from app.services.lifecycle.exceptions import LifecycleError, ProviderError
from app.services.lifecycle.payloads import normalize_record
from app.services.lifecycle.results import JobResult


def _job(db: Session, provider, **kwargs) -> DiscoveryJob:
    return DiscoveryJob(db, provider, delay_ms=0, clock=fixed_clock, **kwargs)


@pytest.fixture
def two_day_slate(provider):
    provider.add_game("nba", "2025-01-15", american_game(1001, NOW + timedelta(hours=1)))
    provider.add_game("nba", "2025-01-15", american_game(1002, NOW - timedelta(hours=3), "FT", 110, 101))
    provider.add_game("nba", "2025-01-16", american_game(1003, NOW + timedelta(hours=25)))
    return provider


class TestDiscoveryRun:
    """Tests for DiscoveryJob.run()."""

    @pytest.mark.asyncio
    async def test_discovers_every_date_in_window(self, db_session: Session, two_day_slate):
        """Should fetch each date touched by the window and upsert every event."""
        result = await _job(db_session, two_day_slate).run(["nba"], hours_back=12, hours_forward=12)

        assert [c[2] for c in two_day_slate.calls] == ["2025-01-15", "2025-01-16"]
        assert result.success is True
        assert result.total_fetched == 3
        assert result.total_upserted == 3
        assert result.stats()["raw_from_api"] == 3

        rows = {e.external_id: e for e in db_session.query(Event).all()}
        assert set(rows) == {"1001", "1002", "1003"}
        assert rows["1001"].status_norm == "SCHEDULED"
        assert rows["1002"].status_norm == "FINAL"
        assert rows["1002"].finalized_at is None
        assert rows["1001"].season == 2024
        assert rows["1001"].last_synced_at == NOW

    @pytest.mark.asyncio
    async def test_fetch_error_is_recorded_per_date(self, db_session: Session, two_day_slate):
        """Should keep going after a failed date and record '{date}: error'."""
        two_day_slate.fail("nba", "2025-01-16", ProviderError("HTTP 500"))

        result = await _job(db_session, two_day_slate).run(["nba"], hours_back=12, hours_forward=12)

        assert result.errors == ["[nba] 2025-01-16: HTTP 500"]
        assert result.first_error.league == "nba"
        assert result.total_upserted == 2

    @pytest.mark.asyncio
    async def test_finalized_event_is_not_rewritten(self, db_session: Session, provider):
        """Should only touch last_synced_at on a finalized event."""
        stored = create_event(
            db_session, external_id="1001", status_norm="FINAL", status_raw="FT",
            home_score=110, away_score=101, finalized_at=NOW - timedelta(hours=1),
        )
        provider.add_game("nba", "2025-01-15", american_game(1001, NOW - timedelta(hours=3), "Q3", 80, 77))

        result = await _job(db_session, provider).run(["nba"], hours_back=1, hours_forward=1)

        db_session.expire_all()
        row = db_session.get(Event, stored.id)
        assert row.status_norm == "FINAL"
        assert row.home_score == 110
        assert row.last_synced_at == NOW
        assert result.stats()["frozen"] == 1
        assert result.total_upserted == 0

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, db_session: Session, two_day_slate):
        """Should not duplicate events when discovery runs twice."""
        job = _job(db_session, two_day_slate)
        await job.run(["nba"], hours_back=12, hours_forward=12)
        first_ids = {e.external_id: e.id for e in db_session.query(Event).all()}

        await job.run(["nba"], hours_back=12, hours_forward=12)

        db_session.expire_all()
        assert {e.external_id: e.id for e in db_session.query(Event).all()} == first_ids

    @pytest.mark.asyncio
    async def test_cap_stops_fetching(self, db_session: Session, two_day_slate):
        """Should ingest the capped date whole and report where to resume."""
        result = await _job(db_session, two_day_slate).run(
            ["nba"], hours_back=12, hours_forward=12, max_games_per_league=1
        )

        assert len(two_day_slate.calls) == 1
        assert result.total_upserted == 2
        assert result.stats()["capped"] == 1
        assert result.has_more is True
        assert result.results[0].resume_from == "2025-01-16"
        assert result.to_dict()["resume_from"] == {"nba": "2025-01-16"}

    @pytest.mark.asyncio
    async def test_resume_from_start_date(self, db_session: Session, two_day_slate):
        """Should continue a capped run from the date it reported."""
        job = _job(db_session, two_day_slate)
        first = await job.run(["nba"], hours_back=12, hours_forward=12, max_games_per_league=1)

        second = await job.run(
            ["nba"], hours_back=12, hours_forward=12, max_games_per_league=1,
            start_date=first.results[0].resume_from,
        )

        assert [c[2] for c in two_day_slate.calls] == ["2025-01-15", "2025-01-16"]
        assert second.has_more is False
        assert second.results[0].resume_from is None
        assert {e.external_id for e in db_session.query(Event).all()} == {"1001", "1002", "1003"}

    @pytest.mark.asyncio
    async def test_cap_reached_on_last_date(self, db_session: Session, two_day_slate):
        """Should not report more work when the cap is hit on the final date."""
        result = await _job(db_session, two_day_slate).run(
            ["nba"], hours_back=12, hours_forward=12, max_games_per_league=3
        )

        assert result.has_more is False
        assert "capped" not in result.stats()

    @pytest.mark.asyncio
    async def test_placeholders_and_missing_ids(self, db_session: Session, provider):
        """Should ingest and tag placeholder fixtures and skip records without ids."""
        provider.add_game("nba", "2025-01-15", american_game(2001, NOW, home="TBD", away="TBD"))
        provider.add_game("nba", "2025-01-15", american_game("undefined", NOW))

        result = await _job(db_session, provider).run(["nba"], hours_back=1, hours_forward=1)

        stats = result.stats()
        assert stats["placeholders"] == 1
        assert stats["skipped_no_game_id"] == 1
        assert db_session.query(Event).one().is_placeholder is True

    @pytest.mark.asyncio
    async def test_unknown_league(self, db_session: Session, provider):
        """Should record an error for a league without a parser and not fetch."""
        result = await _job(db_session, provider).run(["cricket"], hours_back=1, hours_forward=1)

        assert len(result.errors) == 1
        assert provider.calls == []


class TestUpsertBatches:
    """Tests for batch failure handling."""

    def _events(self, count: int):
        return [normalize_record("nba", american_game(3000 + i, NOW)) for i in range(count)]

    def _store(self):
        store = MagicMock()
        store.schema = schema_info_from_columns(DEFAULT_EVENT_COLUMNS)
        store.get_existing.return_value = {}
        return store

    def test_large_batch_failure_is_recorded(self, db_session: Session, provider):
        """Should record 'Upsert batch N' and move on when a large batch fails."""
        store = self._store()
        store.upsert_events.side_effect = [LifecycleError("boom"), 1]
        result = JobResult(league="nba")

        written = _job(db_session, provider, batch_size=5).upsert_batches(store, "nba", self._events(6), result)

        assert written == 1
        assert result.errors == ["Upsert batch 1: boom"]
        assert store.upsert_events.call_count == 2

    def test_small_batch_retried_row_by_row(self, db_session: Session, provider):
        """Should retry a failed batch of three or fewer rows one row at a time."""
        store = self._store()
        store.upsert_events.side_effect = [LifecycleError("boom"), 1, LifecycleError("bad row")]
        result = JobResult(league="nba")

        written = _job(db_session, provider, batch_size=5).upsert_batches(store, "nba", self._events(2), result)

        assert written == 1
        assert result.errors == ["Upsert batch 1: bad row"]
        assert store.upsert_events.call_count == 3

    def test_lookup_failure_skips_only_that_batch(self, db_session: Session, provider):
        """Should record a failed existing-row lookup and still write later batches."""
        store = self._store()
        store.get_existing.side_effect = [OperationalError("SELECT", {}, Exception("db gone")), {}]
        store.upsert_events.return_value = 2
        result = JobResult(league="nba")

        written = _job(db_session, provider, batch_size=2).upsert_batches(store, "nba", self._events(4), result)

        assert written == 2
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Upsert batch 1: ")
        assert result.first_error.code == "OperationalError"
        assert store.upsert_events.call_count == 1
