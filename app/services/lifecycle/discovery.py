"""
Discovery job: ingest every event in a time window around now.

Per league, each calendar date touched by ``[now - hours_back,
now + hours_forward]`` is fetched from the provider, parsed through the
league's payload variant and upserted in batches keyed on
``(league, external_id)``.

Placeholder fixtures (TBD vs TBD) are ingested and tagged; the sync job is
the one that ignores them. Events already finalized are never rewritten,
only their ``last_synced_at`` is touched.
"""
import time
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core import metrics
from app.core.config import settings
from app.core.logging import get_logger
from app.models.enums import JobName
from app.services.lifecycle.base import LifecycleJob
from app.services.lifecycle.event_store import EventStore, build_event_payload
from app.services.lifecycle.exceptions import LifecycleError
from app.services.lifecycle.payloads import PROVIDER_NAME, ProviderEvent, family_for_league, normalize_record
from app.services.lifecycle.results import JobResult, MultiLeagueJobResult, elapsed_ms
from app.services.lifecycle.status import normalize_status, resolve_transition
from app.utils.timezone import date_range

logger = get_logger(__name__)

# Failed batches at or below this size are retried one row at a time
ROW_RETRY_MAX_BATCH = 3


class DiscoveryJob(LifecycleJob):
    """
    Usage:
        job = DiscoveryJob(db, provider)
        result = await job.run(leagues=["nba"], hours_back=12, hours_forward=48)
    """

    name = JobName.DISCOVER.value

    def __init__(self, *args, batch_size: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.batch_size = batch_size or settings.DISCOVERY_BATCH_SIZE

    async def run(
        self,
        leagues: Optional[List[str]] = None,
        hours_back: int = 36,
        hours_forward: int = 36,
        max_games_per_league: int = 500,
        start_date: Optional[str] = None,
    ) -> MultiLeagueJobResult:
        """
        ``start_date`` (YYYY-MM-DD) skips window dates before it, so a capped
        run can be continued from the ``resume_from`` date it reported.
        """
        started = time.monotonic()
        store = self.open_store()
        now = self.now()
        dates = date_range(now - timedelta(hours=hours_back), now + timedelta(hours=hours_forward))
        if start_date:
            dates = [d for d in dates if d >= start_date]

        result = MultiLeagueJobResult(job=self.name)
        for league in self.resolve_leagues(leagues):
            league_result = await self.discover_league(store, league, dates, max_games_per_league)
            result.results.append(league_result)
            self.heartbeat()

        result.has_more = any(r.has_more for r in result.results)
        result.duration_ms = elapsed_ms(started)
        logger.info(
            f"🔍 Discovery finished: fetched={result.total_fetched} upserted={result.total_upserted} "
            f"errors={len(result.errors)} ({result.duration_ms}ms)"
        )
        return result

    async def discover_league(
        self,
        store: EventStore,
        league: str,
        dates: List[str],
        max_games: int,
    ) -> JobResult:
        """
        Fetch dates for one league, then upsert what was collected.

        The cap is checked between dates: a date is always ingested whole, and
        once ``max_games`` events are collected the remaining dates are left
        for a later run (``has_more`` with ``resume_from`` set to the first
        date not fetched).
        """
        started = time.monotonic()
        result = JobResult(league=league)
        try:
            family_for_league(league)
        except ValueError as e:
            result.record_error(str(e), e)
            return result

        now = self.now()
        events: Dict[str, ProviderEvent] = {}
        fetched_dates = 0

        for index, date in enumerate(dates):
            if len(events) >= max_games:
                result.bump("capped")
                result.has_more = True
                result.resume_from = date
                logger.info(f"[{league}] cap of {max_games} reached; resume from {date}")
                break
            if index:
                await self.pause()
            fetched_dates += 1
            try:
                raw_games = await self.provider.fetch_games_for_date(league, date)
            except Exception as e:
                logger.error(f"❌ Discovery fetch failed for {league} {date}: {e}")
                result.record_error(f"{date}: {e}", e, date=date)
                continue

            result.fetched += len(raw_games)
            result.bump("raw_from_api", len(raw_games))
            for raw in raw_games:
                event = normalize_record(league, raw, now=now)
                if event is None:
                    result.bump("skipped_no_game_id")
                    continue
                if not event.start_resolved:
                    result.bump("skipped_no_start_time")
                if event.is_placeholder:
                    result.bump("placeholders")
                events[event.external_id] = event

            self.heartbeat()

        collected = list(events.values())
        result.upserted = self.upsert_batches(store, league, collected, result)
        metrics.record_events_upserted(league, result.upserted)
        result.duration_ms = elapsed_ms(started)
        logger.info(
            f"[{league}] discovered {len(collected)} events across {fetched_dates} dates, "
            f"upserted {result.upserted}"
        )
        return result

    def upsert_batches(
        self,
        store: EventStore,
        league: str,
        events: List[ProviderEvent],
        result: JobResult,
    ) -> int:
        """Upsert in fixed-size batches; returns rows written."""
        written = 0
        for batch_number, start in enumerate(range(0, len(events), self.batch_size), start=1):
            batch = events[start:start + self.batch_size]
            try:
                rows, frozen_ids = self._build_rows(store, league, batch, result)
                if frozen_ids:
                    store.touch_last_synced(league, frozen_ids, self.now())
                    result.bump("frozen", len(frozen_ids))
            except (SQLAlchemyError, LifecycleError) as e:
                self.db.rollback()
                logger.error(f"❌ [{league}] reading batch {batch_number} failed: {e}")
                result.record_error(f"Upsert batch {batch_number}: {e}", e, batch=batch_number)
                self.heartbeat()
                continue

            try:
                written += store.upsert_events(rows)
            except (SQLAlchemyError, LifecycleError) as e:
                if len(rows) > ROW_RETRY_MAX_BATCH:
                    logger.error(f"❌ [{league}] upsert batch {batch_number} failed: {e}")
                    result.record_error(f"Upsert batch {batch_number}: {e}", e, batch=batch_number)
                else:
                    written += self._upsert_rows(store, rows, batch_number, result)
            self.heartbeat()
        return written

    def _build_rows(self, store: EventStore, league: str, batch: List[ProviderEvent], result: JobResult):
        now = self.now()
        existing = store.get_existing(league, [e.external_id for e in batch])
        rows, frozen_ids = [], []
        for event in batch:
            stored = existing.get(event.external_id)
            proposed = normalize_status(
                PROVIDER_NAME, event.status_raw, event.home_score, event.away_score, event.starts_at, now=now
            )
            transition = resolve_transition(
                stored.status_norm if stored else None,
                stored.finalized_at if stored else None,
                proposed,
            )
            if transition.frozen:
                frozen_ids.append(event.external_id)
                continue
            try:
                rows.append(build_event_payload(store.schema, league, event, transition.state, now))
            except LifecycleError as e:
                result.record_error(f"{event.external_id}: {e.message}", e, external_id=event.external_id)
        return rows, frozen_ids

    def _upsert_rows(self, store: EventStore, rows: List[dict], batch_number: int, result: JobResult) -> int:
        written = 0
        for row in rows:
            try:
                written += store.upsert_events([row])
            except (SQLAlchemyError, LifecycleError) as e:
                result.record_error(f"Upsert batch {batch_number}: {e}", e, batch=batch_number)
        return written
