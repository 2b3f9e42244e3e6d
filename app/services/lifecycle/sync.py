"""
Sync job: refresh live and today's events, detect completions.

A transition into FINAL stamps ``finalized_at`` and ``winner_side`` and
queues settlement with the winner; a transition into CANCELED stamps
``finalized_at`` and queues a refund. Frozen events are only touched.
"""
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core import metrics
from app.core.config import settings
from app.core.logging import get_logger
from app.models.enums import JobName, LifecycleState
from app.repositories import MarketRepository
from app.services.lifecycle.base import LifecycleJob
from app.services.lifecycle.event_store import EventStore, build_event_payload
from app.services.lifecycle.exceptions import LifecycleError
from app.services.lifecycle.payloads import PROVIDER_NAME, ProviderEvent, normalize_record
from app.services.lifecycle.results import JobResult, MultiLeagueJobResult, elapsed_ms
from app.services.lifecycle.settlement import SettlementService
from app.services.lifecycle.status import Transition, determine_winner, normalize_status, resolve_transition

logger = get_logger(__name__)


def market_lock_reason(state: LifecycleState) -> str:
    return "GAME_CANCELED" if state == LifecycleState.CANCELED else "GAME_FINAL"


@dataclass
class _Completion:
    event: ProviderEvent
    transition: Transition


class SyncJob(LifecycleJob):
    """
    Usage:
        job = SyncJob(db, provider, settlement=SettlementService(db, worker_id))
        result = await job.run(leagues=["nhl"])
    """

    name = JobName.SYNC.value

    def __init__(self, *args, settlement: SettlementService, **kwargs):
        super().__init__(*args, **kwargs)
        self.settlement = settlement
        self.markets = MarketRepository(self.db)

    async def run(self, leagues: Optional[List[str]] = None, max_games: Optional[int] = None) -> MultiLeagueJobResult:
        started = time.monotonic()
        max_games = max_games or settings.SYNC_MAX_GAMES
        store = self.open_store()

        result = MultiLeagueJobResult(job=self.name)
        for league in self.resolve_leagues(leagues):
            result.results.append(await self.sync_league(store, league, max_games))
            self.heartbeat()

        result.has_more = any(r.has_more for r in result.results)
        result.duration_ms = elapsed_ms(started)
        logger.info(
            f"🔄 Sync finished: fetched={result.total_fetched} upserted={result.total_upserted} "
            f"finalized={result.total_finalized} enqueued={result.total_enqueued} ({result.duration_ms}ms)"
        )
        return result

    async def _fetch(self, league: str, result: JobResult) -> List[dict]:
        """Today's schedule followed by live games, so live records win the dedupe."""
        today = self.now().date().isoformat()
        raw_games: List[dict] = []
        try:
            raw_games.extend(await self.provider.fetch_games_for_date(league, today))
        except Exception as e:
            logger.error(f"❌ Sync fetch failed for {league} {today}: {e}")
            result.record_error(f"{today}: {e}", e, date=today)

        await self.pause()
        try:
            raw_games.extend(await self.provider.fetch_live_games(league))
        except Exception as e:
            logger.error(f"❌ Live fetch failed for {league}: {e}")
            result.record_error(f"live: {e}", e)
        return raw_games

    async def sync_league(self, store: EventStore, league: str, max_games: int) -> JobResult:
        started = time.monotonic()
        result = JobResult(league=league)
        now = self.now()

        raw_games = await self._fetch(league, result)
        result.bump("raw_from_api", len(raw_games))

        events: Dict[str, ProviderEvent] = {}
        seen = set()
        for raw in raw_games:
            event = normalize_record(league, raw, now=now)
            if event is None:
                result.bump("skipped_no_game_id")
                continue
            seen.add(event.external_id)
            if event.is_placeholder:
                result.bump("skipped_placeholder")
                continue
            events[event.external_id] = event

        # One event listed in both today's schedule and the live feed counts once
        result.fetched = len(seen)
        result.has_more = len(events) > max_games
        self.write_events(store, league, list(events.values())[:max_games], result)
        result.duration_ms = elapsed_ms(started)
        return result

    def write_events(
        self,
        store: EventStore,
        league: str,
        events: List[ProviderEvent],
        result: JobResult,
        require_markets: bool = False,
    ) -> None:
        """
        Apply fresh observations to the store.

        Frozen events are only touched. Events reaching FINAL or CANCELED are
        stamped, their markets locked and settlement queued.

        Args:
            require_markets: Only queue settlement for events that have markets
        """
        if not events:
            return
        now = self.now()
        try:
            existing = store.get_existing(league, [e.external_id for e in events])
        except (SQLAlchemyError, LifecycleError) as e:
            self.db.rollback()
            logger.error(f"❌ [{league}] reading stored events failed: {e}")
            result.record_error(f"Lookup: {e}", e)
            return
        rows, frozen_ids, completions = [], [], []

        for event in events:
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

            extra = {}
            if transition.became_final:
                winner = determine_winner(event.home_score, event.away_score)
                extra = {"finalized_at": now, "winner_side": winner.value if winner else None}
            elif transition.became_canceled:
                extra = {"finalized_at": now}
            try:
                rows.append(build_event_payload(store.schema, league, event, transition.state, now, extra=extra))
            except LifecycleError as e:
                result.record_error(f"{event.external_id}: {e.message}", e, external_id=event.external_id)
                continue
            if transition.reached_terminal:
                completions.append(_Completion(event=event, transition=transition))

        if frozen_ids:
            try:
                store.touch_last_synced(league, frozen_ids, now)
                result.bump("frozen", len(frozen_ids))
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"❌ [{league}] touching frozen events failed: {e}")
                result.record_error(f"Touch: {e}", e)

        try:
            written = store.upsert_events(rows)
        except (SQLAlchemyError, LifecycleError) as e:
            logger.error(f"❌ [{league}] upsert failed: {e}")
            result.record_error(f"Upsert: {e}", e)
            return
        result.upserted += written
        metrics.record_events_upserted(league, written)

        if completions:
            self._settle_completions(store, league, completions, result, require_markets)

    def _settle_completions(
        self,
        store: EventStore,
        league: str,
        completions: List[_Completion],
        result: JobResult,
        require_markets: bool,
    ) -> None:
        try:
            stored = store.get_existing(league, [c.event.external_id for c in completions])
        except (SQLAlchemyError, LifecycleError) as e:
            self.db.rollback()
            logger.error(f"❌ [{league}] reading completed events failed: {e}")
            result.record_error(f"Lookup: {e}", e)
            return

        for completion in completions:
            event = stored.get(completion.event.external_id)
            if event is None:
                continue
            state = completion.transition.state
            result.finalized += 1
            metrics.record_event_finalized(league, state.value)
            logger.info(f"🏁 [{league}] {event.external_id} -> {state.value} (winner={event.winner_side})")

            try:
                self.markets.lock_for_event(event.id, reason=market_lock_reason(state), now=self.now())
                self.db.commit()

                if require_markets and not self.markets.count_for_event(event.id):
                    result.bump("final_no_markets")
                    continue
                if self.settlement.enqueue_for_event(event, state=state):
                    result.enqueued += 1
            except (SQLAlchemyError, LifecycleError) as e:
                self.db.rollback()
                logger.error(f"❌ [{league}] lock/enqueue failed for {event.external_id}: {e}")
                result.record_error(f"Settle {event.external_id}: {e}", e, external_id=event.external_id)
