"""
Finalize job: sweep events that should have ended but were never finalized.

Candidates started more than ``stuck_hours`` ago and have no
``finalized_at``, whatever their stored status. Each candidate's date is
re-fetched from the provider; a FINAL or CANCELED answer finalizes the
event, locks its markets and queues settlement when markets exist.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core import metrics
from app.core.config import settings
from app.core.logging import get_logger
from app.models.enums import JobName, LifecycleState
from app.repositories import MarketRepository
from app.services.lifecycle.base import LifecycleJob
from app.services.lifecycle.event_store import EventStore, StoredEvent
from app.services.lifecycle.exceptions import LifecycleError
from app.services.lifecycle.payloads import PROVIDER_NAME, ProviderEvent, normalize_record
from app.services.lifecycle.results import JobResult, MultiLeagueJobResult, elapsed_ms
from app.services.lifecycle.settlement import SettlementService
from app.services.lifecycle.status import coerce_state, determine_winner, normalize_status
from app.services.lifecycle.sync import market_lock_reason

logger = get_logger(__name__)

CANDIDATE_STATS = (
    "total_candidates",
    "already_final",
    "still_live",
    "still_scheduled",
    "provider_not_found",
    "final_flipped",
    "final_no_markets",
    "final_with_markets",
)

_TERMINAL = (LifecycleState.FINAL, LifecycleState.CANCELED)


@dataclass
class CandidateCheck:
    """What the provider currently says about one stuck event."""

    candidate: StoredEvent
    provider_event: Optional[ProviderEvent] = None
    state: Optional[LifecycleState] = None
    markets: int = 0
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state in _TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.candidate.id,
            "external_id": self.candidate.external_id,
            "starts_at": self.candidate.starts_at.isoformat() if self.candidate.starts_at else None,
            "status_norm": self.candidate.status_norm,
            "provider_status": self.provider_event.status_raw if self.provider_event else None,
            "provider_state": self.state.value if self.state else None,
            "home_score": self.provider_event.home_score if self.provider_event else None,
            "away_score": self.provider_event.away_score if self.provider_event else None,
            "markets": self.markets,
            "error": self.error,
        }


class FinalizeJob(LifecycleJob):
    """
    Usage:
        job = FinalizeJob(db, provider, settlement=SettlementService(db, worker_id))
        result = await job.run(leagues=["nfl"], stuck_hours=4)
    """

    name = JobName.FINALIZE.value

    def __init__(self, *args, settlement: SettlementService, **kwargs):
        super().__init__(*args, **kwargs)
        self.settlement = settlement
        self.markets = MarketRepository(self.db)

    async def run(
        self,
        leagues: Optional[List[str]] = None,
        stuck_hours: Optional[int] = None,
        max_games: Optional[int] = None,
    ) -> MultiLeagueJobResult:
        started = time.monotonic()
        stuck_hours = stuck_hours or settings.FINALIZE_STUCK_HOURS
        max_games = max_games or settings.FINALIZE_MAX_GAMES
        store = self.open_store()

        result = MultiLeagueJobResult(job=self.name)
        for league in self.resolve_leagues(leagues):
            result.results.append(await self.finalize_league(store, league, stuck_hours, max_games))
            self.heartbeat()

        result.has_more = any(r.has_more for r in result.results)
        result.duration_ms = elapsed_ms(started)
        logger.info(
            f"🏁 Finalize finished: finalized={result.total_finalized} enqueued={result.total_enqueued} "
            f"stats={result.stats()} ({result.duration_ms}ms)"
        )
        return result

    # ========================================================================
    # Candidate evaluation
    # ========================================================================

    def _cutoff(self, stuck_hours: int) -> datetime:
        return self.now() - timedelta(hours=stuck_hours)

    async def _check_candidates(
        self,
        league: str,
        candidates: List[StoredEvent],
        result: JobResult,
    ) -> List[CandidateCheck]:
        """Re-fetch each candidate's date (once per date) and classify it."""
        by_date: Dict[str, Optional[Dict[str, ProviderEvent]]] = {}
        checks = []
        now = self.now()

        for index, candidate in enumerate(candidates):
            check = CandidateCheck(candidate=candidate)
            checks.append(check)
            stored_state = coerce_state(candidate.status_norm)
            if stored_state == LifecycleState.FINAL:
                result.bump("already_final")

            date = (candidate.starts_at or now).date().isoformat()
            if date not in by_date:
                if index:
                    await self.pause()
                try:
                    raw_games = await self.provider.fetch_games_for_date(league, date)
                except Exception as e:
                    logger.error(f"❌ Finalize fetch failed for {league} {date}: {e}")
                    result.record_error(f"{date}: {e}", e, date=date)
                    by_date[date] = None
                else:
                    result.fetched += len(raw_games)
                    parsed = (normalize_record(league, raw, now=now) for raw in raw_games)
                    by_date[date] = {e.external_id: e for e in parsed if e is not None}

            games = by_date[date]
            if games is None:
                check.error = "fetch_failed"
                continue
            check.provider_event = games.get(candidate.external_id)
            if check.provider_event is None:
                result.bump("provider_not_found")
                continue

            event = check.provider_event
            check.state = normalize_status(
                PROVIDER_NAME, event.status_raw, event.home_score, event.away_score, event.starts_at, now=now
            )
            if check.state == LifecycleState.LIVE:
                result.bump("still_live")
            elif check.state in (LifecycleState.SCHEDULED, LifecycleState.POSTPONED):
                result.bump("still_scheduled")
            else:
                try:
                    check.markets = self.markets.count_for_event(candidate.id)
                except SQLAlchemyError as e:
                    self.db.rollback()
                    logger.error(f"❌ [{league}] market count failed for {candidate.external_id}: {e}")
                    result.record_error(
                        f"Markets {candidate.external_id}: {e}", e, external_id=candidate.external_id
                    )
                    check.error = "markets_lookup_failed"
        return checks

    # ========================================================================
    # Job
    # ========================================================================

    async def finalize_league(
        self,
        store: EventStore,
        league: str,
        stuck_hours: int,
        max_games: int,
    ) -> JobResult:
        started = time.monotonic()
        result = JobResult(league=league, stats={k: 0 for k in CANDIDATE_STATS})
        try:
            candidates = store.find_stuck(league, self._cutoff(stuck_hours), max_games)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ [{league}] finalize candidate lookup failed: {e}")
            result.record_error(f"Candidates: {e}", e)
            result.duration_ms = elapsed_ms(started)
            return result

        result.bump("total_candidates", len(candidates))
        # A full page means older candidates may be waiting behind this one
        result.has_more = len(candidates) >= max_games

        for check in await self._check_candidates(league, candidates, result):
            if check.terminal and check.error is None:
                self._finalize(store, league, check, result)
            self.heartbeat()

        result.duration_ms = elapsed_ms(started)
        return result

    def _finalize(self, store: EventStore, league: str, check: CandidateCheck, result: JobResult) -> None:
        candidate, event, state = check.candidate, check.provider_event, check.state
        now = self.now()
        winner = determine_winner(event.home_score, event.away_score) if state == LifecycleState.FINAL else None
        winner_side = winner.value if winner else None
        try:
            updated = store.mark_finalized(candidate.id, event, state, winner_side, now)
        except (SQLAlchemyError, LifecycleError) as e:
            logger.error(f"❌ [{league}] finalize update failed for {candidate.external_id}: {e}")
            result.record_error(f"Update {candidate.external_id}: {e}", e, external_id=candidate.external_id)
            return

        if not updated:
            result.bump("finalized_elsewhere")
            logger.info(f"⏭️ [{league}] {candidate.external_id} was finalized concurrently; leaving it")
            return

        result.finalized += 1
        result.bump("final_flipped")
        metrics.record_event_finalized(league, state.value)
        logger.info(f"🏁 [{league}] finalized {candidate.external_id} -> {state.value} (winner={winner_side})")

        if not check.markets:
            result.bump("final_no_markets")
            return

        finalized = StoredEvent(
            id=candidate.id,
            league=league,
            external_id=candidate.external_id,
            status_norm=state.value,
            finalized_at=now,
            winner_side=winner_side,
        )
        try:
            locked = self.markets.lock_for_event(candidate.id, reason=market_lock_reason(state), now=now)
            self.db.commit()
            result.bump("final_with_markets")
            logger.info(f"🔒 [{league}] locked {locked} markets for {candidate.external_id}")

            if self.settlement.enqueue_for_event(finalized, state=state):
                result.enqueued += 1
        except (SQLAlchemyError, LifecycleError) as e:
            self.db.rollback()
            logger.error(f"❌ [{league}] lock/enqueue failed for {candidate.external_id}: {e}")
            result.record_error(f"Settle {candidate.external_id}: {e}", e, external_id=candidate.external_id)

    async def get_candidates(
        self,
        league: str,
        stuck_hours: Optional[int] = None,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """
        Read-only view of what ``run`` would do for one league.

        Returns:
            Dict with the cutoff, per-candidate provider classification and
            the same stats counters ``run`` reports
        """
        stuck_hours = stuck_hours or settings.FINALIZE_STUCK_HOURS
        store = self.open_store()
        league = league.lower()
        cutoff = self._cutoff(stuck_hours)
        result = JobResult(league=league, stats={k: 0 for k in CANDIDATE_STATS})

        candidates = store.find_stuck(league, cutoff, limit)
        result.bump("total_candidates", len(candidates))
        checks = await self._check_candidates(league, candidates, result)
        for check in checks:
            if check.terminal:
                result.bump("final_flipped")
                result.bump("final_with_markets" if check.markets else "final_no_markets")

        return {
            "league": league,
            "stuck_hours": stuck_hours,
            "cutoff": cutoff.isoformat(),
            "stats": result.stats,
            "errors": result.errors,
            "candidates": [c.to_dict() for c in checks],
        }
