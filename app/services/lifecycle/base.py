"""
Shared plumbing for lifecycle jobs.

A job instance lives for one invocation: it holds the session, the
provider, the lease handed out by ``JobLockManager.with_lock`` (if any)
and the ``SchemaInfo`` probed for this run.
"""
import asyncio
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.services.lifecycle.event_store import EventStore, SchemaInfo, probe_events_schema
from app.services.lifecycle.job_lock import JobLease
from app.services.lifecycle.provider import SportsDataProvider
from app.utils.timezone import utcnow


class LifecycleJob:
    """Base class for the provider-driven jobs."""

    name: str = "job"

    def __init__(
        self,
        db: Session,
        provider: SportsDataProvider,
        schema: Optional[SchemaInfo] = None,
        lease: Optional[JobLease] = None,
        delay_ms: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.provider = provider
        self.schema = schema
        self.lease = lease
        self.delay_ms = settings.PROVIDER_REQUEST_DELAY_MS if delay_ms is None else delay_ms
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def open_store(self) -> EventStore:
        """Store for this invocation; the schema is probed on first use."""
        if self.schema is None:
            self.schema = probe_events_schema(self.db)
        return EventStore(self.db, self.schema)

    def heartbeat(self) -> None:
        if self.lease is not None:
            self.lease.heartbeat()

    async def pause(self, milliseconds: Optional[int] = None) -> None:
        delay = self.delay_ms if milliseconds is None else milliseconds
        if delay > 0:
            await asyncio.sleep(delay / 1000)

    @staticmethod
    def resolve_leagues(leagues: Optional[List[str]]) -> List[str]:
        return [league.lower() for league in (leagues or settings.ENABLED_LEAGUES)]
