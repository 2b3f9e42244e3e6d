"""Shared pytest fixtures for game lifecycle tests."""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

# Test environment must be in place before app.core.config is imported
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ADMIN_TOKEN"] = ""
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PROVIDER_REQUEST_DELAY_MS"] = "0"
os.environ["ENABLED_LEAGUES_STR"] = "nba,soccer"
os.environ["LOG_JSON"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from app.models import Base, Event, JobLock, Market, Position, SettlementQueueItem  # noqa: E402

# Fixed "now" for every clock-driven test: a Wednesday evening in NBA season
NOW = datetime(2025, 1, 15, 18, 0, 0)


def fixed_clock() -> datetime:
    return NOW


class MutableClock:
    """Clock that tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create fresh test database session with isolated in-memory database."""
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# PROVIDER FIXTURES
# =============================================================================

class FakeProvider:
    """
    In-memory stand-in for the api-sports client.

    Usage:
        provider.add_game("nba", "2025-01-15", american_game(1001, NOW, status="FT"))
        provider.fail("nba", "2025-01-16", ProviderError("boom"))
    """

    def __init__(self):
        self.games = {}
        self.live = {}
        self.failures = {}
        self.calls = []
        self.on_fetch = None

    def add_game(self, league: str, date: str, record: dict) -> None:
        self.games.setdefault((league, date), []).append(record)

    def add_live(self, league: str, record: dict) -> None:
        self.live.setdefault(league, []).append(record)

    def fail(self, league: str, date: str, error: Exception) -> None:
        self.failures[(league, date)] = error

    async def fetch_games_for_date(self, league: str, date: str):
        self.calls.append(("date", league, date))
        if self.on_fetch is not None:
            self.on_fetch(league, date)
        if (league, date) in self.failures:
            raise self.failures[(league, date)]
        return list(self.games.get((league, date), []))

    async def fetch_live_games(self, league: str):
        self.calls.append(("live", league, None))
        if (league, "live") in self.failures:
            raise self.failures[(league, "live")]
        return list(self.live.get(league, []))

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


def american_game(
    game_id,
    starts_at: datetime,
    status: str = "NS",
    home_score=None,
    away_score=None,
    home: str = "Boston Celtics",
    away: str = "Los Angeles Lakers",
) -> dict:
    """Flat api-sports v1 game record (basketball / hockey / baseball shape)."""
    return {
        "id": game_id,
        "date": starts_at.isoformat() + "+00:00",
        "timestamp": int(starts_at.replace(tzinfo=timezone.utc).timestamp()),
        "status": {"short": status, "long": status},
        "teams": {"home": {"name": home}, "away": {"name": away}},
        "scores": {"home": {"total": home_score}, "away": {"total": away_score}},
    }


def soccer_fixture(
    fixture_id,
    starts_at: datetime,
    status: str = "NS",
    home_goals=None,
    away_goals=None,
    home: str = "Arsenal",
    away: str = "Chelsea",
) -> dict:
    """api-sports football v3 fixture record."""
    return {
        "fixture": {
            "id": fixture_id,
            "date": starts_at.isoformat() + "+00:00",
            "timestamp": int(starts_at.replace(tzinfo=timezone.utc).timestamp()),
            "status": {"short": status, "long": status},
        },
        "teams": {"home": {"name": home}, "away": {"name": away}},
        "goals": {"home": home_goals, "away": away_goals},
    }


# =============================================================================
# DATA HELPERS
# =============================================================================

def create_event(db: Session, **kwargs) -> Event:
    """Helper function to create and commit an Event with all required fields.

    Usage:
        event = create_event(db_session, external_id="1001", status_norm="LIVE")
    """
    defaults = {
        "league": "nba",
        "external_id": "1001",
        "provider": "api-sports",
        "season": 2024,
        "starts_at": NOW - timedelta(hours=3),
        "status_raw": "NS",
        "status_norm": "SCHEDULED",
        "home_team": "Boston Celtics",
        "away_team": "Los Angeles Lakers",
        "is_placeholder": False,
        "created_at": NOW - timedelta(days=1),
        "updated_at": NOW - timedelta(days=1),
    }
    defaults.update(kwargs)
    event = Event(**defaults)
    db.add(event)
    db.commit()
    return event


def create_market(db: Session, event: Event, positions=(), **kwargs) -> Market:
    """Create a market with positions given as (user_id, side, stake) tuples."""
    market = Market(event_id=event.id, title=f"{event.home_team} vs {event.away_team}", **kwargs)
    db.add(market)
    db.flush()
    for user_id, side, stake in positions:
        db.add(Position(market_id=market.id, user_id=user_id, side=side, stake=stake))
    db.commit()
    return market


def create_queue_item(db: Session, event: Event, **kwargs) -> SettlementQueueItem:
    defaults = {
        "game_id": event.id,
        "league": event.league,
        "external_id": event.external_id,
        "status": "QUEUED",
        "outcome": "HOME",
        "attempts": 0,
        "next_attempt_at": NOW,
        "created_at": NOW,
        "updated_at": NOW,
    }
    defaults.update(kwargs)
    item = SettlementQueueItem(**defaults)
    db.add(item)
    db.commit()
    return item


def create_lock(db: Session, job_name: str, locked_by: str, expires_at: datetime) -> JobLock:
    lock = JobLock(
        job_name=job_name,
        locked_at=expires_at - timedelta(minutes=5),
        expires_at=expires_at,
        locked_by=locked_by,
        meta={},
    )
    db.add(lock)
    db.commit()
    return lock


# =============================================================================
# FASTAPI TEST CLIENT FIXTURE
# =============================================================================

@pytest.fixture(scope="function")
def backfill_runner(session_factory, provider):
    from app.services.lifecycle.backfill import BackfillRunner

    return BackfillRunner(
        "backfill-worker",
        session_factory=session_factory,
        provider_factory=lambda: provider,
        clock=fixed_clock,
        league_delay_ms=0,
        day_delay_ms=0,
    )


@pytest.fixture(scope="function")
def test_client(db_session, provider, backfill_runner):
    """
    Create FastAPI TestClient wired to the test database and fake provider.

    Note: We don't use context manager (with TestClient) because it conflicts
    with Prometheus middleware that's added during app module initialization.

    Usage:
        def test_endpoint(test_client):
            response = test_client.get("/api/v1/lifecycle/locks")
            assert response.status_code == 200
    """
    from fastapi.testclient import TestClient
    from app.main import app
    from app.core.database import get_db
    from app.api.routes import lifecycle

    test_db_session = db_session

    def override_get_db():
        try:
            yield test_db_session
        finally:
            pass

    async def override_get_provider():
        yield provider

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[lifecycle.get_provider] = override_get_provider
    app.dependency_overrides[lifecycle.get_runner] = lambda: backfill_runner

    # TestClient runs without the lifespan, which normally sets the worker id
    app.state.worker_id = "api-test-worker"
    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()
