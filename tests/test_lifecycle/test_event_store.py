"""Tests for the schema-adaptive event store.

Test Strategy:
1. Test schema probing and identity-column negotiation
2. Test build_event_payload() column filtering
3. Test upserts keyed on (league, external_id) and on the legacy integer key
4. Test the one-shot retry that drops a column the table rejects
5. Test updates, finalization stamps and lookups
6. Test finalized rows are never rewritten by a later upsert or finalize

Each test follows the pattern:
- Given: An events table (current, legacy or missing a column)
- When: An EventStore method is called
- Then: Correct rows and returned values
"""
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).parent.parent))
from conftest import NOW, create_event

from app.models import Event
from app.models.enums import LifecycleState
from app.services.lifecycle.event_store import (
    DEFAULT_EVENT_COLUMNS,
    EventStore,
    build_event_payload,
    missing_column_from_error,
    probe_events_schema,
    schema_info_from_columns,
)
from app.services.lifecycle.exceptions import SchemaMismatchError
from app.services.lifecycle.payloads import ProviderEvent


def _event(external_id: str = "1001", status_raw: str = "NS", **kwargs) -> ProviderEvent:
    defaults = {
        "starts_at": NOW - timedelta(hours=3),
        "home_team": "Boston Celtics",
        "away_team": "Los Angeles Lakers",
    }
    defaults.update(kwargs)
    return ProviderEvent(external_id=external_id, status_raw=status_raw, **defaults)


def _raw_session(ddl: str) -> Session:
    """Session on a private in-memory database holding a hand-written events table."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    with engine.begin() as conn:
        conn.execute(text(ddl))
    return sessionmaker(bind=engine, autoflush=False)()


LEGACY_EVENTS_DDL = """
CREATE TABLE events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    league VARCHAR(20) NOT NULL,
    game_id INTEGER NOT NULL,
    starts_at TIMESTAMP NOT NULL,
    status_norm VARCHAR(20),
    home_team VARCHAR(255),
    away_team VARCHAR(255),
    home_score INTEGER,
    away_score INTEGER,
    UNIQUE (league, game_id)
)
"""

NO_LAST_SYNCED_DDL = """
CREATE TABLE events (
    id VARCHAR(36) PRIMARY KEY,
    league VARCHAR(20) NOT NULL,
    external_id VARCHAR(100) NOT NULL,
    provider VARCHAR(50),
    season INTEGER,
    starts_at TIMESTAMP NOT NULL,
    status_raw VARCHAR(100),
    status_norm VARCHAR(20),
    home_team VARCHAR(255),
    away_team VARCHAR(255),
    home_score INTEGER,
    away_score INTEGER,
    finalized_at TIMESTAMP,
    winner_side VARCHAR(10),
    settled_at TIMESTAMP,
    is_placeholder BOOLEAN,
    created_at TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE (league, external_id)
)
"""


class TestSchemaNegotiation:
    """Tests for schema probing."""

    def test_probe_current_table(self, db_session: Session):
        """Should describe the current table via the inspector."""
        schema = probe_events_schema(db_session)

        assert schema.source == "inspector"
        assert schema.conflict_key == ("league", "external_id")
        assert schema.text_ids is True
        assert schema.has_finalized_at and schema.has_winner_side and schema.has_last_synced_at

    def test_probe_legacy_table(self):
        """Should fall back to the integer game_id key and database-generated ids."""
        db = _raw_session(LEGACY_EVENTS_DDL)
        try:
            schema = probe_events_schema(db)
        finally:
            db.close()

        assert schema.conflict_key == ("league", "game_id")
        assert schema.text_ids is False
        assert schema.has_finalized_at is False

    def test_external_id_preferred_over_game_id(self):
        """Should pick external_id when both identity columns exist."""
        schema = schema_info_from_columns(["id", "league", "game_id", "external_id"])
        assert schema.identity_column == "external_id"

    def test_no_identity_column(self):
        """Should refuse a table without any identity column."""
        with pytest.raises(SchemaMismatchError):
            schema_info_from_columns(["id", "league", "starts_at"])

    @pytest.mark.parametrize("message,expected", [
        ("(sqlite3.OperationalError) table events has no column named last_synced_at", "last_synced_at"),
        ('column "finalized_at" of relation "events" does not exist', "finalized_at"),
        ("Could not find the 'winner_side' column of 'events' in the schema cache", "winner_side"),
        ("no such column: events.settled_at", "settled_at"),
        ("connection refused", None),
    ])
    def test_missing_column_from_error(self, message, expected):
        """Should extract the rejected column from driver error messages."""
        assert missing_column_from_error(message) == expected


class TestBuildEventPayload:
    """Tests for payload construction."""

    def test_payload_contains_only_known_columns(self):
        """Should drop fields the table does not have."""
        schema = schema_info_from_columns(["id", "league", "external_id", "starts_at", "status_norm"])
        payload = build_event_payload(schema, "NBA", _event(), LifecycleState.SCHEDULED, NOW)

        assert set(payload) == {"id", "league", "external_id", "starts_at", "status_norm"}
        assert payload["league"] == "nba"
        assert payload["status_norm"] == "SCHEDULED"

    def test_payload_season_and_extra(self):
        """Should derive the season and merge transition stamps."""
        schema = schema_info_from_columns(DEFAULT_EVENT_COLUMNS)
        payload = build_event_payload(
            schema, "nba", _event(), LifecycleState.FINAL, NOW,
            extra={"finalized_at": NOW, "winner_side": "HOME"},
        )

        assert payload["season"] == 2024
        assert payload["finalized_at"] == NOW
        assert payload["winner_side"] == "HOME"
        assert payload["last_synced_at"] == NOW

    def test_legacy_key_needs_numeric_id(self):
        """Should refuse a non-numeric provider id for the integer key."""
        schema = schema_info_from_columns(["id", "league", "game_id"], text_ids=False)

        assert build_event_payload(schema, "nba", _event("42"), LifecycleState.LIVE, NOW)["game_id"] == 42
        with pytest.raises(SchemaMismatchError):
            build_event_payload(schema, "nba", _event("abc"), LifecycleState.LIVE, NOW)


class TestUpsertEvents:
    """Tests for keyed upserts."""

    def test_insert_then_update_keeps_id(self, db_session: Session):
        """Should update in place on (league, external_id) without changing the id."""
        store = EventStore(db_session, probe_events_schema(db_session))
        schema = store.schema

        assert store.upsert_events([build_event_payload(schema, "nba", _event(), LifecycleState.SCHEDULED, NOW)]) == 1
        first_id = db_session.query(Event).one().id

        later = NOW + timedelta(hours=1)
        live = _event(status_raw="Q2", home_score=50, away_score=48)
        store.upsert_events([build_event_payload(schema, "nba", live, LifecycleState.LIVE, later)])

        db_session.expire_all()
        row = db_session.query(Event).one()
        assert row.id == first_id
        assert row.status_norm == "LIVE"
        assert row.home_score == 50
        assert row.created_at == NOW
        assert row.last_synced_at == later

    def test_stale_upsert_does_not_reopen_final(self, db_session: Session):
        """Should keep a finalized row when a stale LIVE observation is upserted later."""
        store = EventStore(db_session, probe_events_schema(db_session))
        schema = store.schema
        live = _event(status_raw="Q4", home_score=90, away_score=80)
        store.upsert_events([build_event_payload(schema, "nba", live, LifecycleState.LIVE, NOW)])

        final = _event(status_raw="FT", home_score=101, away_score=99)
        finished = NOW + timedelta(minutes=30)
        store.upsert_events([build_event_payload(
            schema, "nba", final, LifecycleState.FINAL, finished,
            extra={"finalized_at": finished, "winner_side": "HOME"},
        )])

        # A discovery pass that read the row before it was finalized
        written = store.upsert_events([build_event_payload(schema, "nba", live, LifecycleState.LIVE, NOW)])

        db_session.expire_all()
        row = db_session.query(Event).one()
        assert written == 0
        assert row.status_norm == "FINAL"
        assert row.status_raw == "FT"
        assert (row.home_score, row.away_score) == (101, 99)
        assert row.winner_side == "HOME"
        assert row.finalized_at == finished

    def test_duplicate_keys_in_one_batch(self, db_session: Session):
        """Should let the last row win when a batch repeats a key."""
        store = EventStore(db_session, probe_events_schema(db_session))
        rows = [
            build_event_payload(store.schema, "nba", _event(), LifecycleState.SCHEDULED, NOW),
            build_event_payload(store.schema, "nba", _event(status_raw="Q1"), LifecycleState.LIVE, NOW),
        ]

        store.upsert_events(rows)
        assert db_session.query(Event).one().status_norm == "LIVE"

    def test_empty_batch(self, db_session: Session):
        """Should write nothing for an empty batch."""
        store = EventStore(db_session, probe_events_schema(db_session))
        assert store.upsert_events([]) == 0

    def test_retry_without_rejected_column(self):
        """Should drop a column the table rejects and retry once."""
        db = _raw_session(NO_LAST_SYNCED_DDL)
        try:
            store = EventStore(db, schema_info_from_columns(DEFAULT_EVENT_COLUMNS))
            row = build_event_payload(store.schema, "nba", _event(), LifecycleState.SCHEDULED, NOW)

            assert store.upsert_events([row]) == 1
            assert store.dropped_columns == {"last_synced_at"}
            assert "last_synced_at" not in store.columns
            assert db.execute(text("SELECT COUNT(*) FROM events")).scalar() == 1

            # Stays dropped for the rest of the store's life
            assert store.upsert_events([row]) == 1
        finally:
            db.close()

    def test_legacy_table_round_trip(self):
        """Should upsert and read back events keyed on the integer game_id."""
        db = _raw_session(LEGACY_EVENTS_DDL)
        try:
            store = EventStore(db, probe_events_schema(db))
            row = build_event_payload(store.schema, "nba", _event("1001"), LifecycleState.SCHEDULED, NOW)
            store.upsert_events([row])

            existing = store.get_existing("nba", ["1001", "not-a-number"])
            assert list(existing) == ["1001"]
            assert existing["1001"].status_norm == "SCHEDULED"
            assert existing["1001"].finalized_at is None
        finally:
            db.close()


class TestUpdatesAndLookups:
    """Tests for updates and reads."""

    def test_mark_finalized(self, db_session: Session):
        """Should write status, scores, winner and finalized_at."""
        stored = create_event(db_session, status_norm="LIVE")
        store = EventStore(db_session, probe_events_schema(db_session))
        final = _event(status_raw="FT", home_score=110, away_score=101)

        assert store.mark_finalized(stored.id, final, LifecycleState.FINAL, "HOME", NOW) is True

        db_session.expire_all()
        row = db_session.get(Event, stored.id)
        assert row.status_norm == "FINAL"
        assert row.winner_side == "HOME"
        assert row.finalized_at == NOW
        assert row.updated_at == NOW

    def test_mark_finalized_keeps_earlier_finalization(self, db_session: Session):
        """Should refuse to overwrite an event that already has finalized_at."""
        earlier = NOW - timedelta(hours=1)
        stored = create_event(
            db_session, status_norm="CANCELED", status_raw="CANC", finalized_at=earlier,
        )
        store = EventStore(db_session, probe_events_schema(db_session))
        final = _event(status_raw="FT", home_score=110, away_score=101)

        assert store.mark_finalized(stored.id, final, LifecycleState.FINAL, "HOME", NOW) is False

        db_session.expire_all()
        row = db_session.get(Event, stored.id)
        assert row.status_norm == "CANCELED"
        assert row.finalized_at == earlier
        assert row.winner_side is None

    def test_update_unknown_event(self, db_session: Session):
        """Should report False when no row matches."""
        store = EventStore(db_session, probe_events_schema(db_session))
        assert store.update_event("missing", {"status_norm": "LIVE"}) is False

    def test_update_ignores_unknown_columns(self, db_session: Session):
        """Should skip the update when no value maps to a column."""
        stored = create_event(db_session)
        store = EventStore(db_session, probe_events_schema(db_session))
        assert store.update_event(stored.id, {"nonexistent": 1}) is False

    def test_touch_last_synced(self, db_session: Session):
        """Should only bump last_synced_at on the given events."""
        frozen = create_event(db_session, external_id="1", status_norm="FINAL", finalized_at=NOW - timedelta(hours=1))
        create_event(db_session, external_id="2")
        store = EventStore(db_session, probe_events_schema(db_session))

        assert store.touch_last_synced("NBA", ["1"], NOW) == 1

        db_session.expire_all()
        row = db_session.get(Event, frozen.id)
        assert row.last_synced_at == NOW
        assert row.status_norm == "FINAL"

    def test_get_existing_and_get_event(self, db_session: Session):
        """Should find events by provider id within a league, and by primary key."""
        nba = create_event(db_session, external_id="77")
        create_event(db_session, league="nhl", external_id="77")
        store = EventStore(db_session, probe_events_schema(db_session))

        existing = store.get_existing("nba", ["77", "78"])
        assert list(existing) == ["77"]
        assert existing["77"].id == nba.id
        assert store.get_event(nba.id).league == "nba"
        assert store.get_event("missing") is None
        assert [e.id for e in store.get_events([nba.id, nba.id])] == [nba.id]

    def test_find_stuck(self, db_session: Session):
        """Should list old unfinalized events of one league, oldest first."""
        oldest = create_event(db_session, external_id="1", starts_at=NOW - timedelta(hours=10), status_norm="LIVE")
        old = create_event(db_session, external_id="2", starts_at=NOW - timedelta(hours=6))
        create_event(db_session, external_id="3", starts_at=NOW - timedelta(hours=6),
                     status_norm="FINAL", finalized_at=NOW - timedelta(hours=2))
        create_event(db_session, external_id="4", starts_at=NOW - timedelta(hours=1))
        create_event(db_session, league="nhl", external_id="5", starts_at=NOW - timedelta(hours=8))
        store = EventStore(db_session, probe_events_schema(db_session))

        stuck = store.find_stuck("nba", NOW - timedelta(hours=4), limit=10)
        assert [e.id for e in stuck] == [oldest.id, old.id]
        assert len(store.find_stuck("nba", NOW - timedelta(hours=4), limit=1)) == 1

    def test_find_stuck_without_finalized_at(self):
        """Should return nothing when the table cannot record finalization."""
        db = _raw_session(LEGACY_EVENTS_DDL)
        try:
            store = EventStore(db, probe_events_schema(db))
            assert store.find_stuck("nba", NOW, limit=10) == []
        finally:
            db.close()

    def test_count_and_find_by_status(self, db_session: Session):
        """Should count and list events in given states started before a cutoff."""
        create_event(db_session, external_id="1", status_norm="LIVE", starts_at=NOW - timedelta(hours=8))
        create_event(db_session, external_id="2", status_norm="LIVE", starts_at=NOW - timedelta(hours=1))
        create_event(db_session, external_id="3", status_norm="SCHEDULED", starts_at=NOW - timedelta(hours=8))
        store = EventStore(db_session, probe_events_schema(db_session))

        cutoff = NOW - timedelta(hours=6)
        assert store.count_by_status([LifecycleState.LIVE], cutoff) == 1
        assert store.count_by_status(["LIVE", "SCHEDULED"], cutoff) == 2
        assert [e.external_id for e in store.find_by_status(["LIVE"], cutoff)] == ["1"]
