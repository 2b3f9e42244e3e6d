"""
Schema-adaptive access to the shared ``events`` table.

The events table is shared with other services and has gone through more
than one generation of columns. Each job invocation probes the table once
(``probe_events_schema``) and passes the resulting ``SchemaInfo`` down, so
payloads only ever contain columns that exist.

Provides:
- SchemaInfo / probe_events_schema: per-invocation capability negotiation
- build_event_payload: ProviderEvent -> column dict for this schema
- EventStore: upserts keyed on the identity columns, lookups, updates
- missing_column_from_error: extract the offending column from a DB error
"""
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, cast, column, func, inspect, select, table, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql.sqltypes import NullType, String

from app.core.logging import get_logger
from app.models import Event, Market, SettlementQueueItem
from app.models.enums import LifecycleState
from app.services.lifecycle.exceptions import SchemaMismatchError
from app.services.lifecycle.payloads import ProviderEvent
from app.services.lifecycle.sql import upsert_insert
from app.utils.timezone import season_for_date, utcnow

logger = get_logger(__name__)

EVENTS_TABLE = "events"

# Column set of the current table generation, used when the table cannot be described
DEFAULT_EVENT_COLUMNS: FrozenSet[str] = frozenset(c.name for c in Event.__table__.columns)

# Never overwritten by an upsert
_INSERT_ONLY_COLUMNS = frozenset({"id", "created_at"})

_MISSING_COLUMN_PATTERNS = (
    re.compile(r"could not find the '([^']+)' column", re.IGNORECASE),  # PostgREST schema cache
    re.compile(r'column "([^"]+)" of relation "[^"]+" does not exist', re.IGNORECASE),  # PostgreSQL
    re.compile(r'column "(?:\w+\.)?([^"]+)" does not exist', re.IGNORECASE),
    re.compile(r"has no column named (\w+)", re.IGNORECASE),  # SQLite
    re.compile(r"no such column: (?:\w+\.)?(\w+)", re.IGNORECASE),
    re.compile(r"'([^']+)' column", re.IGNORECASE),
)


def missing_column_from_error(message: str) -> Optional[str]:
    """Name of the column a schema-mismatch error complains about, if any."""
    for pattern in _MISSING_COLUMN_PATTERNS:
        match = pattern.search(message or "")
        if match:
            return match.group(1)
    return None


@dataclass(frozen=True)
class SchemaInfo:
    """What the events table looks like for this invocation."""

    columns: FrozenSet[str]
    conflict_key: Tuple[str, str]
    source: str = "default"  # inspector, sample_row, default
    text_ids: bool = True  # id column takes generated UUID strings

    @property
    def identity_column(self) -> str:
        return self.conflict_key[1]

    def has(self, name: str) -> bool:
        return name in self.columns

    @property
    def has_finalized_at(self) -> bool:
        return self.has("finalized_at")

    @property
    def has_winner_side(self) -> bool:
        return self.has("winner_side")

    @property
    def has_last_synced_at(self) -> bool:
        return self.has("last_synced_at")

    @property
    def has_settled_at(self) -> bool:
        return self.has("settled_at")

    @property
    def has_is_placeholder(self) -> bool:
        return self.has("is_placeholder")


def schema_info_from_columns(
    columns: Iterable[str],
    source: str = "default",
    text_ids: bool = True,
) -> SchemaInfo:
    """
    Derive SchemaInfo from a "describe table" column list.

    The text ``external_id`` key is preferred over the legacy integer
    ``game_id`` key.

    Raises:
        SchemaMismatchError: If neither identity column exists
    """
    names = frozenset(str(c).lower() for c in columns)
    if "external_id" in names:
        key = ("league", "external_id")
    elif "game_id" in names:
        key = ("league", "game_id")
    else:
        raise SchemaMismatchError("events table has no identity column (external_id or game_id)")
    return SchemaInfo(columns=names, conflict_key=key, source=source, text_ids=text_ids)


def probe_events_schema(db: Session) -> SchemaInfo:
    """
    Describe the events table: inspector metadata, else one sample row, else defaults.
    """
    try:
        described = inspect(db.connection()).get_columns(EVENTS_TABLE)
    except SQLAlchemyError as e:
        logger.debug(f"Could not describe {EVENTS_TABLE} via inspector: {e}")
        described = []

    if described:
        id_type = next((c["type"] for c in described if c["name"] == "id"), None)
        return schema_info_from_columns(
            (c["name"] for c in described),
            source="inspector",
            text_ids=id_type is None or isinstance(id_type, String),
        )

    try:
        row = db.execute(text(f"SELECT * FROM {EVENTS_TABLE} LIMIT 1")).mappings().first()
    except SQLAlchemyError as e:
        db.rollback()
        logger.debug(f"Could not sample {EVENTS_TABLE}: {e}")
        row = None

    if row:
        return schema_info_from_columns(row.keys(), source="sample_row")

    logger.warning(f"⚠️ Falling back to default column set for {EVENTS_TABLE}")
    return schema_info_from_columns(DEFAULT_EVENT_COLUMNS, source="default")


def _identity_value(schema: SchemaInfo, external_id: str) -> Any:
    if schema.identity_column == "game_id":
        if not external_id.isdigit():
            raise SchemaMismatchError(
                f"Legacy integer key cannot hold provider id '{external_id}'",
                column="game_id",
            )
        return int(external_id)
    return external_id


def build_event_payload(
    schema: SchemaInfo,
    league: str,
    event: ProviderEvent,
    state: LifecycleState,
    now: datetime,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Column dict for one event, restricted to columns the table has.

    ``extra`` carries transition stamps (finalized_at, winner_side).
    """
    league = league.lower()
    payload: Dict[str, Any] = {
        "league": league,
        schema.identity_column: _identity_value(schema, event.external_id),
        "provider": event.provider,
        "season": season_for_date(league, event.starts_at),
        "starts_at": event.starts_at,
        "status_raw": event.status_raw,
        "status_norm": LifecycleState(state).value,
        "home_team": event.home_team,
        "away_team": event.away_team,
        "home_score": event.home_score,
        "away_score": event.away_score,
        "is_placeholder": event.is_placeholder,
        "last_synced_at": now,
        "created_at": now,
        "updated_at": now,
    }
    if schema.identity_column != "external_id":
        payload["external_id"] = event.external_id
    if schema.text_ids:
        payload["id"] = str(uuid.uuid4())
    if extra:
        payload.update(extra)
    return {k: v for k, v in payload.items() if k in schema.columns}


@dataclass
class StoredEvent:
    """The slice of a stored event the jobs decide transitions on."""

    id: Any
    league: str
    external_id: str
    status_norm: Optional[str]
    finalized_at: Optional[datetime] = None
    winner_side: Optional[str] = None
    starts_at: Optional[datetime] = None
    home_team: Optional[str] = None
    away_team: Optional[str] = None


class EventStore:
    """
    Upserts and queries against the events table for one job invocation.

    Columns stripped after a schema-mismatch retry stay stripped for the
    rest of this store's life (``dropped_columns``).
    """

    def __init__(self, db: Session, schema: SchemaInfo):
        self.db = db
        self.schema = schema
        self.dropped_columns: Set[str] = set()

        model_columns = Event.__table__.c
        self._table = table(
            EVENTS_TABLE,
            *[
                column(name, model_columns[name].type if name in model_columns else NullType())
                for name in sorted(self.schema.columns)
            ],
        )

    @property
    def columns(self) -> FrozenSet[str]:
        return self.schema.columns - self.dropped_columns

    def _c(self, name: str):
        return self._table.c[name]

    def _strip(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in row.items() if k not in self.dropped_columns}

    def _unfinalized(self):
        """``finalized_at IS NULL``, or None when the table cannot record finalization."""
        if "finalized_at" not in self.columns:
            return None
        return self._c("finalized_at").is_(None)

    # ========================================================================
    # Writes
    # ========================================================================

    def _upsert(self, rows: Sequence[Dict[str, Any]]) -> int:
        written = 0
        # A statement may not touch the same key twice; the last row per key wins
        unique_rows = {tuple(row.get(k) for k in self.schema.conflict_key): row for row in rows}

        # One statement per distinct column set
        groups: Dict[FrozenSet[str], List[Dict[str, Any]]] = {}
        for row in unique_rows.values():
            groups.setdefault(frozenset(row), []).append(row)

        for keys, group in groups.items():
            stmt = upsert_insert(self.db, self._table).values(group)
            update_columns = keys - _INSERT_ONLY_COLUMNS - set(self.schema.conflict_key)
            stmt = stmt.on_conflict_do_update(
                index_elements=list(self.schema.conflict_key),
                set_={name: stmt.excluded[name] for name in update_columns},
                # Finalized rows are frozen; a stale observation never overwrites them
                where=self._unfinalized(),
            )
            result = self.db.execute(stmt)
            written += result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(group)

        self.db.commit()
        return written

    def _with_schema_retry(self, operation, rows: List[Dict[str, Any]]):
        try:
            return operation([self._strip(r) for r in rows])
        except SQLAlchemyError as e:
            self.db.rollback()
            missing = missing_column_from_error(str(e))
            if not missing or missing in self.schema.conflict_key or not any(missing in r for r in rows):
                raise
            logger.warning(f"⚠️ Column '{missing}' rejected by {EVENTS_TABLE}; retrying without it")
            self.dropped_columns.add(missing)
            return operation([self._strip(r) for r in rows])

    def upsert_events(self, rows: List[Dict[str, Any]]) -> int:
        """
        Insert or update events keyed on the identity columns.

        Retries once without a column the store reports as unknown.

        Returns:
            Number of rows written (inserted or updated)
        """
        if not rows:
            return 0
        return self._with_schema_retry(self._upsert, rows)

    def update_event(
        self,
        event_id: Any,
        values: Dict[str, Any],
        commit: bool = True,
        unfinalized_only: bool = False,
    ) -> bool:
        """
        Update one event by primary key; unknown columns are ignored.

        With ``commit=False`` the update joins the caller's transaction and is
        not retried on a schema mismatch. With ``unfinalized_only`` a row that
        already has ``finalized_at`` is left alone and False is returned.
        """
        values = {k: v for k, v in values.items() if k in self.columns}
        if not values:
            return False
        if self.schema.has("updated_at") and "updated_at" not in values:
            values["updated_at"] = values.get("last_synced_at") or utcnow()

        def _update(rows):
            stmt = update(self._table).where(self._c("id") == event_id)
            guard = self._unfinalized() if unfinalized_only else None
            if guard is not None:
                stmt = stmt.where(guard)
            result = self.db.execute(stmt.values(**rows[0]))
            if commit:
                self.db.commit()
            return result.rowcount == 1

        if not commit:
            return _update([self._strip(values)])
        return self._with_schema_retry(_update, [values])

    def mark_finalized(
        self,
        event_id: Any,
        event: ProviderEvent,
        state: LifecycleState,
        winner_side: Optional[str],
        now: datetime,
    ) -> bool:
        """
        Write a terminal observation: status, scores, winner and ``finalized_at``.

        Returns False when the event was finalized by someone else first.
        """
        return self.update_event(event_id, {
            "status_raw": event.status_raw,
            "status_norm": LifecycleState(state).value,
            "home_score": event.home_score,
            "away_score": event.away_score,
            "winner_side": winner_side,
            "finalized_at": now,
            "last_synced_at": now,
        }, unfinalized_only=True)

    def touch_last_synced(self, league: str, external_ids: Iterable[str], now: datetime) -> int:
        """Record a sync pass for events whose lifecycle columns are frozen."""
        ids = list(external_ids)
        if not ids or not self.schema.has_last_synced_at or "last_synced_at" in self.dropped_columns:
            return 0
        result = self.db.execute(
            update(self._table)
            .where(and_(self._c("league") == league.lower(), self._identity_in(ids)))
            .values(last_synced_at=now)
        )
        self.db.commit()
        return result.rowcount

    # ========================================================================
    # Reads
    # ========================================================================

    def _identity_in(self, external_ids: List[str]):
        identity = self._c(self.schema.identity_column)
        if self.schema.identity_column == "game_id":
            return identity.in_([int(i) for i in external_ids if i.isdigit()])
        return identity.in_(external_ids)

    def _select_columns(self):
        wanted = [
            "id", "league", self.schema.identity_column, "status_norm", "finalized_at",
            "winner_side", "starts_at", "home_team", "away_team",
        ]
        return [self._c(name) for name in dict.fromkeys(wanted) if name in self.columns]

    def _to_stored(self, row) -> StoredEvent:
        data = dict(row)
        return StoredEvent(
            id=data.get("id"),
            league=data.get("league"),
            external_id=str(data.get(self.schema.identity_column)),
            status_norm=data.get("status_norm"),
            finalized_at=data.get("finalized_at"),
            winner_side=data.get("winner_side"),
            starts_at=data.get("starts_at"),
            home_team=data.get("home_team"),
            away_team=data.get("away_team"),
        )

    def get_existing(self, league: str, external_ids: Iterable[str]) -> Dict[str, StoredEvent]:
        """Stored events for ``external_ids`` in a league, keyed by provider id."""
        ids = list(dict.fromkeys(external_ids))
        if not ids:
            return {}
        rows = self.db.execute(
            select(*self._select_columns()).where(
                and_(self._c("league") == league.lower(), self._identity_in(ids))
            )
        ).mappings().all()
        stored = [self._to_stored(r) for r in rows]
        return {s.external_id: s for s in stored}

    def get_event(self, event_id: Any) -> Optional[StoredEvent]:
        row = self.db.execute(
            select(*self._select_columns()).where(self._c("id") == event_id)
        ).mappings().first()
        return self._to_stored(row) if row else None

    def find_stuck(self, league: str, cutoff: datetime, limit: int) -> List[StoredEvent]:
        """
        Events of a league that started before ``cutoff`` and were never finalized,
        whatever their current status. Oldest first.
        """
        if not self.schema.has_finalized_at:
            return []
        rows = self.db.execute(
            select(*self._select_columns())
            .where(
                and_(
                    self._c("league") == league.lower(),
                    self._c("starts_at") < cutoff,
                    self._c("finalized_at").is_(None),
                )
            )
            .order_by(self._c("starts_at"))
            .limit(limit)
        ).mappings().all()
        return [self._to_stored(r) for r in rows]

    def get_events(self, event_ids: Iterable[Any]) -> List[StoredEvent]:
        ids = list(dict.fromkeys(event_ids))
        if not ids:
            return []
        rows = self.db.execute(
            select(*self._select_columns()).where(self._c("id").in_(ids))
        ).mappings().all()
        return [self._to_stored(r) for r in rows]

    def _status_before(self, states: Sequence[str], started_before: datetime):
        return and_(
            self._c("status_norm").in_([str(getattr(s, "value", s)) for s in states]),
            self._c("starts_at") < started_before,
        )

    def count_by_status(self, states: Sequence[str], started_before: datetime) -> int:
        """Events in one of ``states`` that started before ``started_before``."""
        return self.db.execute(
            select(func.count()).select_from(self._table).where(self._status_before(states, started_before))
        ).scalar() or 0

    def find_by_status(self, states: Sequence[str], started_before: datetime, limit: int = 5) -> List[StoredEvent]:
        rows = self.db.execute(
            select(*self._select_columns())
            .where(self._status_before(states, started_before))
            .order_by(self._c("starts_at"))
            .limit(limit)
        ).mappings().all()
        return [self._to_stored(r) for r in rows]

    # ========================================================================
    # Orphaned finals
    # ========================================================================

    def _orphaned_final(self):
        """
        Frozen events (FINAL/CANCELED with ``finalized_at``) that have markets
        but no settlement queue item.
        """
        event_id = self._c("id")
        if not self.schema.text_ids:
            event_id = cast(event_id, String)
        has_markets = select(Market.id).where(Market.event_id == event_id).exists()
        has_queue_item = select(SettlementQueueItem.id).where(SettlementQueueItem.game_id == event_id).exists()
        return and_(
            self._c("finalized_at").isnot(None),
            self._c("status_norm").in_([LifecycleState.FINAL.value, LifecycleState.CANCELED.value]),
            has_markets,
            ~has_queue_item,
        )

    def count_orphaned_finals(self) -> int:
        if not self.schema.has_finalized_at:
            return 0
        return self.db.execute(
            select(func.count()).select_from(self._table).where(self._orphaned_final())
        ).scalar() or 0

    def find_orphaned_finals(self, limit: int = 100) -> List[StoredEvent]:
        """Oldest finalization first."""
        if not self.schema.has_finalized_at:
            return []
        rows = self.db.execute(
            select(*self._select_columns())
            .where(self._orphaned_final())
            .order_by(self._c("finalized_at"))
            .limit(limit)
        ).mappings().all()
        return [self._to_stored(r) for r in rows]
